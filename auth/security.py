from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi import Depends, HTTPException, status
from config import config

import logging

logger = logging.getLogger(__name__)

# Tokens come from VALID_TOKENS (comma separated); an empty list locks the dashboard routes.
# auto_error is off so a missing header gets the same 401 as a wrong token.
bearer_scheme = HTTPBearer(auto_error=False)

def get_current_client(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)):
    """Validates the Bearer token for every secured endpoint."""
    if credentials is None or credentials.scheme.lower() != "bearer" \
            or credentials.credentials not in config.valid_tokens:
        logger.warning("rejected request with %s bearer token", "missing" if credentials is None else "invalid")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # Returns the token value, which can be used to identify the client if needed
    return credentials.credentials
