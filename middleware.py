from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import time
import uuid

# Define the ContextVar to store the request ID
request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    @classmethod
    def request_id_context(cls):
        return request_id_context

    async def dispatch(self, request: Request, call_next):
        # Reuse a caller supplied id so retries can be correlated across services
        incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        new_request_id = incoming[:64] if incoming else str(uuid.uuid4())[:8]

        token = request_id_context.set(new_request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = new_request_id
            duration_ms = (time.perf_counter() - started) * 1000
            logger.info("%s %s %d %.1fms", request.method, request.url.path,
                        response.status_code, duration_ms)
        except Exception:
            logger.exception("Unhandled error during request processing.")
            raise
        finally:
            # Reset the context variable when the request is done
            request_id_context.reset(token)

        return response
