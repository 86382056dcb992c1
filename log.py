import logging
import sys
from middleware import RequestIDMiddleware

class ContextualFilter(logging.Filter):
    """A logging filter that injects the request ID from ContextVar."""
    def filter(self, record: logging.LogRecord) -> bool:
        # Get the current ID from the context
        record.request_id = RequestIDMiddleware.request_id_context().get()
        return True


def truncate_user_id(anonymous_user_id: str) -> str:
    """Shortens an anonymous id for log lines, e.g. 550e8400...0000."""
    if len(anonymous_user_id) <= 12:
        return anonymous_user_id
    return f"{anonymous_user_id[:8]}...{anonymous_user_id[-4:]}"


# Configure the root logger with the request-id filter and format
def setup_logging(log_level: str = "INFO", log_filename: str | None = None):
    log_filter = ContextualFilter()

    # The format must include the custom 'request_id' attribute
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(request_id)s] - %(name)s - %(message)s'
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_filename:
        handlers.append(logging.FileHandler(log_filename, mode='a'))

    for handler in handlers:
        handler.addFilter(log_filter)
        handler.setFormatter(formatter)

    logging.basicConfig(level=logging.getLevelName(log_level.upper()), handlers=handlers)
