import os
import log
from dotenv import load_dotenv

# Load .env file into environment
load_dotenv()


def _split_tokens(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [token.strip() for token in raw.split(",") if token.strip()]


class Config:
    def __init__(self):
        self.valkey_host = os.getenv("VALKEY_HOST", "")
        self.valkey_port = int(os.getenv("VALKEY_PORT", 6379))
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./experimentation.db")
        self.db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", 5))
        self.db_statement_timeout_ms = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", 15000))
        self.db_pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", 10))
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.log_file = os.getenv("LOG_FILE") or None
        self.valid_tokens = _split_tokens(os.getenv("VALID_TOKENS"))
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1" )
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1" )

        # rollup scheduling and mutual exclusion
        self.rollup_window_days = int(os.getenv("ROLLUP_WINDOW_DAYS", 14))
        self.rollup_interval_seconds = int(os.getenv("ROLLUP_INTERVAL_SECONDS", 900))
        self.rollup_lock_namespace = int(os.getenv("ROLLUP_LOCK_NAMESPACE", 4242))
        self.rollup_lock_key = int(os.getenv("ROLLUP_LOCK_KEY", 1))

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level, self.log_file)

    def __repr__(self):
        return (
            f"<Settings valkey={self.valkey_host}:{self.valkey_port} loglevel={self.log_level}, "
            f"broker_url:{self.celery_broker_url}, backend_url:{self.celery_backend_url}, "
            f"rollup_window_days:{self.rollup_window_days}>"
        )

config = Config()
