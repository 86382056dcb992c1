import json
import logging
import time
from data.database import Experiment, Assignment
from config import config

logger = logging.getLogger(__name__)

# --- Configuration Constants ---
# The running catalog is the only cache entry that can go stale (status or
# weight edits), so it is kept short. Assignments are immutable once written.
EXPERIMENT_CACHE_TTL = 30
ASSIGNMENT_CACHE_TTL = 3600

RUNNING_EXPERIMENTS_KEY = "exp:running"
# Expired keys are dropped on read and swept from the in-memory backend at most this often
MOCK_SWEEP_INTERVAL = 60

# --- Valkey/Redis Backend Implementations ---

class _MockValkeyBackend:
    """Simulates the low-level Valkey/Redis client (in-memory), including key expiry."""
    def __init__(self, clock=time.monotonic):
        self._cache: dict[str, tuple[str, float]] = {}
        self._clock = clock
        self._next_sweep = clock() + MOCK_SWEEP_INTERVAL

    def get(self, key: str) -> str | None:
        logger.debug("cache mock get: %s", key)
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        return value

    def set(self, key: str, value: str, ex: int):
        logger.debug("cache mock set: %s", key)
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        self._cache[key] = (value, now + ex)

    def delete(self, key: str):
        self._cache.pop(key, None)

    def _sweep(self, now: float):
        for key in [k for k, (_, expires_at) in self._cache.items() if now >= expires_at]:
            del self._cache[key]
        self._next_sweep = now + MOCK_SWEEP_INTERVAL

class RealValkeyBackend:
    """Real implementation using redis-py client (compatible with Valkey)."""
    def __init__(self, host: str, port: int, db: int = 0, password: str | None = None):
        try:
            import redis
        except ImportError:
            logger.error("Redis module not found. Install it with `pip install redis`.")
            raise

        try:
            self.client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                socket_timeout=2.0
            )
            self.client.ping()
        except Exception as e:
            logger.error("Failed to connect to Valkey/Redis: %s", e)
            raise

    def get(self, key: str) -> str | None:
        try:
            logger.debug("cache valkey get: %s", key)
            return self.client.get(key)
        except Exception as e:
            logger.error("Valkey GET error for key %s: %s", key, e)
            return None

    def set(self, key: str, value: str, ex: int):
        try:
            logger.debug("cache valkey set: %s", key)
            self.client.set(key, value, ex=ex)
        except Exception as e:
            logger.error("Valkey SET error for key %s: %s", key, e)

    def delete(self, key: str):
        try:
            self.client.delete(key)
        except Exception as e:
            logger.error("Valkey DEL error for key %s: %s", key, e)


# --- Dedicated Cache Client Class ---

class CacheClient:
    """High-level client for managing application cache operations.

    A corrupt or unreadable entry is treated as a miss; the cache never fails a
    request.
    """

    def __init__(self, backend):
        self.backend = backend
        logger.debug("CacheClient backend: %s", self.backend)

    # --- Running experiment catalog ---

    def get_running_experiments(self) -> list[Experiment] | None:
        json_str = self.backend.get(RUNNING_EXPERIMENTS_KEY)
        if not json_str:
            return None
        try:
            return [Experiment.from_dict(item) for item in json.loads(json_str)]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("discarding unreadable running experiment catalog: %s", e)
            return None

    def set_running_experiments(self, experiments: list[Experiment]):
        json_str = json.dumps([experiment.to_dict() for experiment in experiments])
        self.backend.set(RUNNING_EXPERIMENTS_KEY, json_str, ex=EXPERIMENT_CACHE_TTL)
        logger.debug("Running experiment catalog cached (%d experiments).", len(experiments))

    def invalidate_running_experiments(self):
        self.backend.delete(RUNNING_EXPERIMENTS_KEY)

    # --- Assignment Caching ---

    def get_assignment(self, experiment_id: str, anonymous_user_id: str) -> Assignment | None:
        key = f"asn:{experiment_id}:{anonymous_user_id}"
        json_str = self.backend.get(key)
        if not json_str:
            return None
        try:
            return Assignment.from_json(json_str=json_str)
        except (ValueError, TypeError) as e:
            logger.warning("discarding unreadable assignment entry %s: %s", key, e)
            return None

    def set_assignment(self, assignment: Assignment):
        key = f"asn:{assignment.experiment_id}:{assignment.anonymous_user_id}"
        json_str = assignment.to_json()
        if json_str:
            self.backend.set(key, json_str, ex=ASSIGNMENT_CACHE_TTL)
            logger.debug("Assignment for experiment %s cached.", assignment.experiment_id)

        return None

# --- Initialize Backend and Default Client ---
valkey_host = config.valkey_host
valkey_port = config.valkey_port

logger.info("valkey_host: %s, port: %d", valkey_host, valkey_port)

if valkey_host:
    try:
        VALKEY_BACKEND = RealValkeyBackend(host=valkey_host, port=valkey_port)
    except Exception:
        logger.info("Falling back to Mock Valkey Backend due to connection failure.")
        VALKEY_BACKEND = _MockValkeyBackend()
else:
    logger.info("VALKEY_HOST not set. Using Mock Valkey Backend.")
    VALKEY_BACKEND = _MockValkeyBackend()

# Initialize a default client (singleton)
_DEFAULT_CACHE_CLIENT = CacheClient(backend=VALKEY_BACKEND)

def get_cache_client():
    return _DEFAULT_CACHE_CLIENT

def get_mock_cache_client():
    return CacheClient(backend=_MockValkeyBackend())
