import contextlib
import logging
import threading
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

# Non-Postgres dialects (SQLite for tests and single-node runs) have no advisory
# locks, so mutual exclusion falls back to a process-local try-lock per key.
_LOCAL_LOCKS: dict[tuple[int, int], threading.Lock] = {}
_LOCAL_LOCKS_GUARD = threading.Lock()


def _is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


def _local_lock(namespace: int, key: int) -> threading.Lock:
    with _LOCAL_LOCKS_GUARD:
        lock = _LOCAL_LOCKS.get((namespace, key))
        if lock is None:
            lock = threading.Lock()
            _LOCAL_LOCKS[(namespace, key)] = lock
        return lock


def try_advisory_lock(conn: Connection, *, namespace: int, key: int) -> bool:
    got = conn.execute(
        text("SELECT pg_try_advisory_lock(:ns, :k) AS locked"), {"ns": namespace, "k": key}
    ).scalar()
    return bool(got)


def unlock_advisory_lock(conn: Connection, *, namespace: int, key: int) -> None:
    try:
        conn.execute(text("SELECT pg_advisory_unlock(:ns, :k)"), {"ns": namespace, "k": key})
    except Exception:  # noqa: BLE001
        # the lock dies with the connection anyway
        logger.warning("failed to release advisory lock (%d, %d)", namespace, key, exc_info=True)


@contextlib.contextmanager
def advisory_lock(engine: Engine, *, namespace: int, key: int) -> Iterator[bool]:
    """Non-blocking cluster-wide lock. Yields whether it was acquired.

    Postgres session-level advisory locks belong to a connection, so the lock
    is taken and released on a dedicated connection held for the whole block.
    """
    if not _is_postgres(engine):
        lock = _local_lock(namespace, key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
        return

    with engine.connect() as conn:
        acquired = try_advisory_lock(conn, namespace=namespace, key=key)
        conn.commit()
        try:
            yield acquired
        finally:
            if acquired:
                unlock_advisory_lock(conn, namespace=namespace, key=key)
                conn.commit()
