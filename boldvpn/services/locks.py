"""Locks shared by provisioning and firewall reconciliation.

Provisioning transactions take a shared Postgres advisory lock, the
reconciler takes the same key exclusively for its whole run, so a
reconciliation pass never observes a half-finished device creation.
Within one process, allocation on a server is additionally serialized by a
per-server ``threading.Lock``, and the device-limit check for a user by a
per-user one.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Arbitrary 64-bit key reserved for device/firewall state
FIREWALL_STATE_LOCK_KEY = 7_301_554_218_001

_server_locks: dict[uuid.UUID, threading.Lock] = {}
_user_locks: dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _registered_lock(registry: dict, key) -> threading.Lock:
    with _registry_lock:
        lock = registry.get(key)
        if lock is None:
            lock = threading.Lock()
            registry[key] = lock
        return lock


def server_lock(server_id: uuid.UUID) -> threading.Lock:
    """Return the process-wide allocation lock for a server."""
    return _registered_lock(_server_locks, server_id)


def user_lock(username: str) -> threading.Lock:
    """Return the process-wide device-limit lock for a user.

    Always taken before :func:`server_lock`.
    """
    return _registered_lock(_user_locks, username)


def _is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def acquire_provisioning_lock(db: Session) -> None:
    """Take the shared advisory lock for the current transaction.

    Released automatically on commit or rollback. No-op outside Postgres.
    """
    if not _is_postgres(db):
        return
    db.execute(
        text("SELECT pg_advisory_xact_lock_shared(:key)"),
        {"key": FIREWALL_STATE_LOCK_KEY},
    )


@contextmanager
def reconciliation_lock(db: Session) -> Iterator[None]:
    """Hold the exclusive advisory lock for the duration of the block.

    The lock is session-level and lives on a dedicated connection so that
    the per-item commits made by the reconciler do not release it.
    """
    if not _is_postgres(db):
        yield
        return

    engine = db.get_bind().engine
    with engine.connect() as conn:
        logger.debug("Waiting for firewall state lock")
        conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": FIREWALL_STATE_LOCK_KEY})
        conn.commit()
        try:
            yield
        finally:
            conn.execute(
                text("SELECT pg_advisory_unlock(:key)"), {"key": FIREWALL_STATE_LOCK_KEY}
            )
            conn.commit()
