"""
Per-organization units of work.

Activation is a read-check-write sequence (count active paid modules, compare
with the plan ceiling, upsert a row). Two concurrent activations for the same
organization must not both pass the check, so every entitlement mutation runs
inside locked_organization():

    async with locked_organization(db, organization_id):
        status = await engine.get_status(organization_id)
        ...

The scope holds an in-process asyncio.Lock keyed by organization id and, on
PostgreSQL, a transaction-scoped advisory lock so that several worker
processes are serialized as well. Leaving the scope commits the session;
an exception rolls it back. Nested scopes for the same organization in the
same task join the outer one and leave committing to it.
"""
import asyncio
import hashlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.utils import get_logger


log = get_logger(__name__)

_locks: Dict[str, asyncio.Lock] = {}
_owners: Dict[str, asyncio.Task] = {}
# Tasks holding or waiting for each lock; the lock is dropped when this reaches zero
_users: Dict[str, int] = {}


def advisory_lock_key(organization_id: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(f"organization-modules:{organization_id}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _uses_postgres(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


@asynccontextmanager
async def locked_organization(db: AsyncSession, organization_id: str) -> AsyncIterator[None]:
    task = asyncio.current_task()
    if task is not None and _owners.get(organization_id) is task:
        yield
        return

    lock = _locks.setdefault(organization_id, asyncio.Lock())
    _users[organization_id] = _users.get(organization_id, 0) + 1
    try:
        async with lock:
            _owners[organization_id] = task
            try:
                if _uses_postgres(db):
                    await db.execute(select(func.pg_advisory_xact_lock(advisory_lock_key(organization_id))))
                try:
                    yield
                except BaseException:
                    await db.rollback()
                    raise
                await db.commit()
            finally:
                _owners.pop(organization_id, None)
    finally:
        _users[organization_id] -= 1
        if not _users[organization_id]:
            del _users[organization_id]
            _locks.pop(organization_id, None)
