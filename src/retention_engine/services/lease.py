"""Expiring lease locks for scheduler mutual exclusion.

A lease replaces a host-local file lock: it lives in the shared database,
names its holder and expires on its own, so a crashed scheduler never
blocks the next run for longer than the lease lifetime.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from retention_engine.db.models.leases import SchedulerLeaseRecord
from retention_engine.services.errors import ConcurrentRunDetectedError, LeaseLostError, StoreError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from retention_engine.services.interfaces import LeaseStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Lease:
    """A held lease.

    Attributes:
        name: Name of the guarded run (e.g., "retention-run").
        holder: Instance holding the lease.
        token: Secret proving ownership for renew and release.
        acquired_at: When the lease was taken.
        expires_at: When the lease lapses unless renewed.
    """

    name: str
    holder: str
    token: str
    acquired_at: datetime
    expires_at: datetime


class LeaseLock:
    """Acquires, renews and releases named leases for one holder.

    While a lease is held through ``hold()`` it is renewed every
    ``renew_interval`` seconds (half the lease by default). If a renewal
    fails the block is cancelled and LeaseLostError raised from it, so a
    run never continues once another instance could have taken over.

    Example:
        lock = LeaseLock(store, holder="scheduler-1", lease_seconds=900)
        async with lock.hold("retention-run"):
            ...
    """

    def __init__(
        self,
        store: LeaseStore,
        holder: str,
        lease_seconds: float,
        *,
        renew_interval: float | None = None,
    ) -> None:
        self._store = store
        self.holder = holder
        self._lease_seconds = lease_seconds
        self.renew_interval = renew_interval if renew_interval is not None else lease_seconds / 2

    async def acquire(self, name: str) -> Lease:
        """Take the lease or fail immediately.

        Raises:
            ConcurrentRunDetectedError: If another holder has a live lease.
        """
        now = datetime.now(UTC)
        lease = await self._store.try_acquire(
            name,
            holder=self.holder,
            token=secrets.token_hex(16),
            now=now,
            expires_at=now + timedelta(seconds=self._lease_seconds),
        )
        if lease is None:
            current = await self._store.get_lease(name)
            holder = current.holder if current is not None else None
            logger.warning("Lease %s is held by %s; aborting", name, holder)
            raise ConcurrentRunDetectedError(name, holder)

        logger.info("Acquired lease %s until %s", name, lease.expires_at.isoformat())
        return lease

    async def renew(self, lease: Lease) -> bool:
        expires_at = datetime.now(UTC) + timedelta(seconds=self._lease_seconds)
        renewed = await self._store.renew(lease.name, token=lease.token, expires_at=expires_at)
        if not renewed:
            logger.warning("Lease %s was lost before renewal", lease.name)
        return renewed

    async def release(self, lease: Lease) -> None:
        if not await self._store.release(lease.name, token=lease.token):
            logger.warning("Lease %s was already lost when releasing", lease.name)
        else:
            logger.debug("Released lease %s", lease.name)

    async def _keep_alive(self, lease: Lease, holder_task: asyncio.Task, lost: asyncio.Event) -> None:
        while True:
            await asyncio.sleep(self.renew_interval)
            try:
                renewed = await self.renew(lease)
            except StoreError as e:
                logger.error("Renewal of lease %s failed: %s", lease.name, e)
                renewed = False
            if not renewed:
                logger.error("Lease %s lost; stopping the run that holds it", lease.name)
                lost.set()
                holder_task.cancel()
                return

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[Lease]:
        """Hold and keep renewing a lease for the duration of the block.

        Raises:
            ConcurrentRunDetectedError: If the lease is held elsewhere.
            LeaseLostError: If a renewal fails while the block runs.
        """
        lease = await self.acquire(name)
        holder_task = asyncio.current_task()
        lost = asyncio.Event()
        heartbeat = asyncio.create_task(
            self._keep_alive(lease, holder_task, lost), name=f"lease-heartbeat-{name}"
        )
        try:
            yield lease
        except asyncio.CancelledError:
            if not lost.is_set():
                raise
            holder_task.uncancel()
            raise LeaseLostError(name) from None
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            await self.release(lease)


def _to_lease(record: SchedulerLeaseRecord) -> Lease:
    return Lease(
        name=record.name,
        holder=record.holder,
        token=record.token,
        acquired_at=record.acquired_at,
        expires_at=record.expires_at,
    )


class SqlLeaseStore:
    """Lease rows in PostgreSQL, taken with a conditional upsert."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def try_acquire(
        self,
        name: str,
        *,
        holder: str,
        token: str,
        now: datetime,
        expires_at: datetime,
    ) -> Lease | None:
        """Insert the lease, or take it over only if the current one expired."""
        stmt = insert(SchedulerLeaseRecord).values(
            name=name,
            holder=holder,
            token=token,
            acquired_at=now,
            expires_at=expires_at,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SchedulerLeaseRecord.name],
            set_={
                "holder": stmt.excluded.holder,
                "token": stmt.excluded.token,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
            where=SchedulerLeaseRecord.expires_at < now,
        ).returning(SchedulerLeaseRecord)

        try:
            async with self._session_factory() as session, session.begin():
                record = (await session.scalars(stmt)).first()
                return _to_lease(record) if record is not None else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to acquire lease {name}: {e}") from e

    async def renew(self, name: str, *, token: str, expires_at: datetime) -> bool:
        stmt = (
            update(SchedulerLeaseRecord)
            .where(SchedulerLeaseRecord.name == name, SchedulerLeaseRecord.token == token)
            .values(expires_at=expires_at, updated_at=datetime.now(UTC))
            .returning(SchedulerLeaseRecord.name)
        )
        return await self._execute_conditional(stmt, name)

    async def release(self, name: str, *, token: str) -> bool:
        stmt = (
            delete(SchedulerLeaseRecord)
            .where(SchedulerLeaseRecord.name == name, SchedulerLeaseRecord.token == token)
            .returning(SchedulerLeaseRecord.name)
        )
        return await self._execute_conditional(stmt, name)

    async def get_lease(self, name: str) -> Lease | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SchedulerLeaseRecord).where(SchedulerLeaseRecord.name == name)
                )
                record = result.scalar_one_or_none()
                return _to_lease(record) if record is not None else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read lease {name}: {e}") from e

    async def _execute_conditional(self, stmt: Any, name: str) -> bool:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            raise StoreError(f"Lease operation on {name} failed: {e}") from e
