"""Recurring triggers for the retention daemon.

Default triggers:
- check_retention_deadlines: hourly retention run
- verify_legal_holds: daily scan for holds about to expire
- verify_audit_integrity: weekly audit chain and certificate verification
- cleanup_finished_jobs: daily removal of old terminal jobs

Each trigger runs under its own lease, so in a multi-instance deployment a
trigger never executes on two instances at the same time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from retention_engine.services.errors import ConcurrentRunDetectedError

if TYPE_CHECKING:
    from retention_engine.services.lease import LeaseLock
    from retention_engine.worker.pool import DisposalWorkerPool

logger = logging.getLogger(__name__)

TriggerHandler = Callable[[], Awaitable[dict[str, Any] | None]]


@dataclass
class ScheduledTrigger:
    """Definition of a recurring trigger.

    Attributes:
        name: Trigger name, also the handler key.
        interval: Time between runs.
        enabled: Whether the trigger is active.
        last_run: When the trigger last ran (or was skipped for another instance).
    """

    name: str
    interval: timedelta
    enabled: bool = True
    last_run: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        if self.last_run is None:
            return True
        return now >= self.last_run + self.interval


def default_triggers() -> list[ScheduledTrigger]:
    """Fresh copies of the default triggers (they carry run state)."""
    return [
        ScheduledTrigger("check_retention_deadlines", timedelta(hours=1)),
        ScheduledTrigger("verify_legal_holds", timedelta(days=1)),
        ScheduledTrigger("verify_audit_integrity", timedelta(weeks=1)),
        ScheduledTrigger("cleanup_finished_jobs", timedelta(days=1)),
    ]


DEFAULT_TRIGGERS = tuple(trigger.name for trigger in default_triggers())


class TriggerEngine:
    """Runs due triggers, each under a lease.

    Example:
        engine = TriggerEngine(lease_lock, {"cleanup_finished_jobs": cleanup})
        await engine.tick()
    """

    def __init__(
        self,
        lease_lock: LeaseLock,
        handlers: Mapping[str, TriggerHandler],
        triggers: list[ScheduledTrigger] | None = None,
    ) -> None:
        self._lease_lock = lease_lock
        self._handlers = dict(handlers)
        self.triggers = triggers if triggers is not None else default_triggers()

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Run every trigger that is due.

        Returns:
            Names of the triggers that ran.
        """
        now = now or datetime.now(UTC)
        ran: list[str] = []

        for trigger in self.triggers:
            if not trigger.enabled or not trigger.is_due(now):
                continue

            handler = self._handlers.get(trigger.name)
            if handler is None:
                logger.error("No handler registered for trigger %s", trigger.name)
                continue

            try:
                async with self._lease_lock.hold(f"trigger:{trigger.name}"):
                    result = await handler()
            except ConcurrentRunDetectedError:
                logger.info("Trigger %s is running on another instance; skipped", trigger.name)
                trigger.last_run = now
                continue
            except Exception as e:
                # Retried on the next tick
                logger.exception("Trigger %s failed: %s", trigger.name, e)
                continue

            trigger.last_run = now
            ran.append(trigger.name)
            logger.info(
                "Trigger %s completed: next_due=%s, result=%s",
                trigger.name,
                (now + trigger.interval).isoformat(),
                result,
            )

        return ran


async def run_scheduler_loop(
    engine: TriggerEngine,
    pool: DisposalWorkerPool,
    *,
    check_interval: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
    dry_run: bool = False,
) -> None:
    """Run triggers and pick up retried or deferred jobs until shutdown.

    Args:
        engine: Trigger engine to tick.
        pool: Worker pool fed with runnable jobs between runs.
        check_interval: Seconds between ticks.
        shutdown_event: Event to signal shutdown.
        dry_run: Pick up only simulated jobs instead of real ones.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info(
        "Scheduler starting: check_interval=%ss, triggers=%d",
        check_interval,
        len(engine.triggers),
    )

    while not shutdown_event.is_set():
        try:
            await engine.tick()
            claimed, deferred = await pool.fill(dry_run=dry_run)
            if claimed:
                logger.debug("Picked up %d pending job(s), %d deferred", claimed, deferred)
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        # Wait for next check interval (uses wait_for to allow shutdown)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=check_interval,
            )

    logger.info("Scheduler stopped")
