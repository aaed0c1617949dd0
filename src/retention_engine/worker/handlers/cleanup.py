"""Daily cleanup of finished jobs.

Only job rows are removed. Audit entries, certificates and archive
manifests are permanent evidence and are never touched.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from retention_engine.services.interfaces import JobStore

logger = logging.getLogger(__name__)


async def cleanup_finished_jobs_handler(
    jobs: JobStore,
    *,
    retention_days: int = 7,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """Delete COMPLETED and FAILED jobs older than ``retention_days``."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=retention_days)
    purged = await jobs.purge_finished(before=cutoff)
    logger.info("Removed %d finished job(s) last updated before %s", purged, cutoff.isoformat())
    return {"purged": purged, "cutoff": cutoff.isoformat()}
