"""Hourly retention deadline check.

Runs a full retention pass. In daemon mode the dry-run flag and the
production override come from settings instead of the command line.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from retention_engine.services.errors import ProductionGuardError

if TYPE_CHECKING:
    from retention_engine.services.runner import RetentionRunner

logger = logging.getLogger(__name__)


async def check_retention_deadlines_handler(
    runner: RetentionRunner,
    *,
    dry_run: bool,
    force_production: bool,
) -> dict[str, Any] | None:
    """Run one retention pass and summarize its report.

    A production guard refusal is logged and reported as skipped; it is a
    configuration state, not a failure to retry every hour.

    Args:
        runner: Runner executing the pass.
        dry_run: Simulate disposals.
        force_production: Permit a real run in production.

    Returns:
        Summary of the run report.
    """
    try:
        report = await runner.run(dry_run=dry_run, force_production=force_production)
    except ProductionGuardError as e:
        logger.error("Retention deadline check skipped: %s", e)
        return {"skipped": True, "reason": str(e)}

    return {
        "operation_id": report.operation_id,
        "succeeded": report.succeeded,
        "dry_run": report.dry_run,
        **report.summary.to_dict(),
    }
