"""End-of-run compliance reports.

Every run produces one report, persisted as
``retention-report-<operation_id>.json`` and sent through the notification
gateway. The report hash is SHA-256 over the canonical JSON of the report
without the hash itself, so a stored report can be checked for tampering.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from retention_engine.db.models.base import DisposalMethod
from retention_engine.services.domain import canonical_json, sha256_hex

if TYPE_CHECKING:
    from retention_engine.services.compliance import ComplianceViolation

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Counters of a run."""

    total_processed: int = 0
    total_purged: int = 0
    total_archived: int = 0
    total_simulated: int = 0
    total_errors: int = 0
    total_on_hold: int = 0
    total_unevaluable: int = 0
    total_deferred: int = 0
    compliance_violations: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_processed": self.total_processed,
            "total_purged": self.total_purged,
            "total_archived": self.total_archived,
            "total_simulated": self.total_simulated,
            "total_errors": self.total_errors,
            "total_on_hold": self.total_on_hold,
            "total_unevaluable": self.total_unevaluable,
            "total_deferred": self.total_deferred,
            "compliance_violations": self.compliance_violations,
        }


@dataclass(frozen=True)
class RunReport:
    """Immutable compliance report of one run.

    Attributes:
        operation_id: Identifier of the run.
        started_at: When the run started.
        finished_at: When the run finished.
        environment: Deployment environment.
        dry_run: Whether destructive calls were skipped.
        summary: Run counters.
        violations: Compliance violations detected during the run.
        compliance_gaps: Degraded-evidence notes (e.g., unsigned certificates).
        critical_failures: Failures that make the run unsuccessful.
        report_hash: SHA-256 over the canonical report without this field.
    """

    operation_id: str
    started_at: datetime
    finished_at: datetime
    environment: str
    dry_run: bool
    summary: RunSummary
    violations: tuple[dict[str, Any], ...] = ()
    compliance_gaps: tuple[str, ...] = ()
    critical_failures: tuple[dict[str, Any], ...] = ()
    report_hash: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.critical_failures

    def content(self) -> dict[str, Any]:
        """Report content covered by the hash."""
        return {
            "operation_id": self.operation_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "environment": self.environment,
            "dry_run": self.dry_run,
            "summary": self.summary.to_dict(),
            "violations": list(self.violations),
            "compliance_gaps": list(self.compliance_gaps),
            "critical_failures": list(self.critical_failures),
        }

    def compute_hash(self) -> str:
        return sha256_hex(canonical_json(self.content()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {**self.content(), "report_hash": self.report_hash}


class RunReportBuilder:
    """Accumulates run outcomes and builds the final report."""

    def __init__(self, operation_id: str, *, environment: str, dry_run: bool) -> None:
        self.operation_id = operation_id
        self.environment = environment
        self.dry_run = dry_run
        self.started_at = datetime.now(UTC)
        self.summary = RunSummary()
        self._violations: list[dict[str, Any]] = []
        self._gaps: list[str] = []
        self._critical: list[dict[str, Any]] = []

    def record_completed(self, method: DisposalMethod, *, simulated: bool) -> None:
        self.summary.total_processed += 1
        if simulated:
            self.summary.total_simulated += 1
        elif method == DisposalMethod.ARCHIVE:
            self.summary.total_archived += 1
        else:
            self.summary.total_purged += 1

    def record_failed(self, *, on_hold: bool = False) -> None:
        self.summary.total_processed += 1
        self.summary.total_errors += 1
        if on_hold:
            self.summary.total_on_hold += 1

    def record_on_hold(self, count: int = 1) -> None:
        self.summary.total_on_hold += count

    def record_unevaluable(self, count: int = 1) -> None:
        self.summary.total_unevaluable += count

    def record_deferred(self) -> None:
        self.summary.total_deferred += 1

    def record_violation(self, violation: ComplianceViolation) -> None:
        self.summary.compliance_violations += 1
        self._violations.append(violation.to_dict())

    def record_gap(self, gap: str) -> None:
        self._gaps.append(gap)

    def record_critical(self, kind: str, message: str, **context: Any) -> None:
        self._critical.append({"kind": kind, "message": message, **context})

    @property
    def has_critical_failures(self) -> bool:
        return bool(self._critical)

    def build(self, finished_at: datetime | None = None) -> RunReport:
        report = RunReport(
            operation_id=self.operation_id,
            started_at=self.started_at,
            finished_at=finished_at or datetime.now(UTC),
            environment=self.environment,
            dry_run=self.dry_run,
            summary=RunSummary(**self.summary.to_dict()),
            violations=tuple(self._violations),
            compliance_gaps=tuple(self._gaps),
            critical_failures=tuple(self._critical),
        )
        return replace(report, report_hash=report.compute_hash())


class FileReportStore:
    """Writes reports as JSON files into a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def path_for(self, operation_id: str) -> Path:
        return self._directory / f"retention-report-{operation_id}.json"

    async def persist(self, report: RunReport) -> str:
        path = self.path_for(report.operation_id)
        await asyncio.to_thread(self._write, path, report.to_dict())
        logger.info("Report written to %s", path)
        return str(path)

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
