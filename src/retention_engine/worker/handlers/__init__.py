"""Trigger handlers of the retention daemon.

- deadlines: hourly retention run
- holds: daily legal hold expiry review
- integrity: weekly audit chain and certificate verification
- cleanup: daily removal of finished jobs
"""

from retention_engine.worker.handlers.cleanup import cleanup_finished_jobs_handler
from retention_engine.worker.handlers.deadlines import check_retention_deadlines_handler
from retention_engine.worker.handlers.holds import verify_legal_holds_handler
from retention_engine.worker.handlers.integrity import verify_audit_integrity_handler

__all__ = [
    "check_retention_deadlines_handler",
    "cleanup_finished_jobs_handler",
    "verify_audit_integrity_handler",
    "verify_legal_holds_handler",
]
