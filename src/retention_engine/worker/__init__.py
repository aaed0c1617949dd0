"""Retention daemon.

Background processing for:
- Hourly retention runs with a fixed-size disposal worker pool
- Daily legal hold expiry review
- Weekly audit chain and certificate verification
- Daily cleanup of finished jobs

Usage:
    retention-engine daemon
"""

from retention_engine.worker.main import WorkerComponents, build_components, run

__all__ = ["WorkerComponents", "build_components", "run"]
