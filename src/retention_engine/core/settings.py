"""Process-wide settings accessor.

``get_settings()`` loads :class:`Settings` from the environment once, runs
the runtime checks in :func:`validate_settings`, and exits the process
with status 1 if either fails. Tests reset it with ``clear_settings_cache()``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from retention_engine.core.config import ConfigValidationError, Settings, validate_settings

logger = logging.getLogger(__name__)


def _describe(error: ValidationError) -> str:
    return "\n".join(
        f"  - {'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    try:
        settings = Settings()
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Invalid retention engine configuration:\n%s", _describe(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical(
            "Invalid retention engine configuration: %s (field: %s)", e.message, e.field or "unknown"
        )
        raise SystemExit(1) from e

    logger.info(
        "Retention engine configured: environment=%s dry_run=%s tenant_quota=%d policy=%s",
        settings.environment.value,
        settings.dry_run,
        settings.scheduler.tenant_quota,
        settings.get_policy_hash()[:16],
    )
    return settings


def clear_settings_cache() -> None:
    get_settings.cache_clear()
