"""Per-tenant concurrency quota.

The tracker is injected into the worker pool and checked before a job is
dispatched. Acquire and release are atomic under one asyncio lock, so the
number of in-flight runs for a tenant can never exceed the limit, even
under a burst of simultaneous dispatches.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter

logger = logging.getLogger(__name__)


class TenantQuotaTracker:
    """Counts in-flight disposal runs per tenant."""

    def __init__(self, limit: int = 3) -> None:
        if limit < 1:
            msg = f"Tenant quota must be at least 1, got {limit}"
            raise ValueError(msg)
        self.limit = limit
        self._active: Counter[str] = Counter()
        self._peak: Counter[str] = Counter()
        self._lock = asyncio.Lock()

    async def try_acquire(self, tenant_id: str) -> bool:
        """Reserve a slot for the tenant. Returns False when the quota is full."""
        async with self._lock:
            if self._active[tenant_id] >= self.limit:
                return False
            self._active[tenant_id] += 1
            self._peak[tenant_id] = max(self._peak[tenant_id], self._active[tenant_id])
            return True

    async def release(self, tenant_id: str) -> None:
        async with self._lock:
            if self._active[tenant_id] <= 0:
                logger.error("Quota release for tenant %s without a matching acquire", tenant_id)
                return
            self._active[tenant_id] -= 1
            if self._active[tenant_id] == 0:
                del self._active[tenant_id]

    def active(self, tenant_id: str) -> int:
        return self._active[tenant_id]

    def peak(self, tenant_id: str) -> int:
        """Highest simultaneous run count seen for the tenant."""
        return self._peak[tenant_id]

    def saturated(self) -> frozenset[str]:
        """Tenants currently at their limit."""
        return frozenset(tenant for tenant, count in self._active.items() if count >= self.limit)
