"""Delivery of compliance reports and emergency alerts.

Delivery is fire-and-forget: a failed webhook is logged and never
propagates into the disposal run. When no webhook is configured, reports
and alerts are only written to the log.

Webhook requests carry:
- X-Notification-Kind: "compliance_report" or "emergency_alert"
- X-Notification-ID: unique delivery identifier
- X-Signature-SHA256: "sha256=<hex hmac>" when a secret is configured
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from retention_engine.core.config import NotificationSettings
    from retention_engine.services.reporting import RunReport

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Severity of an emergency alert."""

    WARNING = "warning"
    CRITICAL = "critical"


class NotificationKind(str, Enum):
    COMPLIANCE_REPORT = "compliance_report"
    EMERGENCY_ALERT = "emergency_alert"


@dataclass(frozen=True, slots=True)
class EmergencyAlert:
    """Context of a critical failure that needs human attention.

    Attributes:
        alert_type: Short machine-readable category (e.g., "archival_failed").
        message: Human-readable description.
        severity: Alert severity.
        operation_id: Run during which the failure happened.
        tenant_id: Affected tenant.
        job_id: Affected job.
        record_type: Affected record type.
        record_id: Affected record.
        details: Additional context.
        raised_at: When the alert was raised.
    """

    alert_type: str
    message: str
    severity: AlertSeverity = AlertSeverity.CRITICAL
    operation_id: str | None = None
    tenant_id: str | None = None
    job_id: str | None = None
    record_type: str | None = None
    record_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "alert_type": self.alert_type,
            "message": self.message,
            "severity": self.severity.value,
            "operation_id": self.operation_id,
            "tenant_id": self.tenant_id,
            "job_id": self.job_id,
            "record_type": self.record_type,
            "record_id": self.record_id,
            "details": self.details,
            "raised_at": self.raised_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Result of one notification delivery."""

    success: bool
    kind: NotificationKind
    delivery_id: str
    error: str | None = None
    delivered_at: datetime | None = None


def compute_webhook_signature(payload: str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature header value for a webhook body."""
    signature = hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"sha256={signature}"


class WebhookNotificationGateway:
    """Posts reports and alerts to a webhook. Never raises."""

    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        webhook_secret: str | None = None,
        timeout: float = 30.0,
        enabled: bool = True,
    ) -> None:
        self._webhook_url = webhook_url
        self._webhook_secret = webhook_secret
        self._timeout = timeout
        self._enabled = enabled
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> WebhookNotificationGateway:
        secret = settings.webhook_secret.get_secret_value() if settings.webhook_secret else None
        return cls(
            settings.webhook_url,
            webhook_secret=secret,
            timeout=settings.timeout,
            enabled=settings.enabled,
        )

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client for webhook delivery."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def send_compliance_report(self, report: RunReport) -> None:
        summary = report.summary
        logger.info(
            "Compliance report %s: processed=%d purged=%d archived=%d simulated=%d errors=%d "
            "violations=%d",
            report.operation_id,
            summary.total_processed,
            summary.total_purged,
            summary.total_archived,
            summary.total_simulated,
            summary.total_errors,
            summary.compliance_violations,
        )
        await self._deliver(NotificationKind.COMPLIANCE_REPORT, report.to_dict())

    async def send_emergency_alert(self, context: EmergencyAlert) -> None:
        logger.critical(
            "EMERGENCY [%s] %s (tenant=%s, job=%s, record=%s/%s)",
            context.alert_type,
            context.message,
            context.tenant_id,
            context.job_id,
            context.record_type,
            context.record_id,
        )
        await self._deliver(NotificationKind.EMERGENCY_ALERT, context.to_dict())

    async def _deliver(self, kind: NotificationKind, body: dict[str, Any]) -> DeliveryResult:
        delivery_id = f"ntf-{datetime.now(UTC):%Y%m%d%H%M%S}-{secrets.token_hex(4)}"

        if not self._enabled or not self._webhook_url:
            return DeliveryResult(
                success=False,
                kind=kind,
                delivery_id=delivery_id,
                error="Webhook not configured",
            )

        try:
            payload = json.dumps(body, default=str, sort_keys=True)
            headers = {
                "Content-Type": "application/json",
                "X-Notification-Kind": kind.value,
                "X-Notification-ID": delivery_id,
            }
            if self._webhook_secret:
                headers["X-Signature-SHA256"] = compute_webhook_signature(payload, self._webhook_secret)

            client = await self._get_http_client()
            response = await client.post(self._webhook_url, content=payload, headers=headers)
        except (httpx.HTTPError, TypeError, ValueError) as e:
            error = f"Webhook request failed: {e}"
            logger.error("Notification %s (%s) failed: %s", delivery_id, kind.value, error)
            return DeliveryResult(success=False, kind=kind, delivery_id=delivery_id, error=error)

        if not 200 <= response.status_code < 300:
            error = f"Webhook returned status {response.status_code}"
            logger.error("Notification %s (%s) failed: %s", delivery_id, kind.value, error)
            return DeliveryResult(success=False, kind=kind, delivery_id=delivery_id, error=error)

        logger.info(
            "Notification delivered: id=%s, kind=%s, status=%d",
            delivery_id,
            kind.value,
            response.status_code,
        )
        return DeliveryResult(
            success=True,
            kind=kind,
            delivery_id=delivery_id,
            delivered_at=datetime.now(UTC),
        )
