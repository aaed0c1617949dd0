"""Tests for report and alert delivery.

Tests cover:
- Webhook HMAC signature
- Delivery headers and payloads
- Failures never propagating to the caller
- Log-only operation without a webhook
"""

import hashlib
import hmac
import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import SecretStr

from retention_engine.core.config import NotificationSettings
from retention_engine.services.notifications import (
    AlertSeverity,
    EmergencyAlert,
    NotificationKind,
    WebhookNotificationGateway,
    compute_webhook_signature,
)
from retention_engine.services.reporting import RunReportBuilder


def make_alert(**overrides):
    values = {
        "alert_type": "archival_failed",
        "message": "Archive upload failed",
        "operation_id": "RUN-1",
        "tenant_id": "tenant-a",
        "record_type": "Document",
        "record_id": "doc-1",
    }
    values.update(overrides)
    return EmergencyAlert(**values)


def mock_http_client(status_code=200):
    response = MagicMock()
    response.status_code = status_code
    client = MagicMock()
    client.post = AsyncMock(return_value=response)
    return client


class TestWebhookSignature:
    def test_signature_matches_hmac_sha256(self):
        expected = hmac.new(b"secret", b'{"a": 1}', hashlib.sha256).hexdigest()

        assert compute_webhook_signature('{"a": 1}', "secret") == f"sha256={expected}"

    def test_signature_depends_on_secret(self):
        assert compute_webhook_signature("body", "one") != compute_webhook_signature("body", "two")


class TestEmergencyAlert:
    def test_defaults_to_critical(self):
        alert = make_alert()

        assert alert.severity == AlertSeverity.CRITICAL
        data = alert.to_dict()
        assert data["severity"] == "critical"
        assert data["record_id"] == "doc-1"
        assert data["details"] == {}


class TestWebhookDelivery:
    @pytest.mark.asyncio
    async def test_alert_is_posted_with_signature(self):
        gateway = WebhookNotificationGateway("https://hooks.example.com/retention", webhook_secret="s3cret")
        client = mock_http_client()

        with patch.object(gateway, "_get_http_client", AsyncMock(return_value=client)):
            await gateway.send_emergency_alert(make_alert())

        client.post.assert_awaited_once()
        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["content"]
        headers = client.post.call_args.kwargs["headers"]
        assert url == "https://hooks.example.com/retention"
        assert json.loads(payload)["alert_type"] == "archival_failed"
        assert headers["X-Notification-Kind"] == "emergency_alert"
        assert headers["X-Notification-ID"].startswith("ntf-")
        assert headers["X-Signature-SHA256"] == compute_webhook_signature(payload, "s3cret")

    @pytest.mark.asyncio
    async def test_report_is_posted_without_signature_when_no_secret(self):
        gateway = WebhookNotificationGateway("https://hooks.example.com/retention")
        client = mock_http_client()
        report = RunReportBuilder("RUN-1", environment="test", dry_run=False).build()

        with patch.object(gateway, "_get_http_client", AsyncMock(return_value=client)):
            await gateway.send_compliance_report(report)

        headers = client.post.call_args.kwargs["headers"]
        body = json.loads(client.post.call_args.kwargs["content"])
        assert headers["X-Notification-Kind"] == "compliance_report"
        assert "X-Signature-SHA256" not in headers
        assert body["report_hash"] == report.report_hash

    @pytest.mark.asyncio
    async def test_error_status_is_logged_not_raised(self, caplog):
        gateway = WebhookNotificationGateway("https://hooks.example.com/retention")
        client = mock_http_client(status_code=503)

        with (
            patch.object(gateway, "_get_http_client", AsyncMock(return_value=client)),
            caplog.at_level(logging.ERROR, logger="retention_engine.services.notifications"),
        ):
            result = await gateway._deliver(NotificationKind.EMERGENCY_ALERT, {"a": 1})

        assert not result.success
        assert "503" in result.error
        assert "503" in caplog.text

    @pytest.mark.asyncio
    async def test_transport_error_is_swallowed(self):
        gateway = WebhookNotificationGateway("https://hooks.example.com/retention")
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))

        with patch.object(gateway, "_get_http_client", AsyncMock(return_value=client)):
            await gateway.send_emergency_alert(make_alert())
            result = await gateway._deliver(NotificationKind.EMERGENCY_ALERT, {"a": 1})

        assert not result.success
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_without_webhook_only_logs(self, caplog):
        gateway = WebhookNotificationGateway()

        with caplog.at_level(logging.CRITICAL, logger="retention_engine.services.notifications"):
            await gateway.send_emergency_alert(make_alert())
            result = await gateway._deliver(NotificationKind.EMERGENCY_ALERT, {})

        assert "EMERGENCY [archival_failed]" in caplog.text
        assert result.error == "Webhook not configured"
        assert gateway._http_client is None

    @pytest.mark.asyncio
    async def test_disabled_gateway_does_not_post(self):
        gateway = WebhookNotificationGateway("https://hooks.example.com/retention", enabled=False)

        result = await gateway._deliver(NotificationKind.COMPLIANCE_REPORT, {})

        assert not result.success
        assert gateway._http_client is None


class TestGatewayLifecycle:
    def test_from_settings(self):
        settings = NotificationSettings(
            webhook_url="https://hooks.example.com/retention",
            webhook_secret=SecretStr("s3cret"),
            timeout=5.0,
        )

        gateway = WebhookNotificationGateway.from_settings(settings)

        assert gateway._webhook_url == "https://hooks.example.com/retention"
        assert gateway._webhook_secret == "s3cret"
        assert gateway._timeout == 5.0

    @pytest.mark.asyncio
    async def test_close_releases_http_client(self):
        gateway = WebhookNotificationGateway("https://hooks.example.com/retention")

        await gateway._get_http_client()
        assert gateway._http_client is not None

        await gateway.close()
        assert gateway._http_client is None
