"""Tests for daemon wiring.

Tests cover:
- Loading the host record source adapter from settings
- Building components and trigger handlers
- Daemon shutdown
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from retention_engine.core.config import Settings
from retention_engine.worker.main import (
    RecordSourceError,
    build_components,
    build_trigger_handlers,
    load_record_source,
    run_daemon,
)
from retention_engine.worker.scheduler import DEFAULT_TRIGGERS
from tests.fakes import InMemoryRecordSource

FACTORY = "tests.fakes:record_source_factory"


class TestLoadRecordSource:
    def test_factory_is_called_with_settings(self):
        settings = Settings()

        source = load_record_source(FACTORY, settings)

        assert isinstance(source, InMemoryRecordSource)
        assert source.settings is settings

    @pytest.mark.parametrize(
        ("path", "message"),
        [
            (None, "No record source configured"),
            ("", "No record source configured"),
            ("tests.fakes", "must have the form"),
            (":record_source_factory", "must have the form"),
            ("tests.no_such_module:record_source_factory", "Cannot load"),
            ("tests.fakes:no_such_factory", "Cannot load"),
        ],
    )
    def test_invalid_paths(self, path, message):
        with pytest.raises(RecordSourceError, match=message):
            load_record_source(path, Settings())


class TestBuildComponents:
    @pytest.fixture
    def components(self):
        return build_components(
            Settings(),
            records=InMemoryRecordSource(),
            session_factory=MagicMock(),
            report_directory="/tmp/retention-reports",
        )

    def test_components_share_collaborators(self, components):
        assert components.worker_id
        assert components.pool.worker_id == components.worker_id
        assert components.pool._quota.limit == 3
        assert components.registry.resolve("POPIA_2013") is not None

    def test_record_source_comes_from_settings(self):
        settings = Settings(record_source=FACTORY)

        components = build_components(settings, session_factory=MagicMock())

        assert isinstance(components.records, InMemoryRecordSource)
        assert components.records.settings is settings

    def test_missing_record_source_fails(self):
        with pytest.raises(RecordSourceError):
            build_components(Settings(), session_factory=MagicMock())

    @pytest.mark.asyncio
    async def test_trigger_handlers_are_bound(self, components):
        handlers = build_trigger_handlers(components)

        assert set(handlers) == set(DEFAULT_TRIGGERS)
        result = await handlers["verify_legal_holds"]()
        assert result == {"active_holds": 0, "expiring": []}


class TestRunDaemon:
    @pytest.mark.asyncio
    async def test_daemon_stops_on_shutdown_event(self):
        components = MagicMock()
        components.settings = Settings()
        components.object_store.ensure_bucket = MagicMock(return_value=False)
        components.pool.fill = AsyncMock(return_value=(0, 0))
        components.pool.shutdown = AsyncMock()
        shutdown = asyncio.Event()
        shutdown.set()

        with patch("retention_engine.worker.main.build_trigger_handlers", return_value={}):
            await asyncio.wait_for(run_daemon(components, shutdown), timeout=5)

        components.pool.start.assert_called_once()
        components.pool.shutdown.assert_awaited_once()
        components.object_store.ensure_bucket.assert_called_once_with("retention-archives")
