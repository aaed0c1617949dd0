"""Pytest configuration and shared fixtures.

Unit tests run without external services: stores, the host record source
and the notification gateway are replaced by the in-memory fakes in
``tests/fakes.py``, and S3 is mocked with moto.
"""

from __future__ import annotations

import os
from collections.abc import Generator

import pytest

from retention_engine.core.settings import clear_settings_cache
from retention_engine.services.policy import PolicyRegistry, RetentionPolicyEvaluator
from tests.fakes import EngineHarness


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep RETENTION_ENGINE_* variables and any .env file out of every test."""
    for name in list(os.environ):
        if name.startswith("RETENTION_ENGINE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(os.path.dirname(__file__))
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def registry() -> PolicyRegistry:
    """The built-in legal-basis presets."""
    return PolicyRegistry.from_presets()


@pytest.fixture
def evaluator(registry: PolicyRegistry) -> RetentionPolicyEvaluator:
    return RetentionPolicyEvaluator(registry)


@pytest.fixture
def harness() -> EngineHarness:
    """Disposal executor wired to in-memory stores and host."""
    return EngineHarness()
