"""Shared test fixtures for the auto-responder test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    Supabase and WhatsApp are left unconfigured so nothing talks to the
    network.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["SUPABASE_URL"] = ""
    os.environ["SUPABASE_SERVICE_KEY"] = ""
    os.environ["METRICS_ENABLED"] = "false"
    os.environ["TENANT_TIMEZONE"] = "Asia/Kolkata"


@pytest.fixture
def fixed_clock():
    """Clock returning a fixed Monday-noon timestamp."""
    return lambda: datetime(2026, 3, 2, 12, 0, tzinfo=UTC)  # a Monday


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = b"" if data is None else str(data).encode()
        return mock

    return _make
