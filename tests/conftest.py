"""
Pytest configuration and fixtures for SentryRelay tests.

Shared fixtures for unit, property-based and API tests.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from main import app
from alert_delivery import DeliveryCoordinator
from alert_formatter import AlertFormatter
from link_registry import InMemoryLinkRegistry
from retry_manager import RetryManager
from schemas import AlarmState, CanonicalTelemetryRecord, SentryModeState
from telegram_delivery import InMemoryDeliveryStatusStore


class MemoryDeadLetter:
    """Dead-letter sink that keeps events in memory."""

    def __init__(self):
        self.items = []

    async def write(self, event):
        self.items.append(event)


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client fixture."""
    return TestClient(app)


@pytest.fixture
def dead_letter() -> MemoryDeadLetter:
    return MemoryDeadLetter()


@pytest.fixture
def retry_manager(dead_letter) -> RetryManager:
    """Retry manager whose timer is never started; tests drive ticks with run_pending()."""
    return RetryManager(tick_interval_seconds=30.0, max_attempts=3, dead_letter_sink=dead_letter)


@pytest.fixture
def bot_api() -> AsyncMock:
    bot = AsyncMock()
    bot.send_message_to_user = AsyncMock(return_value=True)
    return bot


@pytest.fixture
def link_registry() -> InMemoryLinkRegistry:
    return InMemoryLinkRegistry({"user-1": "1001", "user-2": "1002"})


@pytest.fixture
def status_store() -> InMemoryDeliveryStatusStore:
    return InMemoryDeliveryStatusStore(max_size=50)


@pytest.fixture
def coordinator(bot_api, link_registry, retry_manager, status_store) -> DeliveryCoordinator:
    link_registry.remove_link = AsyncMock(wraps=link_registry.remove_link)
    return DeliveryCoordinator(
        bot_api,
        link_registry,
        retry_manager,
        formatter=AlertFormatter(redirect_base_url="https://relay.example.com"),
        status_store=status_store,
    )


@pytest.fixture
def sentry_record() -> CanonicalTelemetryRecord:
    """Sentry Mode Aware report for a test vehicle."""
    return CanonicalTelemetryRecord(
        vin="TEST123456",
        timestamp=datetime(2026, 2, 16, 12, 0, tzinfo=timezone.utc),
        sentry_mode_state=SentryModeState.AWARE,
        alarm_state=AlarmState.INACTIVE,
    )


@pytest.fixture
def sample_stream_message():
    """Fleet-telemetry message as published on the ZMQ stream."""
    return {
        "vin": "5YJ3E1EA7KF000001",
        "createdAt": "2026-02-16T12:00:00Z",
        "data": [
            {"key": "SentryMode", "value": {"stringValue": "Aware"}},
            {"key": "Location", "value": {"locationValue": {"latitude": 48.8566, "longitude": 2.3522}}},
            {"key": "Soc", "value": {"doubleValue": 81.5}},
        ],
    }


# Hypothesis settings for property-based tests
from hypothesis import settings, Verbosity

# Configure Hypothesis for consistent test runs
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.load_profile("default")
