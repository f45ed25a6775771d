"""
Pytest configuration and shared fixtures.

This file adds the parent directory to the Python path so that tests
can import from the domain, repositories, services and api modules, and
builds a BrokerContext around the in-memory fakes in tests/fakes.py.
"""

import sys
from datetime import datetime, time, timezone
from pathlib import Path

import pytest

# Add the project root to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from domain.schedule import ActiveWindow  # noqa: E402
from repositories.provider_repository import create_provider  # noqa: E402
from services.context import BrokerContext  # noqa: E402
from services.settings import BrokerSettings  # noqa: E402
from fakes import (  # noqa: E402
    FakeClock,
    FakeIntelligence,
    FakePayments,
    FakeSms,
    FakeSupabase,
)

# Wednesday 2025-01-15 10:00 in New York.
BASE_NOW = datetime(2025, 1, 15, 15, 0, 0, tzinfo=timezone.utc)

ALWAYS_OPEN = ActiveWindow(start=time(0, 0), end=time(0, 0))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(BASE_NOW)


@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def sms() -> FakeSms:
    return FakeSms()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def intelligence() -> FakeIntelligence:
    return FakeIntelligence()


@pytest.fixture
def settings() -> BrokerSettings:
    return BrokerSettings(
        public_base_url="https://broker.test",
        stripe_webhook_secret="whsec_test",
        active_window=ALWAYS_OPEN,
        scheduler_enabled=False,
    )


@pytest.fixture
def ctx(db, settings, sms, payments, intelligence, clock) -> BrokerContext:
    return BrokerContext(
        db=db,
        settings=settings,
        sms=sms,
        payments=payments,
        intelligence=intelligence,
        clock=clock,
    )


@pytest.fixture
def make_provider(db, clock):
    """Register a provider; pass first_lead_used=True to skip the free lead."""

    def _make(
        provider_id: str = "provider10",
        phone: str = "+15550001010",
        *,
        service_areas=(),
        first_lead_used: bool = False,
        email=None,
    ):
        provider = create_provider(
            db,
            provider_id=provider_id,
            name=f"Provider {provider_id}",
            phone=phone,
            now=clock(),
            email=email,
            service_areas=service_areas,
        )
        if first_lead_used:
            db.table("providers").update({"first_lead_used": True}).eq(
                "provider_id", provider.provider_id
            ).execute()
        return provider

    return _make
