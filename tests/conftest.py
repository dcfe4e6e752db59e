"""
Test configuration and fixtures for Student Billing.

Provides shared fixtures for unit and integration tests.
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from student_billing.config.settings import Settings
from student_billing.domain.subscription_state import SubscriptionState
from student_billing.infrastructure.api.billing_client import BillingApiClient
from student_billing.infrastructure.storage.session_storage import (
    InMemorySessionStorage,
    PendingCheckoutStore,
)
from student_billing.services.actions import SubscriptionActions
from student_billing.services.reconciler import SubscriptionReconciler
from tests.factories import FakeClock, ManualScheduler, make_package, make_subscription


# =============================================================================
# Settings / Clock / Scheduler
# =============================================================================

@pytest.fixture
def settings():
    """Settings with a short, explicit reconciliation schedule."""
    return Settings(
        api_base_url="http://dashboard.test/api",
        reconcile_delays=[2.0, 5.0, 10.0],
        packages_loaded_recheck_delay=0.5,
        upgrade_refresh_delay=3.0,
        downgrade_refresh_delay=2.0,
        preview_refresh_interval=60.0,
        optimistic_cancel_ttl=120.0,
        local_payment_currencies=["ETB"],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def basic_package():
    """150 for 3 months."""
    return make_package(1, 150, 3)


@pytest.fixture
def premium_package():
    """250 for 3 months."""
    return make_package(2, 250, 3)


@pytest.fixture
def long_package():
    """300 for 5 months."""
    return make_package(3, 300, 5)


@pytest.fixture
def packages(basic_package, premium_package, long_package):
    return [basic_package, premium_package, long_package]


@pytest.fixture
def active_subscription():
    """Active subscription of student 10 on the basic package, started at T0."""
    return make_subscription()


# =============================================================================
# Mock Fixtures
# =============================================================================

@pytest.fixture
def mock_client():
    """Mock for BillingApiClient."""
    client = MagicMock(spec=BillingApiClient)
    client.list_students = AsyncMock(return_value=[])
    client.get_student = AsyncMock(return_value={"success": True})
    client.list_packages = AsyncMock(return_value=[])
    client.list_subscriptions = AsyncMock(return_value=[])
    client.verify_session = AsyncMock()
    client.create_subscription_checkout = AsyncMock()
    client.create_deposit_checkout = AsyncMock()
    client.upgrade_subscription = AsyncMock()
    client.downgrade_subscription = AsyncMock()
    client.cancel_subscription = AsyncMock(return_value=None)
    client.renew_subscription = AsyncMock(return_value=None)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mock_host():
    """Host bridge where only the full-page redirect succeeds."""
    host = MagicMock()
    host.open_native.return_value = False
    host.redirect.return_value = True
    host.open_new_tab.return_value = True
    return host


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def state():
    """State with student 10 selected."""
    state = SubscriptionState(optimistic_ttl=timedelta(seconds=120))
    state.select_student(10)
    return state


@pytest.fixture
def pending_store(settings):
    return PendingCheckoutStore(InMemorySessionStorage(), settings.pending_checkout_key)


@pytest.fixture
def reconciler(mock_client, state, pending_store, scheduler, settings, clock):
    return SubscriptionReconciler(
        mock_client, state, pending_store, scheduler, settings=settings, clock=clock
    )


@pytest.fixture
def actions(mock_client, state, reconciler, pending_store, mock_host, scheduler, settings, clock):
    return SubscriptionActions(
        mock_client,
        state,
        reconciler,
        pending_store,
        mock_host,
        scheduler,
        settings=settings,
        clock=clock,
    )
