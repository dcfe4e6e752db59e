"""
Billing Session

Wires the API client, subscription state, reconciler and actions
together for one dashboard session, and owns their lifetime. Closing the
session cancels every background pass and preview refresh.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from student_billing.config.settings import Settings, get_settings
from student_billing.domain.subscription import (
    StudentSummary,
    SubscriptionPackage,
    utc_now,
)
from student_billing.domain.subscription_state import SubscriptionState
from student_billing.infrastructure.api.billing_client import BillingApiClient
from student_billing.infrastructure.host.bridge import BrowserHostBridge, HostBridge
from student_billing.infrastructure.storage.session_storage import (
    InMemorySessionStorage,
    JsonFileSessionStorage,
    PendingCheckoutStore,
    SessionStorage,
)
from student_billing.services.actions import SubscriptionActions
from student_billing.services.reconciler import SubscriptionReconciler
from student_billing.services.scheduler import AsyncioScheduler, Scheduler


logger = logging.getLogger(__name__)


def build_session_storage(settings: Settings) -> SessionStorage:
    """File-backed storage when a path is configured, in-memory otherwise."""
    if settings.session_storage_path:
        return JsonFileSessionStorage(settings.session_storage_path)
    return InMemorySessionStorage()


class BillingSession:
    """Subscription management for the students of one account."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[BillingApiClient] = None,
        host: Optional[HostBridge] = None,
        storage: Optional[SessionStorage] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.client = client or BillingApiClient(self.settings)
        self.scheduler = scheduler or AsyncioScheduler()
        self.clock = clock

        self.state = SubscriptionState(
            optimistic_ttl=timedelta(seconds=self.settings.optimistic_cancel_ttl)
        )
        self.pending_store = PendingCheckoutStore(
            storage or build_session_storage(self.settings),
            self.settings.pending_checkout_key,
        )
        self.reconciler = SubscriptionReconciler(
            self.client,
            self.state,
            self.pending_store,
            self.scheduler,
            settings=self.settings,
            clock=clock,
        )
        self.actions = SubscriptionActions(
            self.client,
            self.state,
            self.reconciler,
            self.pending_store,
            host or BrowserHostBridge(),
            self.scheduler,
            settings=self.settings,
            clock=clock,
        )
        self._closed = False

    async def __aenter__(self) -> "BillingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.actions.close_preview()
        self.reconciler.cancel_all()
        self.scheduler.cancel_all()
        await self.client.aclose()
        logger.info("Billing session closed")

    # =========================================================================
    # Student Selection
    # =========================================================================

    def select_student(self, student_id: int) -> None:
        """
        Switch to another student.

        Background work for the previous student is cancelled so a late
        response cannot land on the new student's state. Returning to the
        student who owns the pending checkout resumes its confirmation.
        """
        if student_id == self.state.selected_student_id:
            return
        self.actions.close_preview()
        self.reconciler.cancel_all()
        self.state.select_student(student_id)

        pending = self.pending_store.load()
        if pending is not None and pending.student_id == student_id:
            self.reconciler.check_pending()

    async def load_students(self) -> List[StudentSummary]:
        return await self.client.list_students()

    async def load_dashboard(self, student_id: int) -> Optional[Dict[str, Any]]:
        """
        Load the dashboard payload and subscriptions for `student_id`.

        Returns None when another student was selected meanwhile.
        """
        dashboard = await self.client.get_student(student_id)
        if not self.state.is_current(student_id):
            return None
        await self.reconciler.refresh(student_id)
        return dashboard

    async def load_packages(self, student_id: int) -> List[SubscriptionPackage]:
        """Fetch the package catalog; a pending checkout gets one more verification."""
        flags = self.state.loading
        flags.packages = True
        try:
            packages = await self.client.list_packages(student_id)
        finally:
            flags.packages = False

        if self.state.apply_packages(student_id, packages):
            self.reconciler.on_packages_loaded()
        return packages

    def resume_pending_checkout(self) -> bool:
        """Resume confirmation of a checkout started before a provider redirect."""
        pending = self.pending_store.load()
        if pending is None:
            return False
        self.select_student(pending.student_id)
        return self.reconciler.check_pending()
