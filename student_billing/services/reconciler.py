"""
Subscription Reconciler

Payment providers confirm checkouts asynchronously through webhooks, so
returning from a provider redirect proves nothing. The reconciler polls
the verify-session and subscriptions endpoints on a fixed schedule until
the server confirms the checkout or the schedule runs out.

Checkout phases:
    idle -> pending -> verifying -> finalized | abandoned

Every pass captures the target student id when it starts and re-checks
it against the selected student before and after each network call.
Results for a student that is no longer selected are discarded.
Failures are logged and swallowed: this is background work, not a user
action.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from student_billing.config.settings import Settings, get_settings
from student_billing.domain.subscription import (
    PendingCheckout,
    Subscription,
    VerifySessionResponse,
    utc_now,
)
from student_billing.domain.subscription_state import SubscriptionState
from student_billing.infrastructure.api.billing_client import BillingApiClient
from student_billing.infrastructure.exceptions import StudentBillingError
from student_billing.infrastructure.storage.session_storage import PendingCheckoutStore
from student_billing.services.scheduler import ScheduledTask, Scheduler


logger = logging.getLogger(__name__)


class CheckoutPhase(str, Enum):
    """Lifecycle of one checkout confirmation."""
    IDLE = "idle"
    PENDING = "pending"
    VERIFYING = "verifying"
    FINALIZED = "finalized"
    ABANDONED = "abandoned"


TERMINAL_PHASES = (CheckoutPhase.IDLE, CheckoutPhase.FINALIZED, CheckoutPhase.ABANDONED)


class SubscriptionReconciler:
    """
    Drives checkout confirmation and best-effort subscription refreshes.

    Scheduled work goes through the injected Scheduler so the retry
    schedule is plain data and every pass can be cancelled.
    """

    def __init__(
        self,
        client: BillingApiClient,
        state: SubscriptionState,
        pending_store: PendingCheckoutStore,
        scheduler: Scheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._client = client
        self._state = state
        self._pending_store = pending_store
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._clock = clock

        self._phase = CheckoutPhase.IDLE
        self._target: Optional[PendingCheckout] = None
        self._attempts_left = 0
        self._handles: List[ScheduledTask] = []
        self._refresh_handles: List[ScheduledTask] = []

    @property
    def phase(self) -> CheckoutPhase:
        return self._phase

    @property
    def target(self) -> Optional[PendingCheckout]:
        return self._target

    @property
    def pending_refreshes(self) -> List[ScheduledTask]:
        return list(self._refresh_handles)

    # =========================================================================
    # Checkout Confirmation
    # =========================================================================

    def start(self, pending: PendingCheckout) -> None:
        """
        Begin confirming a checkout.

        One verification attempt is scheduled per configured delay.
        Restarting replaces any schedule already running.
        """
        self._cancel_handles()
        self._target = pending
        self._phase = CheckoutPhase.PENDING
        self._attempts_left = 0

        logger.info(
            f"[RECONCILER] Confirming checkout {pending.tx_ref} for student "
            f"{pending.student_id}, package={pending.package_id}, "
            f"delays={self._settings.reconcile_delays}"
        )
        for delay in self._settings.reconcile_delays:
            self._schedule_attempt(delay)

    def check_pending(self) -> bool:
        """
        Resume confirmation from the persisted pending checkout.

        Returns False, doing nothing, when no checkout is pending.
        """
        pending = self._pending_store.load()
        if pending is None:
            return False
        if self._target == pending and self._phase not in TERMINAL_PHASES:
            return True
        self.start(pending)
        return True

    def on_packages_loaded(self) -> None:
        """Package data may arrive after student data: verify once more when it does."""
        if self._phase in TERMINAL_PHASES:
            return
        self._schedule_attempt(self._settings.packages_loaded_recheck_delay)

    def _schedule_attempt(self, delay: float) -> None:
        self._attempts_left += 1
        handle = self._scheduler.call_later(delay, self._attempt, name="reconcile-checkout")
        self._handles.append(handle)

    async def _attempt(self) -> None:
        try:
            verified = await self._verify_once()
        finally:
            self._attempts_left -= 1

        if self._phase in TERMINAL_PHASES or self._attempts_left > 0:
            return
        if verified:
            self._abandon()
        else:
            # Last attempt was skipped: keep the record for a later resume
            self._suspend()

    async def _verify_once(self) -> bool:
        """Run one verification pass. Returns False when the pass was skipped."""
        target = self._target
        if target is None or self._phase in TERMINAL_PHASES:
            return False

        student_id = target.student_id
        if not self._state.is_current(student_id):
            logger.debug(f"[RECONCILER] Student {student_id} not selected, skipping attempt")
            return False

        self._phase = CheckoutPhase.VERIFYING
        verification: Optional[VerifySessionResponse] = None
        rows: Optional[List[Subscription]] = None
        try:
            if target.package_id is not None:
                verification = await self._client.verify_session(student_id, target.package_id)
            rows = await self._client.list_subscriptions(student_id)
        except StudentBillingError as e:
            logger.warning(f"[RECONCILER] Verification attempt failed for student {student_id}: {e}")

        if self._target is not target:
            # Restarted or cancelled while awaiting
            return True

        if target.package_id is not None:
            confirmed = verification is not None and verification.confirmed
        else:
            # Nothing to verify without a package: a successful refresh settles it
            confirmed = rows is not None

        if self._state.is_current(student_id):
            if rows is not None:
                self._state.apply_server_rows(student_id, rows, self._clock())
            if confirmed and verification is not None and verification.subscription is not None:
                self._state.apply_finalized(student_id, verification.subscription)
        else:
            logger.debug(f"[RECONCILER] Discarding verification for deselected student {student_id}")

        if confirmed:
            self._finalize()
        else:
            self._phase = CheckoutPhase.PENDING
        return True

    def _finalize(self) -> None:
        target = self._target
        logger.info(f"[RECONCILER] Checkout {target.tx_ref if target else '?'} finalized")
        self._pending_store.clear()
        self._phase = CheckoutPhase.FINALIZED
        self._cancel_handles()

    def _abandon(self) -> None:
        target = self._target
        logger.info(
            f"[RECONCILER] Giving up on checkout {target.tx_ref if target else '?'} "
            f"after {len(self._settings.reconcile_delays)} scheduled attempts"
        )
        self._pending_store.clear()
        self._phase = CheckoutPhase.ABANDONED
        self._cancel_handles()

    def _suspend(self) -> None:
        target = self._target
        logger.info(
            f"[RECONCILER] Checkout {target.tx_ref if target else '?'} not verified: "
            f"student {target.student_id if target else '?'} not selected, keeping it for later"
        )
        self._phase = CheckoutPhase.IDLE
        self._target = None
        self._cancel_handles()

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, student_id: int) -> bool:
        """
        Re-fetch the subscriptions of `student_id` and apply them.

        Returns True when the result was applied, False when it was stale
        or the request failed.
        """
        if not self._state.is_current(student_id):
            return False

        try:
            rows = await self._client.list_subscriptions(student_id)
        except StudentBillingError as e:
            logger.warning(f"[RECONCILER] Refresh failed for student {student_id}: {e}")
            return False

        return self._state.apply_server_rows(student_id, rows, self._clock())

    def schedule_refresh(self, student_id: int, delay: float) -> ScheduledTask:
        """
        Run `refresh` in the background after `delay` seconds.

        Refreshes are tracked apart from checkout attempts, so finalizing or
        restarting a checkout leaves them scheduled.
        """
        self._refresh_handles = [
            h for h in self._refresh_handles if not (h.cancelled or h.done)
        ]

        async def run() -> None:
            try:
                await self.refresh(student_id)
            finally:
                if handle in self._refresh_handles:
                    self._refresh_handles.remove(handle)

        handle = self._scheduler.call_later(delay, run, name="reconcile-refresh")
        self._refresh_handles.append(handle)
        return handle

    # =========================================================================
    # Teardown
    # =========================================================================

    def cancel_all(self) -> None:
        """
        Cancel every scheduled and in-flight pass.

        The pending record stays in storage so a later `check_pending`
        can resume confirmation.
        """
        self._cancel_handles()
        refreshes, self._refresh_handles = self._refresh_handles, []
        for handle in refreshes:
            handle.cancel()
        self._attempts_left = 0
        if self._phase not in TERMINAL_PHASES:
            self._phase = CheckoutPhase.IDLE
        self._target = None

    def _cancel_handles(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()
