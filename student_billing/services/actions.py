"""
Subscription Actions

User-initiated subscription operations: subscribe, upgrade, downgrade,
cancel and renew, plus one-off deposits. Each action validates locally,
issues exactly one mutating request, then hands follow-up work to the
reconciler.

Failures come back as an ActionResult carrying the server message
verbatim (or a generic fallback) and leave local state untouched.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterator, Optional, Union

from student_billing.config.settings import Settings, get_settings
from student_billing.domain.proration import (
    PlanChangeKind,
    PlanChangeQuote,
    quote_plan_change,
)
from student_billing.domain.subscription import (
    ActionResult,
    PendingCheckout,
    Subscription,
    SubscriptionPackage,
    SubscriptionStatus,
    provider_for_currency,
    utc_now,
)
from student_billing.domain.subscription_state import SubscriptionState
from student_billing.infrastructure.api.billing_client import BillingApiClient
from student_billing.infrastructure.exceptions import StudentBillingError, ValidationError
from student_billing.infrastructure.host.bridge import HostBridge, open_checkout_url
from student_billing.infrastructure.storage.session_storage import PendingCheckoutStore
from student_billing.services.preview import PlanChangePreview
from student_billing.services.reconciler import SubscriptionReconciler
from student_billing.services.scheduler import Scheduler


logger = logging.getLogger(__name__)


class SubscriptionActions:
    """
    Orchestrates subscription mutations for the selected student.

    Every action toggles only its own loading flag, so a slow
    cancellation never disables the checkout button and vice versa.
    """

    def __init__(
        self,
        client: BillingApiClient,
        state: SubscriptionState,
        reconciler: SubscriptionReconciler,
        pending_store: PendingCheckoutStore,
        host: HostBridge,
        scheduler: Scheduler,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._client = client
        self._state = state
        self._reconciler = reconciler
        self._pending_store = pending_store
        self._host = host
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._clock = clock
        self._preview: Optional[PlanChangePreview] = None

    # =========================================================================
    # Helpers
    # =========================================================================

    @contextmanager
    def _loading(self, flag: str) -> Iterator[None]:
        flags = self._state.loading
        setattr(flags, flag, True)
        try:
            yield
        finally:
            setattr(flags, flag, False)

    @staticmethod
    def _failure(action: str, error: StudentBillingError) -> ActionResult:
        logger.warning(f"[ACTIONS] {action} failed: {error.message}")
        return ActionResult.failed(error.user_message)

    def _require_student(self) -> int:
        student_id = self._state.selected_student_id
        if student_id is None:
            raise ValidationError("No student selected")
        return student_id

    def _require_active_subscription(self, now: datetime) -> Subscription:
        subscription = self._state.current(now)
        if subscription is None or not subscription.is_active or subscription.is_expired(now):
            raise ValidationError("No active subscription found")
        return subscription

    def _require_package(self, package_id: int) -> SubscriptionPackage:
        package = self._state.find_package(package_id)
        if package is None:
            raise ValidationError(f"Package {package_id} not found")
        return package

    def _current_package(self, subscription: Subscription) -> SubscriptionPackage:
        package = subscription.package or self._state.find_package(subscription.package_id)
        if package is None:
            raise ValidationError("Current package details are not available")
        return package

    def _open_checkout(self, pending: PendingCheckout, checkout_url: str) -> ActionResult:
        # Persist before leaving: a redirect may tear this process down
        self._pending_store.save(pending)
        self._reconciler.start(pending)

        if open_checkout_url(self._host, checkout_url):
            return ActionResult(success=True, checkout_url=checkout_url)
        return ActionResult(
            success=True,
            checkout_url=checkout_url,
            message="Open the checkout link to complete your payment",
        )

    # =========================================================================
    # Plan Change Preview
    # =========================================================================

    def preview_change(
        self,
        package_id: int,
        now: Optional[datetime] = None,
        expected: Optional[PlanChangeKind] = None,
    ) -> PlanChangeQuote:
        """
        Quote switching the active subscription to `package_id`.

        Raises:
            ValidationError: no active subscription, unknown package or an
                ineligible change
        """
        now = now or self._clock()
        subscription = self._require_active_subscription(now)
        return quote_plan_change(
            subscription,
            self._current_package(subscription),
            self._require_package(package_id),
            now,
            expected=expected,
        )

    def open_preview(
        self,
        package_id: int,
        on_update: Optional[Callable[[PlanChangeQuote], None]] = None,
    ) -> PlanChangePreview:
        """Open a confirmation preview that re-quotes itself until closed."""
        self.close_preview()
        self._preview = PlanChangePreview(
            lambda now: self.preview_change(package_id, now),
            self._scheduler,
            self._settings.preview_refresh_interval,
            clock=self._clock,
            on_update=on_update,
        )
        return self._preview

    def close_preview(self) -> None:
        if self._preview is not None:
            self._preview.close()
            self._preview = None

    # =========================================================================
    # Subscription Actions
    # =========================================================================

    async def subscribe(self, package_id: int, chat_id: Optional[str] = None) -> ActionResult:
        """Start a subscription checkout for a package and open it."""
        try:
            student_id = self._require_student()
            now = self._clock()
            current = self._state.current(now)
            if (
                current is not None
                and current.is_active
                and current.package_id == package_id
                and not current.is_expired(now)
            ):
                raise ValidationError("You already have an active subscription for this package")

            with self._loading("checkout"):
                checkout = await self._client.create_subscription_checkout(student_id, package_id)
        except StudentBillingError as e:
            return self._failure("Subscribe", e)

        logger.info(f"[ACTIONS] Subscription checkout {checkout.tx_ref} created for student {student_id}")
        pending = PendingCheckout(
            tx_ref=checkout.tx_ref,
            student_id=student_id,
            chat_id=chat_id,
            package_id=package_id,
        )
        return self._open_checkout(pending, checkout.checkout_url)

    async def upgrade(self, package_id: int) -> ActionResult:
        """Upgrade immediately; the new period starts today."""
        try:
            student_id = self._require_student()
            subscription = self._require_active_subscription(self._clock())
            self.preview_change(package_id, expected=PlanChangeKind.UPGRADE)

            with self._loading("plan_change"):
                response = await self._client.upgrade_subscription(subscription.id, package_id)
        except StudentBillingError as e:
            return self._failure("Upgrade", e)

        logger.info(f"[ACTIONS] Subscription {subscription.id} upgraded to package {package_id}")
        self.close_preview()

        if self._state.is_current(student_id):
            # The start date moved; rebuild from the server, twice to ride out webhook lag
            self._state.invalidate_snapshot()
            self._reconciler.schedule_refresh(student_id, 0)
            self._reconciler.schedule_refresh(student_id, self._settings.upgrade_refresh_delay)

        return ActionResult(
            success=True,
            message=response.message or "Subscription upgraded successfully",
            credit=response.credit,
        )

    async def downgrade(self, package_id: int) -> ActionResult:
        """Downgrade at the end of the current period."""
        try:
            student_id = self._require_student()
            subscription = self._require_active_subscription(self._clock())
            self.preview_change(package_id, expected=PlanChangeKind.DOWNGRADE)

            with self._loading("plan_change"):
                response = await self._client.downgrade_subscription(subscription.id, package_id)
        except StudentBillingError as e:
            return self._failure("Downgrade", e)

        logger.info(f"[ACTIONS] Subscription {subscription.id} downgraded to package {package_id}")
        self.close_preview()

        if self._state.is_current(student_id):
            self._reconciler.schedule_refresh(student_id, self._settings.downgrade_refresh_delay)

        return ActionResult(
            success=True,
            message=response.message or "Subscription downgraded successfully",
            credit=response.credit,
        )

    async def cancel(self) -> ActionResult:
        """
        Cancel the active subscription at period end.

        The local status flips to cancelled as soon as the server accepts,
        without waiting for a reconciliation round-trip.
        """
        try:
            student_id = self._require_student()
            subscription = self._require_active_subscription(self._clock())

            with self._loading("cancel"):
                message = await self._client.cancel_subscription(subscription.id)
        except StudentBillingError as e:
            return self._failure("Cancel", e)

        logger.info(f"[ACTIONS] Subscription {subscription.id} cancelled at period end")
        if self._state.is_current(student_id):
            self._state.mark_cancelled(subscription.id, self._clock())

        return ActionResult(
            success=True,
            message=message or "Subscription will be cancelled at the end of the current period",
        )

    async def renew(self) -> ActionResult:
        """Undo a cancellation that has not reached its end date yet."""
        try:
            student_id = self._require_student()
            now = self._clock()
            subscription = self._state.current(now)
            if (
                subscription is None
                or subscription.status != SubscriptionStatus.CANCELLED
                or subscription.is_expired(now)
            ):
                raise ValidationError("No cancelled subscription to renew")

            with self._loading("renew"):
                message = await self._client.renew_subscription(subscription.id)
        except StudentBillingError as e:
            return self._failure("Renew", e)

        logger.info(f"[ACTIONS] Subscription {subscription.id} renewed")
        if self._state.is_current(student_id):
            self._state.clear_override()
            self._reconciler.schedule_refresh(student_id, 0)

        return ActionResult(success=True, message=message or "Subscription renewed successfully")

    # =========================================================================
    # Deposits
    # =========================================================================

    async def deposit(
        self,
        amount: Union[Decimal, int, float, str],
        currency: str,
        chat_id: Optional[str] = None,
    ) -> ActionResult:
        """Start a one-off deposit checkout routed to the gateway for `currency`."""
        try:
            student_id = self._require_student()
            try:
                value = Decimal(str(amount))
            except InvalidOperation:
                raise ValidationError("Please enter a valid amount")
            if not value.is_finite() or value <= 0:
                raise ValidationError("Deposit amount must be greater than zero")

            provider = provider_for_currency(currency, self._settings.local_payment_currencies)
            with self._loading("deposit"):
                checkout = await self._client.create_deposit_checkout(
                    student_id, provider, value, currency.upper()
                )
        except StudentBillingError as e:
            return self._failure("Deposit", e)

        logger.info(
            f"[ACTIONS] Deposit checkout {checkout.tx_ref} via {provider.value} "
            f"for student {student_id}: {value} {currency.upper()}"
        )
        pending = PendingCheckout(tx_ref=checkout.tx_ref, student_id=student_id, chat_id=chat_id)
        return self._open_checkout(pending, checkout.checkout_url)
