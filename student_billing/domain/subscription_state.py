"""
Subscription State

Holds the single piece of shared mutable state that background
reconciliation and foreground actions race to update: the currently
selected student's subscription.

State is kept in two layers. The server snapshot is whatever the API
last confirmed; the local override records an optimistic cancellation
that the server may not reflect yet. `merge_subscription_state` decides
which layer wins.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from student_billing.domain.subscription import (
    Subscription,
    SubscriptionPackage,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)


_STATUS_PRIORITY = {
    SubscriptionStatus.ACTIVE: 0,
    SubscriptionStatus.CANCELLED: 1,
    SubscriptionStatus.PAST_DUE: 2,
    SubscriptionStatus.INACTIVE: 3,
}


def select_current_subscription(rows: Iterable[Subscription]) -> Optional[Subscription]:
    """
    Pick the one subscription considered current for a student.

    Active rows beat cancelled ones, so a resubscription after a
    cancellation shows up immediately. Among rows of the same status the
    most recently created wins, then the most recently started.
    """
    def sort_key(row: Subscription):
        started = row.start_date or row.created_at
        return (
            -_STATUS_PRIORITY.get(row.status, len(_STATUS_PRIORITY)),
            row.created_at,
            started,
            row.id,
        )

    rows = list(rows)
    if not rows:
        return None
    return max(rows, key=sort_key)


@dataclass(frozen=True)
class LocalOverride:
    """Optimistic status written before the server confirms it."""
    subscription_id: int
    status: SubscriptionStatus
    recorded_at: datetime
    ttl: timedelta

    def is_live(self, now: datetime) -> bool:
        return now - self.recorded_at < self.ttl


def merge_subscription_state(
    snapshot: Optional[Subscription],
    override: Optional[LocalOverride],
    now: datetime,
) -> Optional[Subscription]:
    """
    Combine the server snapshot with the local override.

    A live override for the same subscription id replaces the snapshot
    status, so a fresh cancellation is not flipped back to active by a
    stale read. Overrides for other ids or past their ttl are ignored.
    """
    if snapshot is None:
        return None
    if override is None or override.subscription_id != snapshot.id:
        return snapshot
    if not override.is_live(now):
        return snapshot
    return snapshot.model_copy(update={"status": override.status})


@dataclass
class LoadingFlags:
    """One flag per concern so an operation never disables unrelated controls."""
    packages: bool = False
    checkout: bool = False
    cancel: bool = False
    plan_change: bool = False
    deposit: bool = False
    renew: bool = False


@dataclass
class SubscriptionState:
    """Selected student's subscription view, guarded against stale writes."""
    optimistic_ttl: timedelta = timedelta(seconds=120)
    selected_student_id: Optional[int] = None
    snapshot: Optional[Subscription] = None
    override: Optional[LocalOverride] = None
    packages: List[SubscriptionPackage] = field(default_factory=list)
    loading: LoadingFlags = field(default_factory=LoadingFlags)

    def select_student(self, student_id: Optional[int]) -> None:
        """Switch the selected student, dropping everything tied to the previous one."""
        if student_id == self.selected_student_id:
            return
        logger.debug(f"Selected student {self.selected_student_id} -> {student_id}")
        self.selected_student_id = student_id
        self.snapshot = None
        self.override = None
        self.packages = []
        self.loading = LoadingFlags()

    def is_current(self, student_id: Optional[int]) -> bool:
        """Whether a result fetched for `student_id` may still be applied."""
        return student_id is not None and student_id == self.selected_student_id

    def current(self, now: datetime) -> Optional[Subscription]:
        return merge_subscription_state(self.snapshot, self.override, now)

    def find_package(self, package_id: int) -> Optional[SubscriptionPackage]:
        for package in self.packages:
            if package.id == package_id:
                return package
        return None

    # =========================================================================
    # Gated writers
    # =========================================================================

    def apply_server_rows(
        self,
        student_id: int,
        rows: Iterable[Subscription],
        now: datetime,
    ) -> bool:
        """
        Apply a subscriptions list fetched for `student_id`.

        Returns False without touching state when the student has changed.
        """
        if not self.is_current(student_id):
            logger.debug(f"Discarding stale subscriptions for student {student_id}")
            return False

        self.snapshot = select_current_subscription(
            row for row in rows if row.student_id == student_id
        )
        self._settle_override(now)
        return True

    def apply_finalized(self, student_id: int, subscription: Subscription) -> bool:
        """
        Apply a subscription confirmed by a finalized checkout.

        Confirmed payment is proof of (re)subscription, so it replaces
        any optimistic cancellation.
        """
        if not self.is_current(student_id):
            logger.debug(f"Discarding stale verification for student {student_id}")
            return False

        self.snapshot = subscription
        if subscription.is_active:
            self.override = None
        return True

    def apply_packages(self, student_id: int, packages: Iterable[SubscriptionPackage]) -> bool:
        if not self.is_current(student_id):
            logger.debug(f"Discarding stale packages for student {student_id}")
            return False
        self.packages = list(packages)
        return True

    def mark_cancelled(self, subscription_id: int, now: datetime) -> None:
        """Record an optimistic cancellation that shows before the server confirms it."""
        self.override = LocalOverride(
            subscription_id=subscription_id,
            status=SubscriptionStatus.CANCELLED,
            recorded_at=now,
            ttl=self.optimistic_ttl,
        )

    def clear_override(self) -> None:
        self.override = None

    def invalidate_snapshot(self) -> None:
        """Forget the cached subscription so the next pass rebuilds it."""
        self.snapshot = None

    def _settle_override(self, now: datetime) -> None:
        override = self.override
        if override is None:
            return

        snapshot = self.snapshot
        confirmed = (
            snapshot is not None
            and snapshot.id == override.subscription_id
            and snapshot.status == override.status
        )
        superseded = snapshot is not None and snapshot.id != override.subscription_id

        if confirmed or superseded or not override.is_live(now):
            self.override = None
