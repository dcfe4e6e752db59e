"""
Proration Calculator

Pure functions computing unused-time credit and net charge when a
student switches subscription plans mid-cycle.

Billing periods use standardized 30-day months (3 months = 90 days)
regardless of calendar month length. Monetary values are rounded to
cents after each step: credit first, then the net amount derived from
the rounded credit.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, Union

from student_billing.domain.subscription import Subscription, SubscriptionPackage
from student_billing.infrastructure.exceptions import ValidationError


DAYS_PER_MONTH = 30
CENTS = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")

Money = Union[Decimal, int, float, str]


class PlanChangeKind(str, Enum):
    """Direction of a plan change relative to the current package."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    NONE = "none"


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a proration calculation. Money fields are already rounded."""
    total_days: int
    days_used: int
    days_remaining: int
    current_daily_rate: Decimal
    new_daily_rate: Decimal
    current_monthly_rate: Decimal
    new_monthly_rate: Decimal
    credit_amount: Decimal
    net_amount: Decimal

    @property
    def is_credit(self) -> bool:
        """True when the credit exceeds the new package price."""
        return self.net_amount < 0

    @property
    def amount_due(self) -> Decimal:
        """Amount charged for the change, never negative."""
        return max(self.net_amount, Decimal("0.00"))

    @property
    def credit_balance(self) -> Decimal:
        """Credit left on the account after the change, never negative."""
        return -self.net_amount if self.is_credit else Decimal("0.00")


@dataclass(frozen=True)
class PlanChangeQuote:
    """Everything the confirmation screen shows for a plan change."""
    kind: PlanChangeKind
    current_package: SubscriptionPackage
    new_package: SubscriptionPackage
    proration: ProrationResult
    quoted_at: datetime
    effective_at: datetime
    new_start_date: datetime
    new_end_date: datetime
    months_covered: List[str] = field(default_factory=list)

    @property
    def is_immediate(self) -> bool:
        return self.kind == PlanChangeKind.UPGRADE


def _to_decimal(value: Money, name: str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"{name} is not a valid amount", {"value": str(value)}, e)

    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{name} must be a non-negative amount", {"value": str(value)})

    return amount


def _round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _validate_duration(duration: int, name: str) -> int:
    if duration is None or int(duration) < 1:
        raise ValidationError(
            f"{name} must be at least one month",
            {"duration": duration},
        )
    return int(duration)


def calculate_proration(
    current_price: Money,
    current_duration: int,
    new_price: Money,
    new_duration: int,
    subscription_start_date: datetime,
    now: datetime,
) -> ProrationResult:
    """
    Calculate proration for a subscription upgrade or downgrade.

    Args:
        current_price: Price of the current package for its whole period
        current_duration: Current package duration in months
        new_price: Price of the target package
        new_duration: Target package duration in months
        subscription_start_date: Anchor date of the current subscription
        now: Evaluation timestamp

    Returns:
        ProrationResult with credit and net amounts rounded to cents

    Raises:
        ValidationError: duration below one month or an invalid price
    """
    current_duration = _validate_duration(current_duration, "Current package duration")
    new_duration = _validate_duration(new_duration, "New package duration")
    current_price = _to_decimal(current_price, "Current package price")
    new_price = _to_decimal(new_price, "New package price")

    total_days = current_duration * DAYS_PER_MONTH

    # Whole days elapsed; a start date in the future counts as nothing used
    days_used = (now - subscription_start_date) // timedelta(days=1)
    days_used = min(max(days_used, 0), total_days)
    days_remaining = total_days - days_used

    current_daily_rate = current_price / total_days
    new_monthly_rate = new_price / new_duration

    credit_amount = _round_money(current_price * days_remaining / total_days)
    net_amount = _round_money(new_price - credit_amount)

    return ProrationResult(
        total_days=total_days,
        days_used=days_used,
        days_remaining=days_remaining,
        current_daily_rate=current_daily_rate.quantize(RATE_PLACES, rounding=ROUND_HALF_UP),
        new_daily_rate=_round_money(new_monthly_rate / DAYS_PER_MONTH),
        current_monthly_rate=_round_money(current_price / current_duration),
        new_monthly_rate=_round_money(new_monthly_rate),
        credit_amount=credit_amount,
        net_amount=net_amount,
    )


def add_months(value: datetime, months: int) -> datetime:
    """Shift a datetime by whole months, clamping to the last day of month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_new_subscription_dates(at: datetime, duration: int) -> tuple[datetime, datetime]:
    """
    Period of a subscription started on the day of `at`.

    Starts at midnight of that day and ends at the last microsecond of
    the day `duration` months later.
    """
    duration = _validate_duration(duration, "Package duration")
    start_date = datetime.combine(at.date(), time.min, tzinfo=at.tzinfo)
    end_date = datetime.combine(add_months(start_date, duration).date(), time.max, tzinfo=at.tzinfo)
    return start_date, end_date


def generate_month_strings(start_date: datetime, end_date: datetime) -> List[str]:
    """List the YYYY-MM months touched by a date range, inclusive."""
    months = []
    year, month = start_date.year, start_date.month
    while (year, month) <= (end_date.year, end_date.month):
        months.append(f"{year}-{month:02d}")
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def classify_plan_change(
    current: SubscriptionPackage,
    new: SubscriptionPackage,
) -> PlanChangeKind:
    """
    Classify a move between two packages.

    Price decides first; duration breaks a price tie. Identical price and
    duration is neither an upgrade nor a downgrade.
    """
    current_key = (current.price, current.duration)
    new_key = (new.price, new.duration)

    if new_key > current_key:
        return PlanChangeKind.UPGRADE
    if new_key < current_key:
        return PlanChangeKind.DOWNGRADE
    return PlanChangeKind.NONE


def quote_plan_change(
    subscription: Subscription,
    current_package: SubscriptionPackage,
    new_package: SubscriptionPackage,
    now: datetime,
    expected: Optional[PlanChangeKind] = None,
) -> PlanChangeQuote:
    """
    Build the confirmation quote for switching `subscription` to `new_package`.

    Upgrades take effect now and start a fresh period today. Downgrades
    take effect when the current period ends.

    Raises:
        ValidationError: the packages are equivalent, the currencies differ,
            or the change is not of the `expected` kind
    """
    if new_package.id == current_package.id:
        raise ValidationError("You are already subscribed to this package")

    if new_package.currency.upper() != current_package.currency.upper():
        raise ValidationError(
            f"Package currency ({new_package.currency}) does not match "
            f"current subscription currency ({current_package.currency})"
        )

    kind = classify_plan_change(current_package, new_package)
    if kind == PlanChangeKind.NONE:
        raise ValidationError(
            "New package must have a different price or duration",
            {"package_id": new_package.id},
        )
    if expected is not None and kind != expected:
        raise ValidationError(
            f"Package {new_package.id} is not a valid {expected.value}",
            {"package_id": new_package.id, "kind": kind.value},
        )

    proration = calculate_proration(
        current_price=current_package.price,
        current_duration=current_package.duration,
        new_price=new_package.price,
        new_duration=new_package.duration,
        subscription_start_date=subscription.anchor_date,
        now=now,
    )

    effective_at = now if kind == PlanChangeKind.UPGRADE else subscription.end_date
    new_start_date, new_end_date = calculate_new_subscription_dates(
        effective_at, new_package.duration
    )

    return PlanChangeQuote(
        kind=kind,
        current_package=current_package,
        new_package=new_package,
        proration=proration,
        quoted_at=now,
        effective_at=effective_at,
        new_start_date=new_start_date,
        new_end_date=new_end_date,
        months_covered=generate_month_strings(new_start_date, new_end_date),
    )
