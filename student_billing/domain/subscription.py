"""
Subscription Domain Models

Domain models for the student subscription bounded context.
Enums, DTOs, and domain entities shared by the calculator, the
reconciler and the action orchestrator. Wire payloads use camelCase,
Python code uses snake_case.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class SubscriptionStatus(str, Enum):
    """Subscription statuses observed by the client."""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"   # Renewal payment failed
    INACTIVE = "inactive"   # Any other server status


class PaymentProvider(str, Enum):
    """Checkout gateways the dashboard API can route to."""
    CHAPA = "chapa"     # Local card + mobile money
    STRIPE = "stripe"   # Every other currency


# Server spellings folded into the statuses the client reasons about
_STATUS_ALIASES = {
    "canceled": SubscriptionStatus.CANCELLED,
    "trialing": SubscriptionStatus.ACTIVE,
}

_KNOWN_STATUSES = {status.value for status in SubscriptionStatus}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so they compare with aware ones."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Base for models exchanged with the dashboard API."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Domain Entities
# =============================================================================

class SubscriptionPackage(WireModel):
    """A purchasable recurring plan. Read-only on the client."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    duration: int = Field(ge=1, description="Billing period length in months")
    price: Decimal = Field(ge=0)
    currency: str
    description: Optional[str] = None
    payment_link: Optional[str] = None
    purchase_count: int = Field(default=0, ge=0)


class Subscription(WireModel):
    """A student's subscription row as reported by the server."""
    id: int
    student_id: int
    package_id: int
    status: SubscriptionStatus
    start_date: Optional[datetime] = None
    created_at: datetime
    end_date: datetime
    next_billing_date: Optional[datetime] = None
    package: Optional[SubscriptionPackage] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.lower()
            if lowered in _STATUS_ALIASES:
                return _STATUS_ALIASES[lowered]
            if lowered in _KNOWN_STATUSES:
                return lowered
            # Unknown statuses never count as active
            return SubscriptionStatus.INACTIVE
        return value

    @field_validator("start_date", "created_at", "end_date", "next_billing_date")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def anchor_date(self) -> datetime:
        """Date proration measures elapsed time from."""
        return self.start_date or self.created_at

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        """A row past its end date is expired whatever its status says."""
        return self.end_date < now


class PendingCheckout(WireModel):
    """Checkout metadata persisted before redirecting to a provider."""
    tx_ref: str
    student_id: int
    chat_id: Optional[str] = None
    package_id: Optional[int] = None


class StudentSummary(WireModel):
    """Entry of the student picker list."""
    id: int
    name: str
    package: Optional[str] = None
    subject: Optional[str] = None
    teacher: Optional[str] = None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CheckoutResponse(WireModel):
    """Response of both checkout endpoints (deposit and subscription)."""
    success: bool = True
    checkout_url: str
    tx_ref: str


class VerifySessionResponse(WireModel):
    """Response of the verify-session endpoint."""
    verified: bool = False
    finalized: bool = False
    subscription: Optional[Subscription] = None

    @property
    def confirmed(self) -> bool:
        return self.verified or self.finalized


class PlanChangeCredit(WireModel):
    """Credit issued by the server for unused time."""
    amount: Decimal
    message: Optional[str] = None


class PlanChangeResponse(WireModel):
    """Response of the upgrade and downgrade endpoints."""
    success: bool = True
    message: Optional[str] = None
    credit: Optional[PlanChangeCredit] = None


class ActionResult(BaseModel):
    """Outcome of a user-initiated action, ready for display."""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    credit: Optional[PlanChangeCredit] = None
    checkout_url: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)


def provider_for_currency(
    currency: str,
    local_currencies: list[str],
) -> PaymentProvider:
    """Route a currency to the gateway that settles it."""
    if currency.upper() in local_currencies:
        return PaymentProvider.CHAPA
    return PaymentProvider.STRIPE
