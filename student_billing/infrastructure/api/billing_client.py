"""
Billing API Client

Async HTTP client for the externally owned student dashboard API:
student data, subscription packages, subscriptions, checkout sessions
and plan changes.

Every failure is normalised into the exception hierarchy:
- transport problems raise NetworkError
- non-2xx responses and `{success: false}` bodies raise ApiRequestError
  carrying the server message verbatim when one is present
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from student_billing.config.settings import Settings, get_settings
from student_billing.domain.subscription import (
    CheckoutResponse,
    PaymentProvider,
    PlanChangeResponse,
    StudentSummary,
    Subscription,
    SubscriptionPackage,
    VerifySessionResponse,
)
from student_billing.infrastructure.exceptions import (
    ApiRequestError,
    ConfigurationError,
    NetworkError,
)


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

UNEXPECTED_RESPONSE_MESSAGE = "Unexpected response from server"


class BillingApiClient:
    """
    Client for the dashboard REST endpoints.

    Owns an httpx.AsyncClient unless one is injected. Use as an async
    context manager or call `aclose()` when done.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        if not settings.api_base_url:
            raise ConfigurationError("API_BASE_URL is not configured", missing_keys=["api_base_url"])

        headers = {"Accept": "application/json"}
        if settings.api_token:
            headers["Authorization"] = f"Bearer {settings.api_token}"

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout,
            headers=headers,
        )

    async def __aenter__(self) -> "BillingApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded JSON object body."""
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TransportError as e:
            logger.warning(f"[API] {method} {path} failed: {e!r}")
            raise NetworkError(f"{method} {path} failed", endpoint=path, original_error=e)

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_error or (isinstance(payload, dict) and payload.get("success") is False):
            message = None
            if isinstance(payload, dict):
                message = payload.get("error") or payload.get("message")
            logger.warning(f"[API] {method} {path} rejected with HTTP {response.status_code}: {message}")
            raise ApiRequestError(
                message if isinstance(message, str) else None,
                status_code=response.status_code,
                endpoint=path,
            )

        if not isinstance(payload, dict):
            raise ApiRequestError(
                UNEXPECTED_RESPONSE_MESSAGE,
                status_code=response.status_code,
                endpoint=path,
            )

        return payload

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, endpoint: str) -> ModelT:
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"[API] Malformed {model.__name__} from {endpoint}: {e}")
            raise ApiRequestError(UNEXPECTED_RESPONSE_MESSAGE, endpoint=endpoint, original_error=e)

    def _parse_list(self, model: Type[ModelT], payload: Dict[str, Any], key: str, endpoint: str) -> List[ModelT]:
        items = payload.get(key) or []
        if not isinstance(items, list):
            raise ApiRequestError(UNEXPECTED_RESPONSE_MESSAGE, endpoint=endpoint)
        return [self._parse(model, item, endpoint) for item in items]

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_students(self) -> List[StudentSummary]:
        """Students linked to the current account."""
        payload = await self._request("GET", "/students", params={"list": "true"})
        return self._parse_list(StudentSummary, payload, "students", "/students")

    async def get_student(self, student_id: int) -> Dict[str, Any]:
        """
        Full dashboard payload for one student.

        Attendance, tests and payments are presentation data and are
        returned as decoded JSON.
        """
        return await self._request("GET", "/students", params={"studentId": student_id})

    async def list_packages(self, student_id: int) -> List[SubscriptionPackage]:
        payload = await self._request(
            "GET", "/subscription-packages", params={"studentId": student_id}
        )
        return self._parse_list(SubscriptionPackage, payload, "packages", "/subscription-packages")

    async def list_subscriptions(self, student_id: int) -> List[Subscription]:
        payload = await self._request("GET", "/subscriptions", params={"studentId": student_id})
        return self._parse_list(Subscription, payload, "subscriptions", "/subscriptions")

    # =========================================================================
    # Checkout
    # =========================================================================

    async def create_deposit_checkout(
        self,
        student_id: int,
        provider: PaymentProvider,
        amount: Decimal,
        currency: str,
    ) -> CheckoutResponse:
        """Start a one-off deposit checkout with the given provider."""
        payload = await self._request(
            "POST",
            "/payments/checkout",
            json={
                "studentId": student_id,
                "provider": provider.value,
                "amount": float(amount),
                "currency": currency,
                "mode": "deposit",
            },
        )
        return self._parse(CheckoutResponse, payload, "/payments/checkout")

    async def create_subscription_checkout(
        self,
        student_id: int,
        package_id: int,
    ) -> CheckoutResponse:
        """Start a recurring subscription checkout for a package."""
        payload = await self._request(
            "POST",
            "/payments/subscription",
            json={"studentId": student_id, "packageId": package_id},
        )
        return self._parse(CheckoutResponse, payload, "/payments/subscription")

    async def verify_session(
        self,
        student_id: int,
        package_id: Optional[int],
    ) -> VerifySessionResponse:
        """
        Ask the server whether a checkout has been confirmed.

        No session id is sent: the server matches by student and package.
        """
        payload = await self._request(
            "POST",
            "/payments/verify-session",
            json={"studentId": student_id, "packageId": package_id},
        )
        return self._parse(VerifySessionResponse, payload, "/payments/verify-session")

    # =========================================================================
    # Subscription Mutations
    # =========================================================================

    async def upgrade_subscription(self, subscription_id: int, new_package_id: int) -> PlanChangeResponse:
        path = f"/subscriptions/{subscription_id}/upgrade"
        payload = await self._request("PATCH", path, json={"newPackageId": new_package_id})
        return self._parse(PlanChangeResponse, payload, path)

    async def downgrade_subscription(self, subscription_id: int, new_package_id: int) -> PlanChangeResponse:
        path = f"/subscriptions/{subscription_id}/downgrade"
        payload = await self._request("PATCH", path, json={"newPackageId": new_package_id})
        return self._parse(PlanChangeResponse, payload, path)

    async def cancel_subscription(self, subscription_id: int) -> Optional[str]:
        """Cancel at period end. Returns the server message, if any."""
        payload = await self._request("DELETE", f"/subscriptions/{subscription_id}")
        return payload.get("message")

    async def renew_subscription(self, subscription_id: int) -> Optional[str]:
        """Undo a pending cancellation. Returns the server message, if any."""
        payload = await self._request("POST", f"/subscriptions/{subscription_id}")
        return payload.get("message")

