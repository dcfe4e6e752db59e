"""
Unit tests for the billing API client.

Requests are served by an httpx.MockTransport so paths, bodies and the
error mapping can be checked without a server.
"""

import json
import pytest
import httpx
from decimal import Decimal

from student_billing.domain.subscription import PaymentProvider, SubscriptionStatus
from student_billing.infrastructure.api.billing_client import BillingApiClient
from student_billing.infrastructure.exceptions import (
    GENERIC_ERROR_MESSAGE,
    ApiRequestError,
    NetworkError,
)


SUBSCRIPTION_ROW = {
    "id": 7,
    "studentId": 10,
    "packageId": 2,
    "status": "canceled",
    "startDate": "2025-01-01T00:00:00Z",
    "createdAt": "2025-01-01T00:00:00Z",
    "endDate": "2025-04-01T00:00:00",
    "package": {"id": 2, "name": "Premium", "duration": 3, "price": "250.00", "currency": "USD"},
}


class Recorder:
    """Transport handler that records requests and replies with a canned response."""

    def __init__(self, status_code=200, body=None, error=None):
        self.status_code = status_code
        self.body = body if body is not None else {"success": True}
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    @property
    def last_json(self):
        return json.loads(self.last.content)


@pytest.fixture
def make_client(settings):
    def factory(handler):
        http_client = httpx.AsyncClient(
            base_url=settings.api_base_url,
            transport=httpx.MockTransport(handler),
        )
        return BillingApiClient(settings, http_client=http_client)

    return factory


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_subscriptions_parses_camel_case(self, make_client):
        recorder = Recorder(body={"success": True, "subscriptions": [SUBSCRIPTION_ROW]})
        client = make_client(recorder)

        rows = await client.list_subscriptions(10)

        assert recorder.last.method == "GET"
        assert recorder.last.url.path == "/api/subscriptions"
        assert recorder.last.url.params["studentId"] == "10"
        assert rows[0].id == 7
        assert rows[0].status == SubscriptionStatus.CANCELLED
        assert rows[0].end_date.tzinfo is not None
        assert rows[0].package.price == Decimal("250.00")

    @pytest.mark.asyncio
    async def test_list_students(self, make_client):
        recorder = Recorder(body={"success": True, "students": [{"id": 10, "name": "Abebe"}]})
        client = make_client(recorder)

        students = await client.list_students()

        assert recorder.last.url.params["list"] == "true"
        assert students[0].name == "Abebe"

    @pytest.mark.asyncio
    async def test_missing_list_is_empty(self, make_client):
        client = make_client(Recorder(body={"success": True}))

        assert await client.list_packages(10) == []

    @pytest.mark.asyncio
    async def test_malformed_row_is_unexpected_response(self, make_client):
        client = make_client(Recorder(body={"success": True, "subscriptions": [{"id": "x"}]}))

        with pytest.raises(ApiRequestError) as exc_info:
            await client.list_subscriptions(10)

        assert exc_info.value.message == "Unexpected response from server"

    @pytest.mark.asyncio
    async def test_past_due_and_unknown_statuses_parse(self, make_client):
        rows = [
            {**SUBSCRIPTION_ROW, "id": 8, "status": "past_due"},
            {**SUBSCRIPTION_ROW, "id": 9, "status": "paused"},
            {**SUBSCRIPTION_ROW, "id": 10, "status": "active"},
        ]
        client = make_client(Recorder(body={"success": True, "subscriptions": rows}))

        parsed = await client.list_subscriptions(10)

        assert [row.status for row in parsed] == [
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.INACTIVE,
            SubscriptionStatus.ACTIVE,
        ]
        assert not parsed[0].is_active
        assert not parsed[1].is_active


class TestCheckout:

    @pytest.mark.asyncio
    async def test_deposit_checkout_body(self, make_client):
        recorder = Recorder(body={"success": True, "checkoutUrl": "https://pay.test/1", "txRef": "dep-1"})
        client = make_client(recorder)

        checkout = await client.create_deposit_checkout(10, PaymentProvider.CHAPA, Decimal("500.50"), "ETB")

        assert recorder.last.method == "POST"
        assert recorder.last.url.path == "/api/payments/checkout"
        assert recorder.last_json == {
            "studentId": 10,
            "provider": "chapa",
            "amount": 500.5,
            "currency": "ETB",
            "mode": "deposit",
        }
        assert checkout.checkout_url == "https://pay.test/1"
        assert checkout.tx_ref == "dep-1"

    @pytest.mark.asyncio
    async def test_subscription_checkout_body(self, make_client):
        recorder = Recorder(body={"success": True, "checkoutUrl": "https://pay.test/2", "txRef": "tx-2"})
        client = make_client(recorder)

        await client.create_subscription_checkout(10, 2)

        assert recorder.last.url.path == "/api/payments/subscription"
        assert recorder.last_json == {"studentId": 10, "packageId": 2}

    @pytest.mark.asyncio
    async def test_verify_session_sends_student_and_package(self, make_client):
        recorder = Recorder(
            body={"success": True, "verified": True, "finalized": True, "subscription": SUBSCRIPTION_ROW}
        )
        client = make_client(recorder)

        result = await client.verify_session(10, 2)

        assert recorder.last.url.path == "/api/payments/verify-session"
        assert recorder.last_json == {"studentId": 10, "packageId": 2}
        assert result.confirmed is True
        assert result.subscription.id == 7


class TestMutations:

    @pytest.mark.asyncio
    async def test_upgrade(self, make_client):
        recorder = Recorder(
            body={"success": True, "message": "Upgraded", "credit": {"amount": 100.0, "message": "Credit applied"}}
        )
        client = make_client(recorder)

        response = await client.upgrade_subscription(7, 3)

        assert recorder.last.method == "PATCH"
        assert recorder.last.url.path == "/api/subscriptions/7/upgrade"
        assert recorder.last_json == {"newPackageId": 3}
        assert response.credit.amount == Decimal("100.0")

    @pytest.mark.asyncio
    async def test_downgrade(self, make_client):
        recorder = Recorder(body={"success": True})
        client = make_client(recorder)

        await client.downgrade_subscription(7, 1)

        assert recorder.last.url.path == "/api/subscriptions/7/downgrade"

    @pytest.mark.asyncio
    async def test_cancel_returns_message(self, make_client):
        recorder = Recorder(body={"success": True, "message": "Cancelled at period end"})
        client = make_client(recorder)

        message = await client.cancel_subscription(7)

        assert recorder.last.method == "DELETE"
        assert recorder.last.url.path == "/api/subscriptions/7"
        assert message == "Cancelled at period end"

    @pytest.mark.asyncio
    async def test_renew(self, make_client):
        recorder = Recorder(body={"success": True})
        client = make_client(recorder)

        assert await client.renew_subscription(7) is None
        assert recorder.last.method == "POST"
        assert recorder.last.url.path == "/api/subscriptions/7"


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_server_error_message_is_verbatim(self, make_client):
        client = make_client(Recorder(400, {"success": False, "error": "Package is inactive"}))

        with pytest.raises(ApiRequestError) as exc_info:
            await client.create_subscription_checkout(10, 2)

        assert exc_info.value.user_message == "Package is inactive"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_success_false_with_ok_status(self, make_client):
        client = make_client(Recorder(200, {"success": False, "message": "Subscription not found"}))

        with pytest.raises(ApiRequestError) as exc_info:
            await client.cancel_subscription(7)

        assert exc_info.value.user_message == "Subscription not found"

    @pytest.mark.asyncio
    async def test_error_without_message_is_generic(self, make_client):
        client = make_client(Recorder(500, {"success": False}))

        with pytest.raises(ApiRequestError) as exc_info:
            await client.list_subscriptions(10)

        assert exc_info.value.user_message == GENERIC_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self, make_client):
        client = make_client(Recorder(error=httpx.ConnectError("connection refused")))

        with pytest.raises(NetworkError):
            await client.list_subscriptions(10)

    @pytest.mark.asyncio
    async def test_non_object_body(self, make_client):
        client = make_client(Recorder(body=["not", "an", "object"]))

        with pytest.raises(ApiRequestError):
            await client.list_packages(10)


class TestClientLifecycle:

    def test_bearer_token_header(self, settings):
        client = BillingApiClient(settings.model_copy(update={"api_token": "secret"}))

        assert client._client.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, settings):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(Recorder()))

        async with BillingApiClient(settings, http_client=http_client):
            pass

        assert http_client.is_closed is False
        await http_client.aclose()
