from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.middleware import setup_exception_handlers
from core.responses import SignatureInvalidException
from routers import public_router, stripe_router
from services.account_service import AccountService
from services.account_store import InMemoryAccountStore
from services.event_normalizer import EventNormalizer
from services.ledger_service import LedgerService
from services.stripe_billing_client import StripeAPIError

VALID_SIGNATURE = "t=1,v1=valid"


class StubStripeClient:
    """서명 검증과 조회 응답을 고정한 Stripe 클라이언트 스텁."""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.fail_lookups = False
        self.created: List[Dict[str, Any]] = []
        self.deleted_customers: List[str] = []
        self.delete_error: Optional[Exception] = None

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        if signature_header != VALID_SIGNATURE:
            raise SignatureInvalidException("Webhook Error: No signatures found matching the expected signature")
        return json.loads(raw_body)

    async def retrieve_checkout_session(self, session_id, expand=None):
        if self.fail_lookups:
            raise StripeAPIError("Stripe API 서버 오류가 발생했습니다.", 503)
        return self.sessions[session_id]

    async def retrieve_subscription(self, subscription_id):
        if self.fail_lookups:
            raise StripeAPIError("Stripe API 서버 오류가 발생했습니다.", 503)
        return self.subscriptions[subscription_id]

    async def retrieve_product(self, product_id):
        raise AssertionError("상품은 확장된 상태로 전달되어야 합니다")

    async def create_checkout_session(self, account_id, email, price_id, success_url, cancel_url):
        self.created.append({"uid": account_id, "email": email, "price_id": price_id})
        return {"id": "cs_new", "url": "https://checkout.stripe.com/c/cs_new"}

    async def delete_customer(self, customer_id):
        self.deleted_customers.append(customer_id)
        if self.delete_error:
            raise self.delete_error
        return {"id": customer_id, "deleted": True}


@pytest.fixture
def stripe_client() -> StubStripeClient:
    client = StubStripeClient()
    client.sessions["cs_1"] = {
        "id": "cs_1",
        "invoice": "in_1",
        "line_items": {
            "data": [
                {"price": {"product": {"id": "prod_1", "name": "Basic", "metadata": {"credits": "20", "planName": "Basic"}}}}
            ]
        },
    }
    client.subscriptions["sub_1"] = {"id": "sub_1", "metadata": {"uid": "user-1"}}
    return client


@pytest.fixture
def store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def test_client(stripe_client, store) -> TestClient:
    """stripe 라우터만 포함한 경량 FastAPI 앱 생성."""

    app = FastAPI()
    setup_exception_handlers(app)
    app.include_router(public_router.router)
    app.include_router(stripe_router.router)

    ledger = LedgerService(store, backoff_factor=0)
    account_service = AccountService(store, stripe_client, success_url="https://app/success", cancel_url="https://app/")

    app.dependency_overrides[stripe_router.get_provider_client] = lambda: stripe_client
    app.dependency_overrides[stripe_router.get_event_normalizer] = lambda: EventNormalizer(stripe_client)
    app.dependency_overrides[stripe_router.get_ledger_service] = lambda: ledger
    app.dependency_overrides[stripe_router.get_account_service] = lambda: account_service

    return TestClient(app)


def _post_event(client: TestClient, event: Dict[str, Any], signature: Optional[str] = VALID_SIGNATURE):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post("/webhook", content=json.dumps(event).encode("utf-8"), headers=headers)


def _checkout_event() -> Dict[str, Any]:
    return {
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "client_reference_id": "user-1", "customer": "cus_1", "subscription": "sub_1"}},
    }


def test_checkout_event_grants_credits_once(test_client, store):
    first = _post_event(test_client, _checkout_event())
    replay = _post_event(test_client, _checkout_event())

    assert first.status_code == 200
    assert first.json() == {"received": True}
    assert replay.status_code == 200

    document = store.document("user-1")
    assert document["credits"] == 20
    assert document["plan"] == "Basic"
    assert [p["invoiceId"] for p in document["payments"]] == ["in_1"]


def test_invalid_signature_is_rejected(test_client, store):
    response = _post_event(test_client, _checkout_event(), signature="t=1,v1=forged")

    assert response.status_code == 400
    assert response.json()["error_code"] == "SIGNATURE_INVALID"
    assert store.document("user-1") is None


def test_missing_signature_is_rejected(test_client):
    response = _post_event(test_client, _checkout_event(), signature=None)

    assert response.status_code == 400


def test_ignored_event_does_not_write(test_client, store):
    event = {
        "id": "evt_first_invoice",
        "type": "invoice.paid",
        "data": {"object": {"id": "in_1", "billing_reason": "subscription_create", "subscription": "sub_1"}},
    }

    response = _post_event(test_client, event)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert store.write_count == 0


def test_lookup_failure_returns_500_for_redelivery(test_client, stripe_client, store):
    stripe_client.fail_lookups = True

    response = _post_event(test_client, _checkout_event())

    assert response.status_code == 500
    assert response.json()["error_code"] == "TRANSIENT_FAILURE"
    assert store.write_count == 0


def test_subscription_deleted_resets_account(test_client, store):
    _post_event(test_client, _checkout_event())
    event = {
        "id": "evt_deleted",
        "type": "customer.subscription.deleted",
        "data": {"object": {"id": "sub_1", "metadata": {"uid": "user-1"}}},
    }

    response = _post_event(test_client, event)

    assert response.status_code == 200
    document = store.document("user-1")
    assert document["credits"] == 0
    assert document["plan"] == "expired"
    assert document["lastPaymentStatus"] == "canceled"
    assert len(document["payments"]) == 1


def test_unconfigured_stripe_returns_500(store):
    app = FastAPI()
    setup_exception_handlers(app)
    app.include_router(stripe_router.router)
    app.dependency_overrides[stripe_router.get_provider_client] = lambda: None
    app.dependency_overrides[stripe_router.get_event_normalizer] = lambda: None
    app.dependency_overrides[stripe_router.get_ledger_service] = lambda: LedgerService(store)

    response = _post_event(TestClient(app), _checkout_event())

    assert response.status_code == 500


def test_webhook_liveness(test_client):
    response = test_client.get("/webhook")

    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True}


def test_create_checkout_session_returns_url(test_client, stripe_client):
    response = test_client.post(
        "/create-checkout-session",
        json={"uid": "user-1", "email": "a@example.com", "priceId": "price_1"},
    )

    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.com/c/cs_new"}
    assert stripe_client.created == [{"uid": "user-1", "email": "a@example.com", "price_id": "price_1"}]


def test_create_checkout_session_requires_price(test_client, stripe_client):
    response = test_client.post("/create-checkout-session", json={"uid": "user-1", "email": "a@example.com"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "MISSING_PRICE_ID"
    assert stripe_client.created == []


def test_create_checkout_session_requires_user_data(test_client):
    response = test_client.post("/create-checkout-session", json={"priceId": "price_1"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "MISSING_USER_DATA"


def test_delete_user_data_removes_customer_and_record(test_client, stripe_client, store):
    _post_event(test_client, _checkout_event())

    response = test_client.post("/delete-user-data", json={"uid": "user-1"})

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert stripe_client.deleted_customers == ["cus_1"]
    assert store.document("user-1") is None


def test_delete_user_data_continues_when_customer_delete_fails(test_client, stripe_client, store):
    _post_event(test_client, _checkout_event())
    stripe_client.delete_error = StripeAPIError("요청한 Stripe 리소스를 찾을 수 없습니다.", 404)

    response = test_client.post("/delete-user-data", json={"uid": "user-1"})

    assert response.status_code == 200
    assert store.document("user-1") is None


def test_root_reports_active(test_client):
    response = test_client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "active"
