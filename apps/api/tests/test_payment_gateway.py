import json

import httpx
import pytest

from services.billing_errors import GatewayUnavailableError
from services.payments.gateway import PaytenGateway, get_payten_api_url, sign_payload
from services.payments.types import PaymentSessionRequest, WebhookEventType, WebhookPayload


def _request() -> PaymentSessionRequest:
    return PaymentSessionRequest(
        amount=999,
        currency="USD",
        order_id="txn-1",
        customer_id="user-1",
        return_url="http://localhost:3000/en/payment/success?transaction_id=txn-1",
        cancel_url="http://localhost:3000/en/payment/cancel?transaction_id=txn-1",
        description="Top-Up Package - 10 Readings",
        metadata={"payment_type": "topup"},
    )


def _gateway(handler) -> PaytenGateway:
    return PaytenGateway(
        api_key="sk_test_key",
        merchant_id="merchant-9",
        transport=httpx.MockTransport(handler),
    )


def test_environment_selects_api_host():
    assert get_payten_api_url("production") == "https://api.payten.com/v1"
    assert get_payten_api_url("sandbox") == "https://sandbox.payten.com/v1"


@pytest.mark.asyncio
async def test_create_session_posts_order_and_returns_redirect():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["merchant"] = request.headers["X-Merchant-Id"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "pay_42", "payment_url": "https://pay.test/42"})

    session = await _gateway(handler).create_session(_request())

    assert session.external_payment_id == "pay_42"
    assert session.redirect_url == "https://pay.test/42"
    assert seen["url"] == "https://sandbox.payten.com/v1/payments"
    assert seen["auth"] == "Bearer sk_test_key"
    assert seen["merchant"] == "merchant-9"
    assert seen["body"]["order_id"] == "txn-1"
    assert seen["body"]["amount"] == 999


@pytest.mark.asyncio
async def test_provider_errors_surface_as_gateway_unavailable():
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"error": "upstream"})

    def incomplete(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "pay_1"})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    for handler in (server_error, incomplete, unreachable):
        with pytest.raises(GatewayUnavailableError):
            await _gateway(handler).create_session(_request())


@pytest.mark.asyncio
async def test_verify_status_normalizes_unknown_values_to_pending():
    statuses = {"pay_ok": "COMPLETED", "pay_odd": "authorised"}

    def handler(request: httpx.Request) -> httpx.Response:
        payment_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={"id": payment_id, "status": statuses[payment_id]})

    gateway = _gateway(handler)
    assert await gateway.verify_status("pay_ok") == "completed"
    assert await gateway.verify_status("pay_odd") == "pending"


def test_webhook_signature_is_hmac_of_raw_body():
    gateway = PaytenGateway(api_key="sk_test_key", merchant_id="merchant-9")
    body = b'{"eventType":"payment.completed","orderId":"txn-1"}'
    signature = sign_payload(body, "sk_test_key")

    assert gateway.validate_webhook_signature(body, signature)
    assert gateway.validate_webhook_signature(body, signature.upper())
    assert not gateway.validate_webhook_signature(body + b" ", signature)
    assert not gateway.validate_webhook_signature(body, "")


def test_webhook_payload_event_types():
    payload = WebhookPayload.model_validate_json(b'{"eventType": "payment.refunded", "orderId": "txn-1"}')
    assert payload.known_event_type() is WebhookEventType.REFUNDED

    unknown = WebhookPayload.model_validate_json(b'{"eventType": "payment.disputed", "orderId": "txn-1"}')
    assert unknown.known_event_type() is None
