from __future__ import annotations

import base64
import json

import httpx
import pytest

from billing import (
    MockGateway,
    PaymentGatewayConfigError,
    PaymentGatewayError,
    PaymentGatewayTimeout,
    RazorpayGateway,
    get_payment_gateway,
)

BASE_URL = "https://api.razorpay.test/v1"


def make_gateway(handler) -> RazorpayGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RazorpayGateway(key_id="rzp_test_key", key_secret="rzp_secret", base_url=BASE_URL, timeout=2, client=client)


def test_create_order_posts_amount_currency_and_receipt() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "entity": "order", "status": "created", **body})

    gateway = make_gateway(handler)
    order = gateway.create_order(amount_minor=49950, currency="inr", receipt="inv-1")

    assert order["id"] == "order_abc"
    assert order["amount"] == 49950
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/orders"
    assert json.loads(request.content) == {"amount": 49950, "currency": "INR", "receipt": "inv-1"}
    expected_auth = base64.b64encode(b"rzp_test_key:rzp_secret").decode()
    assert request.headers["Authorization"] == f"Basic {expected_auth}"


def test_fetch_order_reads_receipt() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/v1/orders/order_abc"
        return httpx.Response(200, json={"id": "order_abc", "receipt": "inv-1", "status": "paid"})

    gateway = make_gateway(handler)

    assert gateway.fetch_order("order_abc")["receipt"] == "inv-1"
    with pytest.raises(PaymentGatewayError, match="order id is required"):
        gateway.fetch_order(" ")


def test_timeout_is_reported_as_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    gateway = make_gateway(handler)

    with pytest.raises(PaymentGatewayTimeout) as excinfo:
        gateway.fetch_order("order_abc")
    assert excinfo.value.retryable is True


def test_connection_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = make_gateway(handler)

    with pytest.raises(PaymentGatewayError) as excinfo:
        gateway.create_order(amount_minor=100, currency="INR", receipt="inv-1")
    assert not isinstance(excinfo.value, PaymentGatewayTimeout)
    assert excinfo.value.retryable is True


@pytest.mark.parametrize(
    ("status_code", "retryable"),
    [(400, False), (401, False), (429, True), (503, True)],
)
def test_http_errors_carry_status_and_retryability(status_code: int, retryable: bool) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"error": {"code": "BAD_REQUEST_ERROR"}})

    gateway = make_gateway(handler)

    with pytest.raises(PaymentGatewayError) as excinfo:
        gateway.create_order(amount_minor=100, currency="INR", receipt="inv-1")
    assert excinfo.value.status_code == status_code
    assert excinfo.value.retryable is retryable


def test_order_without_id_is_an_error() -> None:
    gateway = make_gateway(lambda request: httpx.Response(200, json={"status": "created"}))

    with pytest.raises(PaymentGatewayError, match="order id missing"):
        gateway.create_order(amount_minor=100, currency="INR", receipt="inv-1")


def test_missing_keys_fail_fast() -> None:
    with pytest.raises(PaymentGatewayConfigError):
        RazorpayGateway(key_id="", key_secret="")
    with pytest.raises(PaymentGatewayConfigError):
        RazorpayGateway(key_id="rzp_test_key", key_secret="")


def test_gateway_factory_defaults_to_mock() -> None:
    gateway = get_payment_gateway("mock")
    assert isinstance(gateway, MockGateway)
    assert gateway.name == "mock"

    order = gateway.create_order(amount_minor=2500, currency="inr", receipt="inv-2")
    assert order["currency"] == "INR"
    assert gateway.fetch_order(order["id"])["receipt"] == "inv-2"
    with pytest.raises(PaymentGatewayError) as excinfo:
        gateway.fetch_order("order_missing")
    assert excinfo.value.status_code == 404
