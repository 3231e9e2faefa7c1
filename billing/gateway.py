from __future__ import annotations

import abc
import secrets
import threading
from typing import Any, Dict, Literal, Optional

import httpx

from config import (
    MOCK_GATEWAY_SECRET,
    PAYMENT_GATEWAY_TIMEOUT_SECONDS,
    PAYMENT_PROVIDER,
    RAZORPAY_API_BASE_URL,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
)

GatewayName = Literal["mock", "razorpay"]


class PaymentGatewayError(RuntimeError):
    """A gateway call failed. ``retryable`` is set for transient failures."""

    def __init__(self, message: str, *, retryable: bool = False, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class PaymentGatewayTimeout(PaymentGatewayError):
    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class PaymentGatewayConfigError(RuntimeError):
    pass


class BasePaymentGateway(abc.ABC):
    """
    Order-based payment gateway.

    Orders are plain dicts in the gateway's own shape; callers pass them
    through untouched. ``secret`` is the shared key used to sign payment
    callbacks.
    """

    @property
    @abc.abstractmethod
    def name(self) -> GatewayName:
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def key_id(self) -> str:
        """Public key id handed to the checkout client."""

    @property
    @abc.abstractmethod
    def secret(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def create_order(self, *, amount_minor: int, currency: str, receipt: str) -> Dict[str, Any]:
        """Create an order for ``amount_minor`` (paise/cents) tagged with ``receipt``."""

    @abc.abstractmethod
    def fetch_order(self, order_id: str) -> Dict[str, Any]:
        raise NotImplementedError


class MockGateway(BasePaymentGateway):
    """
    In-memory gateway for development and tests.

    Orders live only in this process and never move money; they must never
    be treated as real payments.
    """

    def __init__(self, *, key_id: str = "rzp_test_mock", secret: Optional[str] = None) -> None:
        self._key_id = key_id
        self._secret = secret if secret is not None else MOCK_GATEWAY_SECRET
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> GatewayName:
        return "mock"

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def secret(self) -> str:
        return self._secret

    def create_order(self, *, amount_minor: int, currency: str, receipt: str) -> Dict[str, Any]:
        order_id = f"order_{secrets.token_hex(7)}"
        order = {
            "id": order_id,
            "entity": "order",
            "amount": int(amount_minor),
            "amount_paid": 0,
            "amount_due": int(amount_minor),
            "currency": str(currency or "INR").upper(),
            "receipt": receipt,
            "status": "created",
            "attempts": 0,
        }
        with self._lock:
            self._orders[order_id] = order
        return dict(order)

    def add_order(self, order: Dict[str, Any]) -> None:
        # Development/test only: seed an order as if the real gateway had created it
        # (e.g. to replay a captured Razorpay callback). Keyed by its ``id``.
        with self._lock:
            self._orders[str(order["id"])] = dict(order)

    def fetch_order(self, order_id: str) -> Dict[str, Any]:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise PaymentGatewayError(f"order not found: {order_id}", status_code=404)
        return dict(order)


class RazorpayGateway(BasePaymentGateway):
    """Razorpay Orders API over plain HTTPS with basic auth."""

    def __init__(
        self,
        *,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._key_id = key_id if key_id is not None else RAZORPAY_KEY_ID
        self._key_secret = key_secret if key_secret is not None else RAZORPAY_KEY_SECRET
        if not self._key_id or not self._key_secret:
            raise PaymentGatewayConfigError("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET is missing")
        self._base_url = (base_url or RAZORPAY_API_BASE_URL).rstrip("/")
        self._timeout = float(timeout if timeout is not None else PAYMENT_GATEWAY_TIMEOUT_SECONDS)
        self._client = client

    @property
    def name(self) -> GatewayName:
        return "razorpay"

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def secret(self) -> str:
        return self._key_secret

    def _request(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        kwargs: Dict[str, Any] = {
            "auth": (self._key_id, self._key_secret),
            "headers": {"Accept": "application/json"},
            "timeout": self._timeout,
        }
        if json_body is not None:
            kwargs["json"] = json_body
        try:
            if self._client is not None:
                resp = self._client.request(method, url, **kwargs)
            else:
                resp = httpx.request(method, url, trust_env=False, **kwargs)
        except httpx.TimeoutException as exc:
            raise PaymentGatewayTimeout(f"razorpay {method} {path} timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"razorpay {method} {path} failed: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            raise PaymentGatewayError(
                f"razorpay {method} {path} returned {resp.status_code}: {(resp.text or '')[:200]}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
                status_code=resp.status_code,
            )
        try:
            data = resp.json() if resp.content else {}
        except ValueError as exc:
            raise PaymentGatewayError(f"razorpay {method} {path} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise PaymentGatewayError(f"razorpay {method} {path} returned unexpected payload")
        return data

    def create_order(self, *, amount_minor: int, currency: str, receipt: str) -> Dict[str, Any]:
        payload = {
            "amount": int(amount_minor),
            "currency": str(currency or "INR").upper(),
            "receipt": receipt,
        }
        order = self._request("POST", "/orders", json_body=payload)
        if not str(order.get("id") or "").strip():
            raise PaymentGatewayError(f"razorpay order id missing: {order}")
        return order

    def fetch_order(self, order_id: str) -> Dict[str, Any]:
        key = str(order_id or "").strip()
        if not key:
            raise PaymentGatewayError("order id is required")
        return self._request("GET", f"/orders/{key}")


def get_payment_gateway(name: Optional[str] = None) -> BasePaymentGateway:
    """
    Gateway factory.

    If ``name`` is not provided, reads from config.PAYMENT_PROVIDER.
    """

    selected = (name or PAYMENT_PROVIDER or "mock").strip().lower()
    if selected == "razorpay":
        return RazorpayGateway()
    return MockGateway()
