from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Final, Mapping, Optional

from pydantic import ValidationError

from config import PAYMENT_CURRENCY
from observability import get_logger, log_event

from .gateway import BasePaymentGateway, PaymentGatewayError
from .models import Invoice, InvoiceStatus
from .repository import BillingRepository, InvoiceAlreadyPaidError, InvoiceNotFoundError
from .schemas import MarkPaidRequest, PaymentCallback

MESSAGE_VERIFIED: Final[str] = "Payment verified and invoice updated."
MESSAGE_VERIFICATION_FAILED: Final[str] = "Payment verification failed."
MESSAGE_INVALID_CALLBACK: Final[str] = "Payment callback is missing order id, payment id or signature."

_LOGGER = get_logger("billing.service")


@dataclass(frozen=True)
class PaymentVerificationResult:
    success: bool
    message: str
    invoice_id: Optional[str] = None
    already_paid: bool = False

    def as_dict(self) -> dict[str, Any]:
        """Response body for the callback caller: only success and message leave the server."""
        return {"success": self.success, "message": self.message}


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 over ``"<order_id>|<payment_id>"`` keyed by the gateway secret."""

    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(str(secret or "").encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not secret:
        return False
    provided = str(signature or "").strip()
    if not provided:
        return False
    expected = compute_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, provided)


def create_payment_order(
    repo: BillingRepository,
    gateway: BasePaymentGateway,
    *,
    invoice_id: str,
    owner_id: Optional[str] = None,
    currency: Optional[str] = None,
) -> dict[str, Any]:
    """
    Open a gateway order for a pending invoice.

    The invoice id travels as the order's ``receipt`` so the payment
    callback can find the invoice again. Not-found and already-paid are
    rejected before the gateway is contacted. Repeated calls create
    separate gateway orders.
    """

    invoice = repo.get_invoice(invoice_id)
    if invoice is None or (owner_id is not None and invoice.owner_id != owner_id):
        raise InvoiceNotFoundError(f"invoice not found: {invoice_id}")
    if invoice.status == InvoiceStatus.PAID:
        raise InvoiceAlreadyPaidError(f"invoice is already paid: {invoice_id}")

    order = gateway.create_order(
        amount_minor=int(invoice.amount_minor),
        currency=(currency or PAYMENT_CURRENCY),
        receipt=invoice.id,
    )
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.payment.order_created",
        invoice_id=invoice.id,
        order_id=order.get("id"),
        amount_minor=int(invoice.amount_minor),
        provider=gateway.name,
    )
    return order


def verify_payment(
    repo: BillingRepository,
    gateway: BasePaymentGateway,
    *,
    order_id: str,
    payment_id: str,
    signature: str,
    now: Optional[dt.datetime] = None,
) -> PaymentVerificationResult:
    """
    Authenticate a payment callback and settle the invoice it pays for.

    A bad signature is an ordinary rejection, not an error. Gateway
    failures propagate as PaymentGatewayError and leave the invoice as-is.
    Every attempt is audited; when this raises, the audit row is committed
    on its own so the caller's rollback does not discard it.
    """

    if not verify_payment_signature(order_id, payment_id, signature, gateway.secret):
        repo.record_payment_audit(
            provider=gateway.name,
            outcome="rejected",
            external_order_id=order_id,
            external_payment_id=payment_id,
            signature=signature,
            signature_valid=False,
            detail="signature mismatch",
            occurred_at=now,
        )
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.payment.signature_rejected",
            order_id=order_id,
            payment_id=payment_id,
        )
        return PaymentVerificationResult(success=False, message=MESSAGE_VERIFICATION_FAILED)

    try:
        order = gateway.fetch_order(order_id)
    except PaymentGatewayError as exc:
        repo.record_payment_audit_now(
            provider=gateway.name,
            outcome="gateway_error",
            external_order_id=order_id,
            external_payment_id=payment_id,
            signature=signature,
            signature_valid=True,
            detail=f"retryable={exc.retryable}: {exc}",
            occurred_at=now,
        )
        log_event(
            _LOGGER,
            logging.ERROR,
            "billing.payment.gateway_error",
            order_id=order_id,
            payment_id=payment_id,
            retryable=exc.retryable,
            status_code=exc.status_code,
        )
        raise

    invoice_id = str(order.get("receipt") or "").strip()
    invoice = repo.get_invoice(invoice_id) if invoice_id else None
    if invoice is None:
        repo.record_payment_audit_now(
            provider=gateway.name,
            outcome="invoice_missing",
            external_order_id=order_id,
            external_payment_id=payment_id,
            signature=signature,
            signature_valid=True,
            invoice_id=invoice_id or None,
            detail="order receipt does not match an invoice",
            occurred_at=now,
        )
        raise InvoiceNotFoundError(f"invoice not found for order {order_id}: receipt={invoice_id or '-'}")

    already_paid = invoice.status == InvoiceStatus.PAID
    repo.mark_invoice_paid(invoice.id, paid_at=now, payment_id=payment_id)
    repo.record_payment_audit(
        provider=gateway.name,
        outcome="already_paid" if already_paid else "paid",
        external_order_id=order_id,
        external_payment_id=payment_id,
        signature=signature,
        signature_valid=True,
        invoice_id=invoice.id,
        occurred_at=now,
    )
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.payment.verified",
        order_id=order_id,
        payment_id=payment_id,
        invoice_id=invoice.id,
        already_paid=already_paid,
    )
    return PaymentVerificationResult(
        success=True,
        message=MESSAGE_VERIFIED,
        invoice_id=invoice.id,
        already_paid=already_paid,
    )


def verify_payment_callback(
    repo: BillingRepository,
    gateway: BasePaymentGateway,
    payload: Mapping[str, Any],
    *,
    now: Optional[dt.datetime] = None,
) -> PaymentVerificationResult:
    """Validate a raw callback body, then run :func:`verify_payment`."""

    try:
        callback = PaymentCallback.model_validate(dict(payload or {}))
    except ValidationError as exc:
        log_event(
            _LOGGER,
            logging.WARNING,
            "billing.payment.callback_invalid",
            errors=[".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()],
        )
        return PaymentVerificationResult(success=False, message=MESSAGE_INVALID_CALLBACK)
    return verify_payment(
        repo,
        gateway,
        order_id=callback.order_id,
        payment_id=callback.payment_id,
        signature=callback.signature,
        now=now,
    )


def mark_invoice_paid_manually(
    repo: BillingRepository,
    *,
    invoice_id: str,
    owner_id: str,
    now: Optional[dt.datetime] = None,
) -> Invoice:
    """
    Owner-initiated "mark as paid". No payment proof is required; the
    invoice must belong to ``owner_id``. Idempotent on paid invoices.
    """

    try:
        request = MarkPaidRequest.model_validate({"invoice_id": invoice_id, "owner_id": owner_id})
    except ValidationError as exc:
        raise InvoiceNotFoundError(f"invoice not found or not authorized: {invoice_id}") from exc
    invoice = repo.get_invoice(request.invoice_id)
    if invoice is None or invoice.owner_id != request.owner_id:
        raise InvoiceNotFoundError(f"invoice not found or not authorized: {request.invoice_id}")
    already_paid = invoice.status == InvoiceStatus.PAID
    invoice = repo.mark_invoice_paid(invoice.id, paid_at=now)
    log_event(
        _LOGGER,
        logging.INFO,
        "billing.invoice.marked_paid",
        invoice_id=invoice.id,
        owner_id=request.owner_id,
        already_paid=already_paid,
    )
    return invoice
