from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class PaymentCallback(BaseModel):
    """Client-relayed payment confirmation. Every field is untrusted."""

    order_id: str = Field(
        ...,
        validation_alias=AliasChoices("order_id", "orderId", "razorpay_order_id"),
        description="Gateway order id returned at order creation.",
    )
    payment_id: str = Field(
        ...,
        validation_alias=AliasChoices("payment_id", "paymentId", "razorpay_payment_id"),
        description="Gateway payment id for the captured payment.",
    )
    signature: str = Field(
        ...,
        validation_alias=AliasChoices("signature", "razorpay_signature"),
        description="Hex HMAC-SHA256 of '<order_id>|<payment_id>'.",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("order_id", "payment_id", "signature")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        normalized = str(value or "").strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized


class MarkPaidRequest(BaseModel):
    invoice_id: str = Field(..., validation_alias=AliasChoices("invoice_id", "invoiceId"))
    owner_id: str = Field(..., validation_alias=AliasChoices("owner_id", "ownerId"))

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("invoice_id", "owner_id")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        normalized = str(value or "").strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized
