from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .money import from_minor_units


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class BillingFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


class Client(Base):
    __tablename__ = "billing_clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[str] = mapped_column(String(254))
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Subscription(Base):
    __tablename__ = "billing_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    # Plain reference: clients can be deleted while subscriptions still point at them.
    client_id: Mapped[str] = mapped_column(String(36), index=True)
    amount_minor: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(Text)
    frequency: Mapped[BillingFrequency] = mapped_column(Enum(BillingFrequency, native_enum=False))
    next_due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor)


class Invoice(Base):
    """
    Self-contained billing record.

    Client details are copied at creation time so later client edits or
    deletion never rewrite invoice history.
    """

    __tablename__ = "billing_invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    client_name: Mapped[str] = mapped_column(String(200))
    client_email: Mapped[str] = mapped_column(String(254), default="")
    description: Mapped[str] = mapped_column(Text)
    amount_minor: Mapped[int] = mapped_column(Integer)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, native_enum=False), default=InvoiceStatus.PENDING
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True, index=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor)

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID


class JobLock(Base):
    __tablename__ = "billing_job_locks"

    job_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128))
    locked_until: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class PaymentAuditLog(Base):
    """
    Append-only record of every payment callback verification attempt,
    including rejected signatures. Kept for dispute resolution.
    """

    __tablename__ = "billing_payment_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), default="mock", index=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    external_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    signature: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


Index("ix_billing_subscriptions_owner_due", Subscription.owner_id, Subscription.next_due_date)
Index("ix_billing_invoices_owner_status", Invoice.owner_id, Invoice.status)
