"""Initialize recurring billing schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _ensure_index(bind: sa.engine.Connection, table: str, name: str, columns: list[str], *, unique: bool = False) -> None:
    if not _has_index(bind, table, name):
        op.create_index(name, table, columns, unique=unique)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "billing_clients"):
        op.create_table(
            "billing_clients",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=254), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _ensure_index(bind, "billing_clients", op.f("ix_billing_clients_owner_id"), ["owner_id"])

    if not _table_exists(bind, "billing_subscriptions"):
        op.create_table(
            "billing_subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("client_id", sa.String(length=36), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column(
                "frequency",
                sa.Enum("MONTHLY", "YEARLY", name="billingfrequency", native_enum=False),
                nullable=False,
            ),
            sa.Column("next_due_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _ensure_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_owner_id"), ["owner_id"])
    _ensure_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_client_id"), ["client_id"])
    _ensure_index(bind, "billing_subscriptions", op.f("ix_billing_subscriptions_next_due_date"), ["next_due_date"])
    _ensure_index(
        bind,
        "billing_subscriptions",
        "ix_billing_subscriptions_owner_due",
        ["owner_id", "next_due_date"],
    )

    if not _table_exists(bind, "billing_invoices"):
        op.create_table(
            "billing_invoices",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("owner_id", sa.String(length=64), nullable=False),
            sa.Column("client_name", sa.String(length=200), nullable=False),
            sa.Column("client_email", sa.String(length=254), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("amount_minor", sa.Integer(), nullable=False),
            sa.Column(
                "status",
                sa.Enum("PENDING", "PAID", name="invoicestatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("idempotency_key", sa.String(length=128), nullable=True),
            sa.Column("payment_id", sa.String(length=128), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _ensure_index(bind, "billing_invoices", op.f("ix_billing_invoices_owner_id"), ["owner_id"])
    _ensure_index(bind, "billing_invoices", op.f("ix_billing_invoices_created_at"), ["created_at"])
    _ensure_index(
        bind,
        "billing_invoices",
        op.f("ix_billing_invoices_idempotency_key"),
        ["idempotency_key"],
        unique=True,
    )
    _ensure_index(bind, "billing_invoices", "ix_billing_invoices_owner_status", ["owner_id", "status"])

    if not _table_exists(bind, "billing_job_locks"):
        op.create_table(
            "billing_job_locks",
            sa.Column("job_name", sa.String(length=128), nullable=False),
            sa.Column("owner", sa.String(length=128), nullable=False),
            sa.Column("locked_until", sa.DateTime(timezone=True), nullable=False),
            sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("job_name"),
        )

    if not _table_exists(bind, "billing_payment_audit_logs"):
        op.create_table(
            "billing_payment_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("external_order_id", sa.String(length=128), nullable=True),
            sa.Column("external_payment_id", sa.String(length=128), nullable=True),
            sa.Column("signature", sa.String(length=512), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("invoice_id", sa.String(length=36), nullable=True),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("occurred_at", "provider", "external_order_id", "invoice_id", "outcome"):
        _ensure_index(
            bind,
            "billing_payment_audit_logs",
            op.f(f"ix_billing_payment_audit_logs_{column}"),
            [column],
        )


def downgrade() -> None:
    op.drop_table("billing_payment_audit_logs")
    op.drop_table("billing_job_locks")
    op.drop_table("billing_invoices")
    op.drop_table("billing_subscriptions")
    op.drop_table("billing_clients")
