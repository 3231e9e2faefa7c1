from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_billing_db,
    missing_billing_tables,
    run_migrations,
    session_scope,
    verify_billing_schema,
)
from .gateway import (
    BasePaymentGateway,
    MockGateway,
    PaymentGatewayConfigError,
    PaymentGatewayError,
    PaymentGatewayTimeout,
    RazorpayGateway,
    get_payment_gateway,
)
from .invoicing import (
    DueSubscription,
    GenerationReport,
    find_due_subscriptions,
    generate_due_invoices,
    generate_invoice,
)
from .models import (
    Base,
    BillingFrequency,
    Client,
    Invoice,
    InvoiceStatus,
    JobLock,
    PaymentAuditLog,
    Subscription,
)
from .repository import (
    BillingRepository,
    BillingStateError,
    InvoiceAlreadyPaidError,
    InvoiceNotFoundError,
    SubscriptionValidationError,
)
from .schedule import add_calendar_months, advance_due_date
from .scheduler import BillingScheduler, SystemClock
from .service import (
    PaymentVerificationResult,
    compute_payment_signature,
    create_payment_order,
    mark_invoice_paid_manually,
    verify_payment,
    verify_payment_callback,
    verify_payment_signature,
)
from .tasks import build_billing_scheduler, run_invoice_generation

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "Client",
    "Subscription",
    "Invoice",
    "JobLock",
    "PaymentAuditLog",
    "BillingFrequency",
    "InvoiceStatus",
    "BasePaymentGateway",
    "MockGateway",
    "RazorpayGateway",
    "PaymentGatewayError",
    "PaymentGatewayTimeout",
    "PaymentGatewayConfigError",
    "get_payment_gateway",
    "BillingRepository",
    "BillingStateError",
    "InvoiceNotFoundError",
    "InvoiceAlreadyPaidError",
    "SubscriptionValidationError",
    "DueSubscription",
    "GenerationReport",
    "find_due_subscriptions",
    "generate_invoice",
    "generate_due_invoices",
    "add_calendar_months",
    "advance_due_date",
    "BillingScheduler",
    "SystemClock",
    "build_billing_scheduler",
    "run_invoice_generation",
    "PaymentVerificationResult",
    "compute_payment_signature",
    "verify_payment_signature",
    "create_payment_order",
    "verify_payment",
    "verify_payment_callback",
    "mark_invoice_paid_manually",
    "build_session_factory",
    "init_billing_db",
    "missing_billing_tables",
    "run_migrations",
    "verify_billing_schema",
    "session_scope",
]
