"""Service layer encapsulating business logic for API routers."""

from .appointment_events import AppointmentEventHandler, SessionCompletedOutcome
from .billing_transitions import (
    BillingModeTransitionService,
    BillingTransitionError,
    VoidAndSwitchResult,
)
from .group_sessions import GroupSessionDetector, GroupSessionInfo
from .notifications import (
    ConsoleNotificationClient,
    NotificationClient,
    NotificationError,
    SendGridEmailClient,
    build_notification_client_from_env,
)
from .observability import LedgerEvent, LedgerObserver, MetricOutcome, ObservabilityService
from .prepaid_ledger import (
    BalanceCheckResult,
    ClientPrepaidDetail,
    CreditResult,
    DeductionResult,
    LedgerServiceError,
    PrepaidClientSummary,
    PrepaidLedgerService,
    PrepaidSummaryTotals,
)
from .rates import RateResolver
from .top_up_invoices import (
    InvoicePaymentResult,
    InvoiceServiceError,
    TopUpInvoiceResult,
    TopUpInvoiceService,
)

__all__ = [
    "AppointmentEventHandler",
    "SessionCompletedOutcome",
    "BillingModeTransitionService",
    "BillingTransitionError",
    "VoidAndSwitchResult",
    "GroupSessionDetector",
    "GroupSessionInfo",
    "ConsoleNotificationClient",
    "NotificationClient",
    "NotificationError",
    "SendGridEmailClient",
    "build_notification_client_from_env",
    "LedgerEvent",
    "LedgerObserver",
    "MetricOutcome",
    "ObservabilityService",
    "BalanceCheckResult",
    "ClientPrepaidDetail",
    "CreditResult",
    "DeductionResult",
    "LedgerServiceError",
    "PrepaidClientSummary",
    "PrepaidLedgerService",
    "PrepaidSummaryTotals",
    "RateResolver",
    "InvoicePaymentResult",
    "InvoiceServiceError",
    "TopUpInvoiceResult",
    "TopUpInvoiceService",
]
