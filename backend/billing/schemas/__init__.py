"""Expose Pydantic schemas for convenient imports."""

from .common import PaginatedResponse
from .invoice import (
    AppointmentScheduledResponse,
    DeductionRead,
    InvoicePaidResponse,
    SessionCompletedResponse,
    TopUpInvoiceRead,
    TopUpInvoiceResponse,
    VoidAndSwitchRequest,
    VoidAndSwitchResponse,
)
from .prepaid import (
    BalanceCheckResponse,
    ClientPrepaidDetailRead,
    PrepaidClientSummaryRead,
    PrepaidClientsSummaryResponse,
    PrepaidCreditCreate,
    PrepaidCreditResponse,
    PrepaidSummaryTotalsRead,
    PrepaidTransactionListResponse,
    PrepaidTransactionRead,
    UpcomingSessionRead,
)

__all__ = [
    "PaginatedResponse",
    "AppointmentScheduledResponse",
    "DeductionRead",
    "InvoicePaidResponse",
    "SessionCompletedResponse",
    "TopUpInvoiceRead",
    "TopUpInvoiceResponse",
    "VoidAndSwitchRequest",
    "VoidAndSwitchResponse",
    "BalanceCheckResponse",
    "ClientPrepaidDetailRead",
    "PrepaidClientSummaryRead",
    "PrepaidClientsSummaryResponse",
    "PrepaidCreditCreate",
    "PrepaidCreditResponse",
    "PrepaidSummaryTotalsRead",
    "PrepaidTransactionListResponse",
    "PrepaidTransactionRead",
    "UpcomingSessionRead",
]
