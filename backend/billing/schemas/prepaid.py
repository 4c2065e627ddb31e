from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.client_profile import BillingFrequency
from ..models.prepaid_transaction import PrepaidTransactionType
from .common import PaginatedResponse


class PrepaidCreditCreate(BaseModel):
    """Payload used by operators to add prepaid credit."""

    amount: Decimal = Field(..., gt=0, description="Credit to add to the balance")
    notes: Optional[str] = Field(
        default=None, max_length=500, description="Description stored on the ledger entry"
    )


class PrepaidCreditResponse(BaseModel):
    success: bool
    new_balance: Decimal
    transaction_id: int
    switched_to_prepaid: bool = False


class PrepaidTransactionRead(BaseModel):
    """Ledger entry as returned by the API."""

    id: int
    type: PrepaidTransactionType
    amount: Decimal
    balance_after: Decimal
    appointment_id: Optional[str] = None
    description: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PrepaidTransactionListResponse(PaginatedResponse[PrepaidTransactionRead]):
    """Paginated ledger history, newest first."""

    pass


class UpcomingSessionRead(BaseModel):
    appointment_id: str
    start_time: datetime
    is_group_session: bool
    estimated_cost: Decimal

    model_config = ConfigDict(from_attributes=True)


class ClientPrepaidDetailRead(BaseModel):
    client_id: str
    full_name: str
    billing_frequency: BillingFrequency
    prepaid_balance: Decimal
    prepaid_target_balance: Optional[Decimal] = None
    next_session: Optional[UpcomingSessionRead] = None
    recent_transactions: list[PrepaidTransactionRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class PrepaidClientSummaryRead(BaseModel):
    client_id: str
    full_name: str
    email: Optional[str] = None
    prepaid_balance: Decimal
    prepaid_target_balance: Optional[Decimal] = None
    sessions_since_last_credit: int
    last_transaction_at: Optional[datetime] = None
    status: str = Field(..., description="empty, low or healthy")

    model_config = ConfigDict(from_attributes=True)


class PrepaidSummaryTotalsRead(BaseModel):
    client_count: int
    total_balance: Decimal
    total_target: Decimal
    clients_needing_attention: int

    model_config = ConfigDict(from_attributes=True)


class PrepaidClientsSummaryResponse(BaseModel):
    clients: list[PrepaidClientSummaryRead]
    totals: PrepaidSummaryTotalsRead


class BalanceCheckResponse(BaseModel):
    invoice_needed: bool
    invoice_id: Optional[str] = None
    invoice_created: bool = False
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
