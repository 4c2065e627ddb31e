from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.client_profile import BillingFrequency
from ..models.invoice import InvoiceStatus
from .prepaid import BalanceCheckResponse


class TopUpInvoiceRead(BaseModel):
    """Pending top-up invoice returned by the generator."""

    invoice_id: str
    created: bool
    amount: Decimal
    status: InvoiceStatus
    delivered: Optional[bool] = None

    model_config = ConfigDict(from_attributes=True)


class TopUpInvoiceResponse(BaseModel):
    invoice: Optional[TopUpInvoiceRead] = None
    message: str


class VoidAndSwitchRequest(BaseModel):
    new_billing_frequency: BillingFrequency = Field(
        ..., description="Billing mode to move the client to (PER_SESSION or MONTHLY)"
    )


class VoidAndSwitchResponse(BaseModel):
    success: bool
    credit_amount: Decimal
    new_billing_frequency: BillingFrequency
    message: str


class InvoicePaidResponse(BaseModel):
    success: bool
    credited_amount: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None


class DeductionRead(BaseModel):
    success: bool
    new_balance: Decimal
    amount_deducted: Decimal
    should_generate_invoice: bool
    message: Optional[str] = None
    transaction_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class SessionCompletedResponse(BaseModel):
    deduction: DeductionRead
    invoice: Optional[TopUpInvoiceRead] = None

    model_config = ConfigDict(from_attributes=True)


class AppointmentScheduledResponse(BalanceCheckResponse):
    pass
