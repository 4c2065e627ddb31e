"""Router exposing top-up invoice state transitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..dependencies import get_invoice_service, get_transition_service, run_serialized
from ..services import BillingModeTransitionService, TopUpInvoiceService

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_NOT_FOUND_ERRORS = {"Invoice not found", "Client profile not found"}


@router.post("/{invoice_id}/void-and-switch", response_model=schemas.VoidAndSwitchResponse)
def void_and_switch_billing(
    invoice_id: str,
    payload: schemas.VoidAndSwitchRequest,
    transitions: BillingModeTransitionService = Depends(get_transition_service),
) -> schemas.VoidAndSwitchResponse:
    """Cancel a pending top-up invoice and move the client to another billing mode."""

    result = run_serialized(
        lambda: transitions.void_invoice_and_switch_billing(
            invoice_id, payload.new_billing_frequency
        ),
        action="void the invoice",
    )
    if not result.success:
        code = (
            status.HTTP_404_NOT_FOUND
            if result.error in _NOT_FOUND_ERRORS
            else status.HTTP_400_BAD_REQUEST
        )
        LOGGER.info("Void rejected", extra={"invoice_id": invoice_id, "reason": result.error})
        raise HTTPException(status_code=code, detail=result.error)

    mode = result.new_billing_frequency.value
    if result.credit_amount > 0:
        message = (
            f"Invoice voided. Client switched to {mode} billing with "
            f"${result.credit_amount:,.2f} credit retained."
        )
    else:
        message = f"Invoice voided. Client switched to {mode} billing."
    return schemas.VoidAndSwitchResponse(
        success=True,
        credit_amount=result.credit_amount,
        new_billing_frequency=result.new_billing_frequency,
        message=message,
    )


@router.post("/{invoice_id}/mark-paid", response_model=schemas.InvoicePaidResponse)
def mark_invoice_paid(
    invoice_id: str,
    invoices: TopUpInvoiceService = Depends(get_invoice_service),
) -> schemas.InvoicePaidResponse:
    result = run_serialized(lambda: invoices.mark_paid(invoice_id), action="mark the invoice paid")
    if not result.success:
        code = (
            status.HTTP_404_NOT_FOUND
            if result.error == "Invoice not found"
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=code, detail=result.error)
    return schemas.InvoicePaidResponse(
        success=True,
        credited_amount=result.credited_amount,
        new_balance=result.new_balance,
    )
