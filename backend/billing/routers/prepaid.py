"""Router exposing prepaid balance operations."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .. import schemas
from ..dependencies import get_invoice_service, get_ledger_service, run_serialized
from ..services import PrepaidLedgerService, TopUpInvoiceService

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=schemas.PrepaidClientsSummaryResponse)
def list_prepaid_clients(
    workspace_id: str = Query(..., description="Workspace whose prepaid clients are listed"),
    ledger: PrepaidLedgerService = Depends(get_ledger_service),
) -> schemas.PrepaidClientsSummaryResponse:
    """Return every prepaid client of the workspace with balance status and totals."""

    summaries, totals = ledger.get_prepaid_clients_summary(workspace_id)
    return schemas.PrepaidClientsSummaryResponse(
        clients=[schemas.PrepaidClientSummaryRead.model_validate(item) for item in summaries],
        totals=schemas.PrepaidSummaryTotalsRead.model_validate(totals),
    )


@router.get("/{client_id}", response_model=schemas.ClientPrepaidDetailRead)
def get_client_prepaid_detail(
    client_id: str,
    trainer_id: str = Query(..., description="Trainer used to price the next session"),
    ledger: PrepaidLedgerService = Depends(get_ledger_service),
) -> schemas.ClientPrepaidDetailRead:
    detail = ledger.get_client_detail(client_id, trainer_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client profile not found")
    return schemas.ClientPrepaidDetailRead.model_validate(detail)


@router.post("/{client_id}", response_model=schemas.PrepaidCreditResponse)
def add_prepaid_credit(
    client_id: str,
    payload: schemas.PrepaidCreditCreate,
    ledger: PrepaidLedgerService = Depends(get_ledger_service),
) -> schemas.PrepaidCreditResponse:
    """Add credit to a client's balance; clients not on prepaid billing are switched."""

    result = run_serialized(
        lambda: ledger.add_credit(client_id, payload.amount, payload.notes),
        action="add prepaid credit",
    )
    if not result.success:
        code = (
            status.HTTP_404_NOT_FOUND
            if result.error == "Client profile not found"
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=code, detail=result.error)
    return schemas.PrepaidCreditResponse(
        success=True,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
        switched_to_prepaid=result.switched_to_prepaid,
    )


@router.get("/{client_id}/transactions", response_model=schemas.PrepaidTransactionListResponse)
def list_prepaid_transactions(
    client_id: str,
    limit: int = Query(50, ge=1, le=200, description="Maximum number of records to return"),
    offset: int = Query(0, ge=0, description="Number of records to skip"),
    ledger: PrepaidLedgerService = Depends(get_ledger_service),
) -> schemas.PrepaidTransactionListResponse:
    items, total = ledger.get_transactions(client_id, limit=limit, offset=offset)
    return schemas.PrepaidTransactionListResponse(
        items=[schemas.PrepaidTransactionRead.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )


@router.post("/{client_id}/top-up-invoice", response_model=schemas.TopUpInvoiceResponse)
def create_top_up_invoice(
    client_id: str,
    trainer_id: str = Query(..., description="Trainer issuing the invoice"),
    invoices: TopUpInvoiceService = Depends(get_invoice_service),
) -> schemas.TopUpInvoiceResponse:
    result = run_serialized(
        lambda: invoices.generate_top_up_invoice(client_id, trainer_id),
        action="generate a top-up invoice",
    )
    if result is None:
        return schemas.TopUpInvoiceResponse(message="No top-up invoice is needed")
    if not result.created:
        message = "A pending top-up invoice already exists"
    elif result.delivered:
        message = "Top-up invoice created and sent"
    else:
        message = "Top-up invoice created as draft; email delivery failed"
    return schemas.TopUpInvoiceResponse(
        invoice=schemas.TopUpInvoiceRead.model_validate(result), message=message
    )
