"""Voiding top-up invoices when a client leaves prepaid billing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import is_serialization_failure, serializable_transaction, supports_row_locks
from ..db_types import to_money
from .observability import LedgerEvent, LedgerObserver, MetricOutcome

LOGGER = logging.getLogger(__name__)

ZERO = Decimal("0.00")
SWITCH_TARGETS = (models.BillingFrequency.PER_SESSION, models.BillingFrequency.MONTHLY)


class BillingTransitionError(RuntimeError):
    """Raised when a billing-mode transition fails unexpectedly."""


@dataclass
class VoidAndSwitchResult:
    success: bool
    error: Optional[str] = None
    credit_amount: Decimal = ZERO
    new_billing_frequency: Optional[models.BillingFrequency] = None


class BillingModeTransitionService:
    """Moves a prepaid client to another billing mode without losing credit."""

    def __init__(self, db: Session, *, observer: Optional[LedgerObserver] = None) -> None:
        self.db = db
        self.observer = observer or LedgerObserver(db)

    def _locked(self, model, *criteria):
        query = self.db.query(model).filter(*criteria).populate_existing()
        if supports_row_locks(self.db):
            query = query.with_for_update()
        return query.first()

    def void_invoice_and_switch_billing(
        self,
        invoice_id: str,
        new_billing_frequency: models.BillingFrequency | str,
    ) -> VoidAndSwitchResult:
        """Cancel a pending top-up invoice and switch the client's billing mode.

        The prepaid balance is kept as credit. When it is positive a zero-amount
        CREDIT entry records why it was retained.
        """

        try:
            target = models.BillingFrequency(new_billing_frequency)
        except ValueError:
            target = None
        if target not in SWITCH_TARGETS:
            return VoidAndSwitchResult(
                success=False,
                error="New billing frequency must be PER_SESSION or MONTHLY",
            )

        result: Optional[VoidAndSwitchResult] = None
        client_id: Optional[str] = None
        try:
            with serializable_transaction(self.db):
                invoice = self._locked(models.Invoice, models.Invoice.id == invoice_id)
                if invoice is None:
                    result = VoidAndSwitchResult(success=False, error="Invoice not found")
                elif not invoice.is_prepaid_top_up:
                    result = VoidAndSwitchResult(
                        success=False, error="Invoice is not a prepaid top-up invoice"
                    )
                elif invoice.status == models.InvoiceStatus.PAID:
                    result = VoidAndSwitchResult(success=False, error="Cannot void a paid invoice")
                elif invoice.status == models.InvoiceStatus.CANCELLED:
                    result = VoidAndSwitchResult(success=False, error="Invoice is already cancelled")
                else:
                    client_id = invoice.client_id
                    profile = self._locked(
                        models.ClientProfile, models.ClientProfile.client_id == client_id
                    )
                    if profile is None:
                        result = VoidAndSwitchResult(success=False, error="Client profile not found")
                    else:
                        retained = to_money(profile.prepaid_balance)
                        invoice.status = models.InvoiceStatus.CANCELLED
                        profile.billing_frequency = target
                        if retained > ZERO:
                            self.db.add(
                                models.PrepaidTransaction(
                                    client_profile_id=profile.id,
                                    type=models.PrepaidTransactionType.CREDIT,
                                    amount=ZERO,
                                    balance_after=retained,
                                    description=(
                                        f"Credit retained (${retained:,.2f}) - switching to "
                                        f"{target.value} billing"
                                    ),
                                )
                            )
                        result = VoidAndSwitchResult(
                            success=True,
                            credit_amount=retained,
                            new_billing_frequency=target,
                        )
        except SQLAlchemyError as exc:
            if is_serialization_failure(exc):
                raise
            LOGGER.exception("Unable to void invoice", extra={"invoice_id": invoice_id})
            raise BillingTransitionError("Unable to void invoice") from exc

        self.observer.emit(
            LedgerEvent.INVOICE_VOIDED,
            MetricOutcome.SUCCESS if result.success else MetricOutcome.REJECTED,
            invoice_id=invoice_id,
            client_id=client_id,
            new_billing_frequency=target,
            credit_amount=result.credit_amount,
            error=result.error,
        )
        return result
