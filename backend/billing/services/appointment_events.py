"""Hooks called by the scheduler when appointments change state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .. import models
from .prepaid_ledger import BalanceCheckResult, DeductionResult, PrepaidLedgerService
from .top_up_invoices import TopUpInvoiceResult

LOGGER = logging.getLogger(__name__)


@dataclass
class SessionCompletedOutcome:
    deduction: DeductionResult
    invoice: Optional[TopUpInvoiceResult] = None


class AppointmentEventHandler:
    """Runs the prepaid ledger for completed and newly scheduled appointments."""

    def __init__(self, db: Session, ledger: Optional[PrepaidLedgerService] = None) -> None:
        self.db = db
        self.ledger = ledger or PrepaidLedgerService(db)

    def on_session_completed(self, appointment_id: str) -> SessionCompletedOutcome:
        deduction = self.ledger.deduct_session(appointment_id)
        if not deduction.should_generate_invoice:
            return SessionCompletedOutcome(deduction=deduction)

        appointment = self.db.get(models.Appointment, appointment_id)
        invoice = self.ledger.invoices.generate_top_up_invoice(
            appointment.client_id, appointment.trainer_id
        )
        return SessionCompletedOutcome(deduction=deduction, invoice=invoice)

    def on_appointment_scheduled(self, appointment_id: str) -> Optional[BalanceCheckResult]:
        appointment = self.db.get(models.Appointment, appointment_id)
        if appointment is None:
            LOGGER.warning("Scheduled appointment not found", extra={"appointment_id": appointment_id})
            return None
        return self.ledger.check_balance_and_generate_invoice_if_needed(
            appointment.client_id, appointment.trainer_id
        )
