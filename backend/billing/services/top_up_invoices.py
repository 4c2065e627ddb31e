"""Top-up invoice generation, delivery and payment for prepaid clients."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import is_serialization_failure, serializable_transaction, supports_row_locks
from ..db_types import to_money
from .notifications import (
    ConfigurationError,
    NotificationClient,
    NotificationError,
    NotificationResult,
    build_notification_client_from_env,
    compose_invoice_email,
)
from .observability import LedgerEvent, LedgerObserver, MetricOutcome
from .rates import RateResolver

LOGGER = logging.getLogger(__name__)

ZERO = Decimal("0.00")
GENERIC_LINE_ITEM = "Prepaid balance top-up"
PAID_CREDIT_DESCRIPTION = "Prepaid balance replenishment - invoice paid"


class InvoiceServiceError(RuntimeError):
    """Raised when an invoice operation cannot be completed."""


@dataclass
class TopUpInvoiceResult:
    """Identifier and state of the pending top-up invoice for a client."""

    invoice_id: str
    created: bool
    amount: Decimal
    status: models.InvoiceStatus
    delivered: Optional[bool] = None


@dataclass
class InvoicePaymentResult:
    success: bool
    error: Optional[str] = None
    credited_amount: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TopUpInvoiceService:
    """Creates at most one pending top-up invoice per prepaid client."""

    def __init__(
        self,
        db: Session,
        *,
        notification_client: Optional[NotificationClient] = None,
        observer: Optional[LedgerObserver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.notification_client = notification_client or build_notification_client_from_env()
        self.observer = observer or LedgerObserver(db)
        self.clock = clock or _utcnow

    def _locked_profile(self, client_id: str) -> Optional[models.ClientProfile]:
        query = (
            self.db.query(models.ClientProfile)
            .filter(models.ClientProfile.client_id == client_id)
            .populate_existing()
        )
        if supports_row_locks(self.db):
            query = query.with_for_update()
        return query.first()

    def _locked_invoice(self, invoice_id: str) -> Optional[models.Invoice]:
        query = (
            self.db.query(models.Invoice)
            .filter(models.Invoice.id == invoice_id)
            .populate_existing()
        )
        if supports_row_locks(self.db):
            query = query.with_for_update()
        return query.first()

    def _pending_top_up(self, client_id: str) -> Optional[models.Invoice]:
        return (
            self.db.query(models.Invoice)
            .filter(
                models.Invoice.client_id == client_id,
                models.Invoice.is_prepaid_top_up.is_(True),
                models.Invoice.status.in_(models.PENDING_INVOICE_STATUSES),
            )
            .order_by(models.Invoice.created_at.desc())
            .first()
        )

    def _deductions_since_last_credit(
        self, profile_id: str
    ) -> list[models.PrepaidTransaction]:
        last_credit_id = (
            self.db.query(func.max(models.PrepaidTransaction.id))
            .filter(
                models.PrepaidTransaction.client_profile_id == profile_id,
                models.PrepaidTransaction.type == models.PrepaidTransactionType.CREDIT,
            )
            .scalar()
        )
        query = self.db.query(models.PrepaidTransaction).filter(
            models.PrepaidTransaction.client_profile_id == profile_id,
            models.PrepaidTransaction.type == models.PrepaidTransactionType.DEDUCTION,
        )
        if last_credit_id is not None:
            query = query.filter(models.PrepaidTransaction.id > last_credit_id)
        return query.order_by(models.PrepaidTransaction.id.asc()).all()

    @staticmethod
    def _existing_result(invoice: models.Invoice) -> TopUpInvoiceResult:
        return TopUpInvoiceResult(
            invoice_id=invoice.id,
            created=False,
            amount=to_money(invoice.amount),
            status=invoice.status,
        )

    def generate_top_up_invoice(
        self, client_id: str, trainer_id: str
    ) -> Optional[TopUpInvoiceResult]:
        """Create and send a top-up invoice bringing the balance back to target.

        Returns the already pending invoice instead of creating a second one,
        and ``None`` when no invoice applies (not prepaid, no target, or the
        balance already meets the target).
        """

        settings = RateResolver.trainer_settings(self.db, trainer_id)
        due_days = (
            settings.default_invoice_due_days
            if settings is not None and settings.default_invoice_due_days is not None
            else models.DEFAULT_INVOICE_DUE_DAYS
        )

        existing: Optional[TopUpInvoiceResult] = None
        skip_reason: Optional[str] = None
        try:
            with serializable_transaction(self.db):
                profile = self._locked_profile(client_id)
                pending = self._pending_top_up(client_id) if profile is not None else None
                if profile is None:
                    skip_reason = "profile_not_found"
                elif not profile.is_prepaid:
                    skip_reason = "not_prepaid"
                elif pending is not None:
                    existing = self._existing_result(pending)
                elif profile.prepaid_target_balance is None:
                    skip_reason = "no_target_balance"
                else:
                    balance = to_money(profile.prepaid_balance)
                    amount_needed = to_money(profile.prepaid_target_balance) - balance
                    if amount_needed <= ZERO:
                        skip_reason = "balance_meets_target"
                    else:
                        invoice = self._build_invoice(
                            profile,
                            trainer_id=trainer_id,
                            workspace_id=profile.workspace_id,
                            amount_needed=amount_needed,
                            balance=balance,
                            due_days=due_days,
                        )
                        self.db.add(invoice)
                        self.db.flush()
                        invoice_id = invoice.id
        except IntegrityError:
            # Another request created the pending invoice first.
            pending = self._pending_top_up(client_id)
            if pending is None:
                raise
            return self._existing_result(pending)
        except SQLAlchemyError as exc:
            if is_serialization_failure(exc):
                raise
            LOGGER.exception("Unable to generate top-up invoice", extra={"client_id": client_id})
            raise InvoiceServiceError("Unable to generate top-up invoice") from exc

        if existing is not None:
            LOGGER.info(
                "Pending top-up invoice already exists",
                extra={"client_id": client_id, "invoice_id": existing.invoice_id},
            )
            return existing
        if skip_reason is not None:
            self.observer.emit(
                LedgerEvent.INVOICE_CREATED,
                MetricOutcome.SKIPPED,
                client_id=client_id,
                reason=skip_reason,
            )
            return None

        self.observer.emit(
            LedgerEvent.INVOICE_CREATED,
            MetricOutcome.SUCCESS,
            client_id=client_id,
            trainer_id=trainer_id,
            invoice_id=invoice_id,
            amount=amount_needed,
        )
        delivered = self._deliver(invoice_id)
        invoice = self.db.get(models.Invoice, invoice_id)
        return TopUpInvoiceResult(
            invoice_id=invoice_id,
            created=True,
            amount=amount_needed,
            status=invoice.status,
            delivered=delivered,
        )

    def _build_invoice(
        self,
        profile: models.ClientProfile,
        *,
        trainer_id: str,
        workspace_id: str,
        amount_needed: Decimal,
        balance: Decimal,
        due_days: int,
    ) -> models.Invoice:
        deductions = self._deductions_since_last_credit(profile.id)
        if deductions:
            line_items = [
                models.InvoiceLineItem(
                    position=index,
                    appointment_id=entry.appointment_id,
                    description=entry.description,
                    quantity=1,
                    unit_price=to_money(entry.amount),
                    total=to_money(entry.amount),
                )
                for index, entry in enumerate(deductions)
            ]
        else:
            line_items = [
                models.InvoiceLineItem(
                    position=0,
                    description=GENERIC_LINE_ITEM,
                    quantity=1,
                    unit_price=amount_needed,
                    total=amount_needed,
                )
            ]

        target = to_money(profile.prepaid_target_balance)
        return models.Invoice(
            workspace_id=workspace_id,
            trainer_id=trainer_id,
            client_id=profile.client_id,
            amount=amount_needed,
            due_date=(self.clock() + timedelta(days=due_days)).date(),
            status=models.InvoiceStatus.SENT,
            is_prepaid_top_up=True,
            notes=(
                f"Prepaid balance replenishment to ${target:,.2f}. "
                f"Current balance: ${balance:,.2f}"
            ),
            line_items=line_items,
        )

    def _send(self, invoice: models.Invoice, profile: Optional[models.ClientProfile]) -> NotificationResult:
        if profile is None or not profile.email:
            return NotificationResult(success=False, error="Client has no email address on file")

        subject, plain_text, html_text = compose_invoice_email(invoice, profile)
        try:
            return self.notification_client.send_message(
                destination=profile.email,
                subject=subject,
                plain_text=plain_text,
                html_text=html_text,
            )
        except (NotificationError, ConfigurationError) as exc:
            LOGGER.warning(
                "Invoice email failed",
                extra={"invoice_id": invoice.id, "error": str(exc)},
            )
            return NotificationResult(success=False, error=str(exc))
        except Exception as exc:  # pragma: no cover - provider bug
            LOGGER.exception("Unexpected error sending invoice %s", invoice.id)
            return NotificationResult(success=False, error=str(exc))

    def _deliver(self, invoice_id: str) -> bool:
        """Email the invoice, demoting it to DRAFT when delivery fails."""

        invoice = self.db.get(models.Invoice, invoice_id)
        profile = (
            self.db.query(models.ClientProfile)
            .filter(models.ClientProfile.client_id == invoice.client_id)
            .first()
        )
        result = self._send(invoice, profile)
        channel = getattr(self.notification_client, "channel", "email")

        with serializable_transaction(self.db):
            fresh = self._locked_invoice(invoice_id)
            demoted = False
            if not result.success and fresh.status == models.InvoiceStatus.SENT:
                fresh.status = models.InvoiceStatus.DRAFT
                demoted = True
            self.db.add(
                models.InvoiceDeliveryLog(
                    invoice_id=invoice_id,
                    delivery_status=(
                        models.DeliveryStatus.SENT if result.success else models.DeliveryStatus.FAILED
                    ),
                    destination=profile.email if profile is not None else None,
                    channel=channel,
                    provider_message_id=result.provider_message_id,
                    response_code=result.status_code,
                    error_message=result.error,
                )
            )

        self.observer.emit(
            LedgerEvent.INVOICE_DELIVERY,
            MetricOutcome.SUCCESS if result.success else MetricOutcome.ERROR,
            invoice_id=invoice_id,
            channel=channel,
            demoted_to_draft=demoted,
            error=result.error,
        )
        return result.success

    def mark_paid(self, invoice_id: str) -> InvoicePaymentResult:
        """Record payment of an invoice; top-up invoices credit the balance."""

        credited: Optional[Decimal] = None
        new_balance: Optional[Decimal] = None
        try:
            with serializable_transaction(self.db):
                invoice = self._locked_invoice(invoice_id)
                if invoice is None:
                    return InvoicePaymentResult(success=False, error="Invoice not found")
                if invoice.status == models.InvoiceStatus.PAID:
                    return InvoicePaymentResult(success=False, error="Invoice is already paid")
                if invoice.status == models.InvoiceStatus.CANCELLED:
                    return InvoicePaymentResult(success=False, error="Cannot pay a cancelled invoice")

                invoice.status = models.InvoiceStatus.PAID
                invoice.paid_at = self.clock()

                if invoice.is_prepaid_top_up:
                    profile = self._locked_profile(invoice.client_id)
                    if profile is not None:
                        credited = to_money(invoice.amount)
                        new_balance = to_money(profile.prepaid_balance) + credited
                        profile.prepaid_balance = new_balance
                        self.db.add(
                            models.PrepaidTransaction(
                                client_profile_id=profile.id,
                                type=models.PrepaidTransactionType.CREDIT,
                                amount=credited,
                                balance_after=new_balance,
                                description=PAID_CREDIT_DESCRIPTION,
                            )
                        )
                client_id = invoice.client_id
        except SQLAlchemyError as exc:
            if is_serialization_failure(exc):
                raise
            LOGGER.exception("Unable to mark invoice as paid", extra={"invoice_id": invoice_id})
            raise InvoiceServiceError("Unable to mark invoice as paid") from exc

        self.observer.emit(
            LedgerEvent.INVOICE_PAID,
            MetricOutcome.SUCCESS,
            invoice_id=invoice_id,
            client_id=client_id,
            credited_amount=credited,
            new_balance=new_balance,
        )
        return InvoicePaymentResult(
            success=True, credited_amount=credited, new_balance=new_balance
        )
