"""Prepaid balance ledger: deductions, credits and balance checks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import is_serialization_failure, serializable_transaction, supports_row_locks
from ..db_types import to_money
from .observability import LedgerEvent, LedgerObserver, MetricOutcome
from .rates import RateResolver
from .top_up_invoices import TopUpInvoiceService

LOGGER = logging.getLogger(__name__)

ZERO = Decimal("0.00")
LOW_BALANCE_RATIO = Decimal("0.25")
RECENT_TRANSACTIONS_LIMIT = 10

EMPTY_BALANCE_MESSAGE = "Prepaid balance is empty; a top-up invoice is required."
DEFAULT_CREDIT_DESCRIPTION = "Prepaid credit added"


class LedgerServiceError(RuntimeError):
    """Raised when a ledger operation fails for reasons other than a conflict."""


@dataclass
class DeductionResult:
    success: bool
    new_balance: Decimal
    amount_deducted: Decimal
    should_generate_invoice: bool
    message: Optional[str] = None
    transaction_id: Optional[int] = None


@dataclass
class CreditResult:
    success: bool
    new_balance: Optional[Decimal] = None
    transaction_id: Optional[int] = None
    switched_to_prepaid: bool = False
    error: Optional[str] = None


@dataclass
class BalanceCheckResult:
    invoice_needed: bool
    invoice_id: Optional[str] = None
    invoice_created: bool = False
    reason: Optional[str] = None


@dataclass
class PrepaidClientSummary:
    client_id: str
    full_name: str
    email: Optional[str]
    prepaid_balance: Decimal
    prepaid_target_balance: Optional[Decimal]
    sessions_since_last_credit: int
    last_transaction_at: Optional[datetime]
    status: str


@dataclass
class PrepaidSummaryTotals:
    client_count: int = 0
    total_balance: Decimal = ZERO
    total_target: Decimal = ZERO
    clients_needing_attention: int = 0


@dataclass
class UpcomingSession:
    appointment_id: str
    start_time: datetime
    is_group_session: bool
    estimated_cost: Decimal


@dataclass
class ClientPrepaidDetail:
    client_id: str
    full_name: str
    billing_frequency: models.BillingFrequency
    prepaid_balance: Decimal
    prepaid_target_balance: Optional[Decimal]
    next_session: Optional[UpcomingSession]
    recent_transactions: list[models.PrepaidTransaction] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def balance_status(balance: Decimal, target: Optional[Decimal]) -> str:
    """Classify a prepaid balance as ``empty``, ``low`` or ``healthy``."""

    if balance <= ZERO:
        return "empty"
    if target is not None and target > ZERO and balance < target * LOW_BALANCE_RATIO:
        return "low"
    return "healthy"


def describe_session(start_time: datetime, is_group_session: bool) -> str:
    label = "Group training session" if is_group_session else "Training session"
    return f"{label} on {start_time:%b} {start_time.day}, {start_time.year}"


class PrepaidLedgerService:
    """Balance mutations and read models for prepaid clients.

    Every mutation runs inside :func:`serializable_transaction` and re-reads
    the client profile there. Serialization conflicts propagate unchanged so
    the caller can retry the whole operation.
    """

    def __init__(
        self,
        db: Session,
        *,
        observer: Optional[LedgerObserver] = None,
        invoices: Optional[TopUpInvoiceService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.observer = observer or LedgerObserver(db)
        self.clock = clock or _utcnow
        self.invoices = invoices or TopUpInvoiceService(
            db, observer=self.observer, clock=self.clock
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def _profile_for_client(self, client_id: str, *, lock: bool = False) -> Optional[models.ClientProfile]:
        query = self.db.query(models.ClientProfile).filter(
            models.ClientProfile.client_id == client_id
        )
        if lock:
            query = query.populate_existing()
            if supports_row_locks(self.db):
                query = query.with_for_update()
        return query.first()

    def _existing_deduction(self, appointment_id: str) -> Optional[models.PrepaidTransaction]:
        return (
            self.db.query(models.PrepaidTransaction)
            .filter(
                models.PrepaidTransaction.appointment_id == appointment_id,
                models.PrepaidTransaction.type == models.PrepaidTransactionType.DEDUCTION,
            )
            .first()
        )

    @staticmethod
    def _result_from_entry(entry: models.PrepaidTransaction) -> DeductionResult:
        balance_after = to_money(entry.balance_after)
        message = None
        if entry.invoice_requested:
            if balance_after == ZERO:
                message = "Prepaid balance is now empty; a top-up invoice is required."
            else:
                message = (
                    f"Remaining balance ${balance_after:,.2f} does not cover the next "
                    "session; a top-up invoice is required."
                )
        return DeductionResult(
            success=True,
            new_balance=balance_after,
            amount_deducted=to_money(entry.amount),
            should_generate_invoice=bool(entry.invoice_requested),
            message=message,
            transaction_id=entry.id,
        )

    @staticmethod
    def _failure(message: str) -> DeductionResult:
        return DeductionResult(
            success=False,
            new_balance=ZERO,
            amount_deducted=ZERO,
            should_generate_invoice=False,
            message=message,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def deduct_session(self, appointment_id: str) -> DeductionResult:
        """Charge a completed session against the client's prepaid balance.

        A second call for the same appointment returns the recorded result of
        the first one. Insufficient funds are not an error: the deduction is
        capped at the current balance and the invoice flag is raised.
        """

        existing = self._existing_deduction(appointment_id)
        if existing is not None:
            LOGGER.info(
                "Deduction already recorded",
                extra={"appointment_id": appointment_id, "transaction_id": existing.id},
            )
            return self._result_from_entry(existing)

        appointment = self.db.get(models.Appointment, appointment_id)
        if appointment is None:
            return self._failure("Appointment not found")

        profile = self._profile_for_client(appointment.client_id)
        if profile is None:
            return self._failure("Client profile not found")
        if not profile.is_prepaid:
            self.observer.emit(
                LedgerEvent.DEDUCTION,
                MetricOutcome.SKIPPED,
                appointment_id=appointment_id,
                client_id=profile.client_id,
                reason="not_prepaid",
            )
            return self._failure("Client is not on prepaid billing")

        settings = RateResolver.trainer_settings(self.db, appointment.trainer_id)
        rate, is_group_session = RateResolver.rate_for_appointment(
            self.db, appointment, profile, settings
        )
        next_rate = RateResolver.next_session_rate(
            self.db,
            profile,
            settings,
            trainer_id=appointment.trainer_id,
            after=self.clock(),
            exclude_id=appointment.id,
        )
        description = describe_session(appointment.start_time, is_group_session)
        client_id = profile.client_id

        outcome: Optional[DeductionResult] = None
        entry: Optional[models.PrepaidTransaction] = None
        try:
            with serializable_transaction(self.db):
                replay = self._existing_deduction(appointment_id)
                fresh = self._profile_for_client(client_id, lock=True)
                if replay is not None:
                    entry = replay
                elif fresh is None or not fresh.is_prepaid:
                    outcome = self._failure("Client is not on prepaid billing")
                else:
                    current = to_money(fresh.prepaid_balance)
                    if current == ZERO:
                        outcome = DeductionResult(
                            success=False,
                            new_balance=ZERO,
                            amount_deducted=ZERO,
                            should_generate_invoice=True,
                            message=EMPTY_BALANCE_MESSAGE,
                        )
                    else:
                        amount = min(current, rate)
                        new_balance = current - amount
                        invoice_needed = new_balance == ZERO or (
                            next_rate is not None and new_balance < next_rate
                        )
                        fresh.prepaid_balance = new_balance
                        entry = models.PrepaidTransaction(
                            client_profile_id=fresh.id,
                            type=models.PrepaidTransactionType.DEDUCTION,
                            amount=amount,
                            balance_after=new_balance,
                            appointment_id=appointment_id,
                            description=description,
                            invoice_requested=invoice_needed,
                        )
                        self.db.add(entry)
                        self.db.flush()
        except IntegrityError:
            # A concurrent call recorded the deduction first.
            existing = self._existing_deduction(appointment_id)
            if existing is None:
                raise
            return self._result_from_entry(existing)
        except SQLAlchemyError as exc:
            if is_serialization_failure(exc):
                raise
            LOGGER.exception("Unable to deduct session", extra={"appointment_id": appointment_id})
            raise LedgerServiceError("Unable to deduct session") from exc

        if outcome is None:
            outcome = self._result_from_entry(entry)

        self.observer.emit(
            LedgerEvent.DEDUCTION,
            MetricOutcome.SUCCESS if outcome.success else MetricOutcome.REJECTED,
            appointment_id=appointment_id,
            client_id=client_id,
            rate=rate,
            is_group_session=is_group_session,
            amount_deducted=outcome.amount_deducted,
            new_balance=outcome.new_balance,
            should_generate_invoice=outcome.should_generate_invoice,
        )
        return outcome

    def check_balance_and_generate_invoice_if_needed(
        self, client_id: str, trainer_id: str
    ) -> BalanceCheckResult:
        """Request a top-up invoice when the balance cannot cover the next session."""

        profile = self._profile_for_client(client_id)
        if profile is None:
            return BalanceCheckResult(invoice_needed=False, reason="Client profile not found")
        if not profile.is_prepaid:
            return BalanceCheckResult(invoice_needed=False, reason="Client is not on prepaid billing")

        balance = to_money(profile.prepaid_balance)
        settings = RateResolver.trainer_settings(self.db, trainer_id)
        next_rate = RateResolver.next_session_rate(
            self.db, profile, settings, trainer_id=trainer_id, after=self.clock()
        )
        threshold = next_rate if next_rate is not None else to_money(profile.session_rate)

        if balance > ZERO and balance >= threshold:
            self.observer.emit(
                LedgerEvent.BALANCE_CHECK,
                MetricOutcome.SKIPPED,
                client_id=client_id,
                balance=balance,
                threshold=threshold,
            )
            return BalanceCheckResult(invoice_needed=False, reason="Balance covers the next session")

        invoice = self.invoices.generate_top_up_invoice(client_id, trainer_id)
        self.observer.emit(
            LedgerEvent.BALANCE_CHECK,
            MetricOutcome.SUCCESS,
            client_id=client_id,
            balance=balance,
            threshold=threshold,
            invoice_id=invoice.invoice_id if invoice else None,
        )
        if invoice is None:
            return BalanceCheckResult(
                invoice_needed=True, reason="No top-up invoice was required at generation time"
            )
        return BalanceCheckResult(
            invoice_needed=True,
            invoice_id=invoice.invoice_id,
            invoice_created=invoice.created,
        )

    def add_credit(
        self,
        client_id: str,
        amount: Decimal | float | str,
        notes: Optional[str] = None,
    ) -> CreditResult:
        """Add prepaid credit, switching the client to PREPAID billing if needed."""

        try:
            normalized = to_money(amount)
        except (InvalidOperation, TypeError, ValueError):
            return CreditResult(success=False, error="Credit amount must be a valid number")
        if not normalized.is_finite():
            return CreditResult(success=False, error="Credit amount must be a valid number")
        if normalized <= ZERO:
            return CreditResult(success=False, error="Credit amount must be greater than zero")

        switched = False
        try:
            with serializable_transaction(self.db):
                profile = self._profile_for_client(client_id, lock=True)
                if profile is None:
                    return CreditResult(success=False, error="Client profile not found")

                new_balance = to_money(profile.prepaid_balance) + normalized
                description = notes.strip() if notes and notes.strip() else DEFAULT_CREDIT_DESCRIPTION
                if not profile.is_prepaid:
                    switched = True
                    description = (
                        f"{description} (billing switched from "
                        f"{profile.billing_frequency.value} to PREPAID)"
                    )
                    profile.billing_frequency = models.BillingFrequency.PREPAID
                profile.prepaid_balance = new_balance
                entry = models.PrepaidTransaction(
                    client_profile_id=profile.id,
                    type=models.PrepaidTransactionType.CREDIT,
                    amount=normalized,
                    balance_after=new_balance,
                    description=description,
                )
                self.db.add(entry)
                self.db.flush()
                transaction_id = entry.id
        except SQLAlchemyError as exc:
            if is_serialization_failure(exc):
                raise
            LOGGER.exception("Unable to add prepaid credit", extra={"client_id": client_id})
            raise LedgerServiceError("Unable to add prepaid credit") from exc

        if switched:
            LOGGER.warning(
                "Client switched to prepaid billing by credit",
                extra={"client_id": client_id, "transaction_id": transaction_id},
            )
        self.observer.emit(
            LedgerEvent.CREDIT,
            MetricOutcome.SUCCESS,
            client_id=client_id,
            amount=normalized,
            new_balance=new_balance,
            switched_to_prepaid=switched,
        )
        return CreditResult(
            success=True,
            new_balance=new_balance,
            transaction_id=transaction_id,
            switched_to_prepaid=switched,
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def get_transactions(
        self, client_id: str, *, limit: int = 50, offset: int = 0
    ) -> Tuple[Iterable[models.PrepaidTransaction], int]:
        query = (
            self.db.query(models.PrepaidTransaction)
            .join(models.ClientProfile)
            .filter(models.ClientProfile.client_id == client_id)
        )
        total = query.count()
        items = (
            query.order_by(models.PrepaidTransaction.id.desc())
            .offset(max(offset, 0))
            .limit(max(limit, 1))
            .all()
        )
        return items, total

    def _last_credit_ids(self, profile_ids: list[str]) -> dict[str, int]:
        if not profile_ids:
            return {}
        rows = (
            self.db.query(
                models.PrepaidTransaction.client_profile_id,
                func.max(models.PrepaidTransaction.id),
            )
            .filter(
                models.PrepaidTransaction.client_profile_id.in_(profile_ids),
                models.PrepaidTransaction.type == models.PrepaidTransactionType.CREDIT,
            )
            .group_by(models.PrepaidTransaction.client_profile_id)
            .all()
        )
        return {profile_id: last_id for profile_id, last_id in rows}

    def get_prepaid_clients_summary(
        self, workspace_id: str
    ) -> Tuple[list[PrepaidClientSummary], PrepaidSummaryTotals]:
        profiles = (
            self.db.query(models.ClientProfile)
            .filter(
                models.ClientProfile.workspace_id == workspace_id,
                models.ClientProfile.billing_frequency == models.BillingFrequency.PREPAID,
            )
            .order_by(models.ClientProfile.full_name.asc())
            .all()
        )
        profile_ids = [profile.id for profile in profiles]
        last_credit = self._last_credit_ids(profile_ids)

        last_activity: dict[str, datetime] = {}
        if profile_ids:
            rows = (
                self.db.query(
                    models.PrepaidTransaction.client_profile_id,
                    func.max(models.PrepaidTransaction.created_at),
                )
                .filter(models.PrepaidTransaction.client_profile_id.in_(profile_ids))
                .group_by(models.PrepaidTransaction.client_profile_id)
                .all()
            )
            last_activity = {profile_id: created_at for profile_id, created_at in rows}

        summaries: list[PrepaidClientSummary] = []
        totals = PrepaidSummaryTotals()
        for profile in profiles:
            sessions = (
                self.db.query(func.count(models.PrepaidTransaction.id))
                .filter(
                    models.PrepaidTransaction.client_profile_id == profile.id,
                    models.PrepaidTransaction.type == models.PrepaidTransactionType.DEDUCTION,
                    models.PrepaidTransaction.id > last_credit.get(profile.id, 0),
                )
                .scalar()
            )
            balance = to_money(profile.prepaid_balance)
            target = (
                to_money(profile.prepaid_target_balance)
                if profile.prepaid_target_balance is not None
                else None
            )
            status = balance_status(balance, target)
            summaries.append(
                PrepaidClientSummary(
                    client_id=profile.client_id,
                    full_name=profile.full_name,
                    email=profile.email,
                    prepaid_balance=balance,
                    prepaid_target_balance=target,
                    sessions_since_last_credit=int(sessions or 0),
                    last_transaction_at=last_activity.get(profile.id),
                    status=status,
                )
            )
            totals.client_count += 1
            totals.total_balance += balance
            totals.total_target += target or ZERO
            if status != "healthy":
                totals.clients_needing_attention += 1

        return summaries, totals

    def get_client_detail(
        self, client_id: str, trainer_id: str
    ) -> Optional[ClientPrepaidDetail]:
        profile = self._profile_for_client(client_id)
        if profile is None:
            return None

        settings = RateResolver.trainer_settings(self.db, trainer_id)
        upcoming = RateResolver.next_scheduled_appointment(
            self.db, client_id=client_id, trainer_id=trainer_id, after=self.clock()
        )
        next_session = None
        if upcoming is not None:
            cost, is_group_session = RateResolver.rate_for_appointment(
                self.db, upcoming, profile, settings
            )
            next_session = UpcomingSession(
                appointment_id=upcoming.id,
                start_time=upcoming.start_time,
                is_group_session=is_group_session,
                estimated_cost=cost,
            )

        recent, _ = self.get_transactions(client_id, limit=RECENT_TRANSACTIONS_LIMIT)
        return ClientPrepaidDetail(
            client_id=profile.client_id,
            full_name=profile.full_name,
            billing_frequency=profile.billing_frequency,
            prepaid_balance=to_money(profile.prepaid_balance),
            prepaid_target_balance=(
                to_money(profile.prepaid_target_balance)
                if profile.prepaid_target_balance is not None
                else None
            ),
            next_session=next_session,
            recent_transactions=list(recent),
        )
