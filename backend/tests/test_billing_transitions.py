from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from backend.billing import models
from backend.billing.services import BillingModeTransitionService
from backend.billing.services.observability import LedgerEvent, MetricOutcome

from conftest import TRAINER_ID, WORKSPACE_ID


@pytest.fixture
def transitions(db_session, observer) -> BillingModeTransitionService:
    return BillingModeTransitionService(db_session, observer=observer)


def _invoice(db_session, client_id, *, status=models.InvoiceStatus.SENT, top_up=True) -> models.Invoice:
    invoice = models.Invoice(
        workspace_id=WORKSPACE_ID,
        trainer_id=TRAINER_ID,
        client_id=client_id,
        amount=Decimal("300"),
        due_date=date(2026, 11, 18),
        status=status,
        is_prepaid_top_up=top_up,
    )
    db_session.add(invoice)
    db_session.commit()
    return invoice


def test_void_retains_balance_as_credit(db_session, transitions, observer, make_profile):
    profile = make_profile(prepaid_balance="75.50")
    invoice = _invoice(db_session, profile.client_id)

    result = transitions.void_invoice_and_switch_billing(invoice.id, models.BillingFrequency.MONTHLY)

    assert result.success is True
    assert result.credit_amount == Decimal("75.50")
    assert result.new_billing_frequency == models.BillingFrequency.MONTHLY
    db_session.refresh(invoice)
    db_session.refresh(profile)
    assert invoice.status == models.InvoiceStatus.CANCELLED
    assert profile.billing_frequency == models.BillingFrequency.MONTHLY
    assert profile.prepaid_balance == Decimal("75.50")
    [entry] = profile.transactions
    assert entry.type == models.PrepaidTransactionType.CREDIT
    assert entry.amount == Decimal("0.00")
    assert entry.balance_after == Decimal("75.50")
    assert entry.description == "Credit retained ($75.50) - switching to MONTHLY billing"
    assert observer.of_type(LedgerEvent.INVOICE_VOIDED)[0][0] == MetricOutcome.SUCCESS


def test_void_with_zero_balance_writes_no_credit(db_session, transitions, make_profile):
    profile = make_profile(prepaid_balance="0")
    invoice = _invoice(db_session, profile.client_id, status=models.InvoiceStatus.DRAFT)

    result = transitions.void_invoice_and_switch_billing(invoice.id, "PER_SESSION")

    assert result.success is True
    assert result.credit_amount == Decimal("0.00")
    db_session.refresh(profile)
    assert profile.billing_frequency == models.BillingFrequency.PER_SESSION
    assert profile.transactions == []


def test_void_rejects_paid_invoice_without_changes(db_session, transitions, observer, make_profile):
    profile = make_profile(prepaid_balance="120")
    invoice = _invoice(db_session, profile.client_id, status=models.InvoiceStatus.PAID)

    result = transitions.void_invoice_and_switch_billing(invoice.id, models.BillingFrequency.MONTHLY)

    assert result.success is False
    assert result.error == "Cannot void a paid invoice"
    db_session.refresh(invoice)
    db_session.refresh(profile)
    assert invoice.status == models.InvoiceStatus.PAID
    assert profile.billing_frequency == models.BillingFrequency.PREPAID
    assert profile.prepaid_balance == Decimal("120.00")
    assert observer.of_type(LedgerEvent.INVOICE_VOIDED)[0][0] == MetricOutcome.REJECTED


@pytest.mark.parametrize(
    ("status", "top_up", "error"),
    [
        (models.InvoiceStatus.CANCELLED, True, "Invoice is already cancelled"),
        (models.InvoiceStatus.SENT, False, "Invoice is not a prepaid top-up invoice"),
    ],
)
def test_void_rejects_invalid_invoices(db_session, transitions, make_profile, status, top_up, error):
    profile = make_profile(prepaid_balance="10")
    invoice = _invoice(db_session, profile.client_id, status=status, top_up=top_up)

    result = transitions.void_invoice_and_switch_billing(invoice.id, models.BillingFrequency.MONTHLY)

    assert result.success is False
    assert result.error == error


def test_void_reports_missing_invoice_and_profile(db_session, transitions):
    assert (
        transitions.void_invoice_and_switch_billing("missing", "MONTHLY").error
        == "Invoice not found"
    )
    orphan = _invoice(db_session, "client-without-profile")
    result = transitions.void_invoice_and_switch_billing(orphan.id, "MONTHLY")
    assert result.error == "Client profile not found"
    db_session.refresh(orphan)
    assert orphan.status == models.InvoiceStatus.SENT


@pytest.mark.parametrize("target", ["PREPAID", "WEEKLY"])
def test_void_requires_non_prepaid_target(db_session, transitions, make_profile, target):
    profile = make_profile(prepaid_balance="10")
    invoice = _invoice(db_session, profile.client_id)

    result = transitions.void_invoice_and_switch_billing(invoice.id, target)

    assert result.success is False
    db_session.refresh(invoice)
    assert invoice.status == models.InvoiceStatus.SENT
