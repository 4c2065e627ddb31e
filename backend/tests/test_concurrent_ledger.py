from __future__ import annotations

import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.billing import models
from backend.billing.database import (
    Base,
    configure_sqlite_transactions,
    run_with_serialization_retry,
)
from backend.billing.services import (
    ConsoleNotificationClient,
    PrepaidLedgerService,
    TopUpInvoiceService,
)

from conftest import NOW, TRAINER_ID, WORKSPACE_ID, RecordingObserver

CLIENT_ID = "client-concurrent"
LOCKED_READ_DELAY = 0.05


@pytest.fixture
def file_sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    configure_sqlite_transactions(engine)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def slow_locked_reads(monkeypatch):
    """Hold every in-transaction balance re-read open long enough for a rival to interleave."""

    read = PrepaidLedgerService._profile_for_client

    def delayed(self, client_id, *, lock=False):
        profile = read(self, client_id, lock=lock)
        if lock:
            time.sleep(LOCKED_READ_DELAY)
        return profile

    monkeypatch.setattr(PrepaidLedgerService, "_profile_for_client", delayed)


def _seed(sessions, *, balance: str, rate: str, appointments: int) -> list[str]:
    with sessions() as db:
        db.add(
            models.ClientProfile(
                client_id=CLIENT_ID,
                workspace_id=WORKSPACE_ID,
                full_name="Concurrent Client",
                email="client@example.com",
                billing_frequency=models.BillingFrequency.PREPAID,
                session_rate=Decimal(rate),
                prepaid_balance=Decimal(balance),
                prepaid_target_balance=Decimal("500"),
            )
        )
        booked = []
        for index in range(appointments):
            start = NOW - timedelta(days=index + 1)
            booked.append(
                models.Appointment(
                    workspace_id=WORKSPACE_ID,
                    trainer_id=TRAINER_ID,
                    client_id=CLIENT_ID,
                    start_time=start,
                    end_time=start + timedelta(hours=1),
                    status=models.AppointmentStatus.COMPLETED,
                )
            )
        db.add_all(booked)
        db.commit()
        return [appointment.id for appointment in booked]


def _run_concurrently(sessions, operations):
    barrier = threading.Barrier(len(operations))
    results = []
    errors = []

    def worker(operation):
        db = sessions()
        try:
            observer = RecordingObserver()
            invoices = TopUpInvoiceService(
                db,
                notification_client=ConsoleNotificationClient(),
                observer=observer,
                clock=lambda: NOW,
            )
            ledger = PrepaidLedgerService(db, observer=observer, invoices=invoices, clock=lambda: NOW)
            barrier.wait()
            results.append(
                run_with_serialization_retry(lambda: operation(ledger), backoff_ms=10)
            )
        except Exception as exc:
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(operation,)) for operation in operations]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(results) == len(operations)
    return results


def _ledger_chain(sessions, initial: str) -> tuple[Decimal, list[models.PrepaidTransaction]]:
    """Replay the ledger in id order, checking every ``balance_after`` snapshot."""

    with sessions() as db:
        entries = (
            db.query(models.PrepaidTransaction)
            .order_by(models.PrepaidTransaction.id)
            .all()
        )
        running = Decimal(initial)
        for entry in entries:
            if entry.type == models.PrepaidTransactionType.CREDIT:
                running += entry.amount
            else:
                running -= entry.amount
            assert running >= 0
            assert entry.balance_after == running
        profile = db.query(models.ClientProfile).filter_by(client_id=CLIENT_ID).one()
        assert profile.prepaid_balance == running
        return running, entries


def test_concurrent_deductions_never_lose_an_update(file_sessions):
    first, second = _seed(file_sessions, balance="500", rate="150", appointments=2)

    _run_concurrently(
        file_sessions,
        [
            lambda ledger: ledger.deduct_session(first),
            lambda ledger: ledger.deduct_session(second),
        ],
    )

    balance, entries = _ledger_chain(file_sessions, "500")
    assert balance == Decimal("200.00")
    assert sorted(entry.balance_after for entry in entries) == [Decimal("200.00"), Decimal("350.00")]


def test_concurrent_deductions_stop_at_zero(file_sessions):
    appointment_ids = _seed(file_sessions, balance="500", rate="150", appointments=4)

    results = _run_concurrently(
        file_sessions,
        [lambda ledger, appointment_id=appointment_id: ledger.deduct_session(appointment_id)
         for appointment_id in appointment_ids],
    )

    balance, entries = _ledger_chain(file_sessions, "500")
    assert balance == Decimal("0.00")
    assert sum(entry.amount for entry in entries) == Decimal("500.00")
    assert sorted(entry.amount for entry in entries) == [
        Decimal("50.00"),
        Decimal("150.00"),
        Decimal("150.00"),
        Decimal("150.00"),
    ]
    assert sum(result.amount_deducted for result in results) == Decimal("500.00")


def test_duplicate_completion_events_deduct_once(file_sessions):
    [appointment_id] = _seed(file_sessions, balance="300", rate="120", appointments=1)

    results = _run_concurrently(
        file_sessions,
        [lambda ledger: ledger.deduct_session(appointment_id)] * 2,
    )

    balance, entries = _ledger_chain(file_sessions, "300")
    assert balance == Decimal("180.00")
    assert len(entries) == 1
    assert {result.transaction_id for result in results} == {entries[0].id}
    assert results[0] == results[1]


def test_deduction_racing_a_credit_keeps_both(file_sessions):
    [appointment_id] = _seed(file_sessions, balance="500", rate="150", appointments=1)

    _run_concurrently(
        file_sessions,
        [
            lambda ledger: ledger.deduct_session(appointment_id),
            lambda ledger: ledger.add_credit(CLIENT_ID, "100"),
        ],
    )

    balance, entries = _ledger_chain(file_sessions, "500")
    assert balance == Decimal("450.00")
    assert {entry.type for entry in entries} == {
        models.PrepaidTransactionType.CREDIT,
        models.PrepaidTransactionType.DEDUCTION,
    }
