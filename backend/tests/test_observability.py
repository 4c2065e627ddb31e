from __future__ import annotations

from decimal import Decimal

from backend.billing import models
from backend.billing.services.observability import LedgerEvent, LedgerObserver, MetricOutcome


def test_observer_persists_metric_events(db_session):
    observer = LedgerObserver(db_session)

    observer.emit(
        LedgerEvent.DEDUCTION,
        MetricOutcome.SUCCESS,
        appointment_id="apt-1",
        amount_deducted=Decimal("40.00"),
        mode=models.BillingFrequency.PREPAID,
    )

    event = db_session.query(models.OperationalMetricEvent).one()
    assert event.event_type == "prepaid.deduction"
    assert event.outcome == "success"
    assert event.tags == {"appointment_id": "apt-1", "amount_deducted": "40.00", "mode": "PREPAID"}


def test_observer_logs_structured_extra(caplog):
    observer = LedgerObserver(persist=False)

    with caplog.at_level("INFO"):
        observer.emit(LedgerEvent.CREDIT, MetricOutcome.SUCCESS, client_id="client-1")

    [record] = [item for item in caplog.records if getattr(item, "ledger_event", None)]
    assert record.ledger_event == "prepaid.credit"
    assert record.ledger_tags == {"client_id": "client-1"}
