"""Structured event sink for ledger operations."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from .. import models

LOGGER = logging.getLogger(__name__)


class MetricOutcome(str):
    SUCCESS = "success"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ERROR = "error"


class LedgerEvent(str):
    DEDUCTION = "prepaid.deduction"
    CREDIT = "prepaid.credit"
    BALANCE_CHECK = "prepaid.balance_check"
    INVOICE_CREATED = "invoices.top_up_created"
    INVOICE_DELIVERY = "invoices.delivery"
    INVOICE_PAID = "invoices.paid"
    INVOICE_VOIDED = "invoices.void_and_switch"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class ObservabilityService:
    """Persists operational metric events in their own session."""

    @staticmethod
    def record_event(
        db: Session,
        event_type: str,
        outcome: str,
        *,
        duration_ms: float | None = None,
        tags: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        payload = models.OperationalMetricEvent(
            event_type=event_type,
            outcome=outcome,
            duration_ms=Decimal(str(duration_ms)) if duration_ms is not None else None,
            tags=_jsonable(tags or {}),
            details=_jsonable(metadata) if metadata else None,
        )
        ObservabilityService._persist(db, payload)

    @staticmethod
    def _persist(db: Session, event: models.OperationalMetricEvent) -> None:
        try:
            bind = db.get_bind()
            with Session(bind=bind) as metrics_session:
                metrics_session.add(event)
                metrics_session.commit()
        except Exception:  # pragma: no cover - metrics failures should not break flows
            LOGGER.exception("Failed to persist operational metric event", exc_info=True)


class LedgerObserver:
    """Event sink injected into the ledger services.

    Every business log point of the engine goes through :meth:`emit`, which
    writes a structured log line and, when a session is attached, an
    ``OperationalMetricEvent`` row. Subclasses can capture events instead.
    """

    def __init__(
        self,
        db: Session | None = None,
        *,
        persist: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.persist = persist
        self.logger = logger or LOGGER

    def emit(self, event_type: str, outcome: str, **tags: Any) -> None:
        payload = _jsonable(tags)
        level = logging.WARNING if outcome == MetricOutcome.ERROR else logging.INFO
        self.logger.log(
            level,
            "%s %s",
            event_type,
            outcome,
            extra={"ledger_event": event_type, "ledger_outcome": outcome, "ledger_tags": payload},
        )
        if self.persist and self.db is not None:
            ObservabilityService.record_event(self.db, event_type, outcome, tags=payload)
