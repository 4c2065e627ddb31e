"""FastAPI dependencies wiring the ledger services to a request session."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable, TypeVar

from fastapi import Depends, HTTPException, status
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from .database import get_db, is_serialization_failure, run_with_serialization_retry
from .services import (
    AppointmentEventHandler,
    BillingModeTransitionService,
    BillingTransitionError,
    InvoiceServiceError,
    LedgerServiceError,
    LedgerObserver,
    NotificationClient,
    PrepaidLedgerService,
    TopUpInvoiceService,
    build_notification_client_from_env,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@lru_cache(maxsize=1)
def get_notification_client() -> NotificationClient:
    return build_notification_client_from_env()


def get_observer(db: Session = Depends(get_db)) -> LedgerObserver:
    return LedgerObserver(db)


def get_invoice_service(
    db: Session = Depends(get_db),
    notification_client: NotificationClient = Depends(get_notification_client),
    observer: LedgerObserver = Depends(get_observer),
) -> TopUpInvoiceService:
    return TopUpInvoiceService(db, notification_client=notification_client, observer=observer)


def get_ledger_service(
    db: Session = Depends(get_db),
    observer: LedgerObserver = Depends(get_observer),
    invoices: TopUpInvoiceService = Depends(get_invoice_service),
) -> PrepaidLedgerService:
    return PrepaidLedgerService(db, observer=observer, invoices=invoices)


def get_transition_service(
    db: Session = Depends(get_db),
    observer: LedgerObserver = Depends(get_observer),
) -> BillingModeTransitionService:
    return BillingModeTransitionService(db, observer=observer)


def get_appointment_handler(
    db: Session = Depends(get_db),
    ledger: PrepaidLedgerService = Depends(get_ledger_service),
) -> AppointmentEventHandler:
    return AppointmentEventHandler(db, ledger)


def run_serialized(operation: Callable[[], T], *, action: str) -> T:
    """Run a ledger mutation, retrying conflicts and mapping the last one to 409."""

    try:
        return run_with_serialization_retry(operation)
    except DBAPIError as exc:
        if is_serialization_failure(exc):
            LOGGER.warning("Giving up after repeated serialization conflicts", extra={"action": action})
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Concurrent update while trying to {action}; please retry",
            ) from exc
        LOGGER.exception("Database error while trying to %s", action)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Unable to {action}",
        ) from exc
    except (LedgerServiceError, InvoiceServiceError, BillingTransitionError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
