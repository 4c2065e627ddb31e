from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the project root (which exposes the ``backend`` package) is on ``sys.path``
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "0")
os.environ.setdefault("INVOICE_EMAIL_TRANSPORT", "console")

from backend.billing import models  # noqa: E402
from backend.billing.database import Base, configure_sqlite_transactions, get_db  # noqa: E402
from backend.billing.dependencies import get_notification_client  # noqa: E402
from backend.billing.main import app  # noqa: E402
from backend.billing.services import (  # noqa: E402
    ConsoleNotificationClient,
    LedgerObserver,
    NotificationClient,
    PrepaidLedgerService,
    TopUpInvoiceService,
)
from backend.billing.services.notifications import NotificationResult  # noqa: E402

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
WORKSPACE_ID = "workspace-1"
TRAINER_ID = "trainer-1"

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# SAVEPOINT based test isolation needs SQLAlchemy to own BEGIN.
configure_sqlite_transactions(engine)


TestingSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    join_transaction_mode="create_savepoint",
)


class RecordingObserver(LedgerObserver):
    """Observer that keeps emitted events in memory."""

    def __init__(self) -> None:
        super().__init__(None, persist=False)
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def emit(self, event_type: str, outcome: str, **tags: Any) -> None:
        self.events.append((event_type, outcome, tags))
        super().emit(event_type, outcome, **tags)

    def of_type(self, event_type: str) -> list[tuple[str, dict[str, Any]]]:
        return [(outcome, tags) for kind, outcome, tags in self.events if kind == event_type]


class FailingNotificationClient(NotificationClient):
    channel = "test"

    def __init__(self) -> None:
        self.attempts = 0

    def send_message(  # type: ignore[override]
        self,
        *,
        destination: str,
        subject: str,
        plain_text: str,
        html_text: str | None = None,
    ) -> NotificationResult:
        self.attempts += 1
        return NotificationResult(success=False, status_code=503, error="provider unavailable")


@pytest.fixture(scope="session", autouse=True)
def setup_database() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def notifier() -> ConsoleNotificationClient:
    return ConsoleNotificationClient()


@pytest.fixture
def failing_notifier() -> FailingNotificationClient:
    return FailingNotificationClient()


@pytest.fixture
def invoices(db_session, notifier, observer, clock) -> TopUpInvoiceService:
    return TopUpInvoiceService(
        db_session, notification_client=notifier, observer=observer, clock=clock
    )


@pytest.fixture
def ledger(db_session, invoices, observer, clock) -> PrepaidLedgerService:
    return PrepaidLedgerService(db_session, observer=observer, invoices=invoices, clock=clock)


@pytest.fixture
def client(db_session: Session, notifier) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            db_session.expire_all()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_client] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_notification_client, None)


@pytest.fixture
def make_profile(db_session: Session) -> Callable[..., models.ClientProfile]:
    counter = {"value": 0}

    def factory(
        *,
        client_id: Optional[str] = None,
        billing_frequency: models.BillingFrequency = models.BillingFrequency.PREPAID,
        session_rate: str = "100",
        group_session_rate: Optional[str] = None,
        prepaid_balance: Optional[str] = "0",
        prepaid_target_balance: Optional[str] = "500",
        email: Optional[str] = "client@example.com",
        workspace_id: str = WORKSPACE_ID,
    ) -> models.ClientProfile:
        counter["value"] += 1
        profile = models.ClientProfile(
            client_id=client_id or f"client-{counter['value']}",
            workspace_id=workspace_id,
            full_name=f"Client {counter['value']}",
            email=email,
            billing_frequency=billing_frequency,
            session_rate=Decimal(session_rate),
            group_session_rate=Decimal(group_session_rate) if group_session_rate else None,
            prepaid_balance=Decimal(prepaid_balance) if prepaid_balance is not None else None,
            prepaid_target_balance=(
                Decimal(prepaid_target_balance) if prepaid_target_balance is not None else None
            ),
        )
        db_session.add(profile)
        db_session.commit()
        return profile

    return factory


@pytest.fixture
def make_appointment(db_session: Session) -> Callable[..., models.Appointment]:
    def factory(
        client_id: str,
        *,
        start: datetime = NOW - timedelta(hours=2),
        duration: timedelta = timedelta(hours=1),
        status: models.AppointmentStatus = models.AppointmentStatus.COMPLETED,
        trainer_id: str = TRAINER_ID,
        workspace_id: str = WORKSPACE_ID,
    ) -> models.Appointment:
        appointment = models.Appointment(
            workspace_id=workspace_id,
            trainer_id=trainer_id,
            client_id=client_id,
            start_time=start,
            end_time=start + duration,
            status=status,
        )
        db_session.add(appointment)
        db_session.commit()
        return appointment

    return factory


@pytest.fixture
def make_settings(db_session: Session) -> Callable[..., models.TrainerSettings]:
    def factory(
        *,
        default_group_session_rate: Optional[str] = None,
        logic: models.GroupSessionMatchingLogic = models.GroupSessionMatchingLogic.EXACT_MATCH,
        due_days: int = models.DEFAULT_INVOICE_DUE_DAYS,
        trainer_id: str = TRAINER_ID,
    ) -> models.TrainerSettings:
        settings = models.TrainerSettings(
            trainer_id=trainer_id,
            workspace_id=WORKSPACE_ID,
            default_group_session_rate=(
                Decimal(default_group_session_rate) if default_group_session_rate else None
            ),
            group_session_matching_logic=logic,
            default_invoice_due_days=due_days,
        )
        db_session.add(settings)
        db_session.commit()
        return settings

    return factory
