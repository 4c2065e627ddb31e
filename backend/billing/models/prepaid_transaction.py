"""Append-only ledger entries for prepaid balances."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import Money


class PrepaidTransactionType(str, enum.Enum):
    """Direction of a prepaid balance movement."""

    CREDIT = "CREDIT"
    DEDUCTION = "DEDUCTION"


PREPAID_TRANSACTION_TYPE_ENUM = SAEnum(
    PrepaidTransactionType,
    name="prepaid_transaction_type_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrepaidTransaction(Base):
    """Immutable movement on a client's prepaid balance.

    ``id`` is assigned in commit order and is the ledger order; ``balance_after``
    is a snapshot of the profile balance right after this entry was written.
    """

    __tablename__ = "prepaid_transactions"

    id = Column("prepaid_transaction_id", Integer, primary_key=True, autoincrement=True)
    client_profile_id = Column(
        String(36),
        ForeignKey("client_profiles.client_profile_id", ondelete="CASCADE"),
        nullable=False,
    )
    type = Column("transaction_type", PREPAID_TRANSACTION_TYPE_ENUM, nullable=False)
    amount = Column(Money(), nullable=False)
    balance_after = Column(Money(), nullable=False)
    appointment_id = Column(
        String(36),
        ForeignKey("appointments.appointment_id", ondelete="SET NULL"),
        nullable=True,
    )
    description = Column(Text, nullable=False)
    invoice_requested = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    client_profile = relationship("ClientProfile", back_populates="transactions")
    appointment = relationship("Appointment")


Index(
    "prepaid_transactions_profile_idx",
    PrepaidTransaction.client_profile_id,
    PrepaidTransaction.id,
)
Index(
    "uq_prepaid_transactions_deduction_appointment",
    PrepaidTransaction.appointment_id,
    unique=True,
    sqlite_where=text("transaction_type = 'DEDUCTION' AND appointment_id IS NOT NULL"),
    postgresql_where=text("transaction_type = 'DEDUCTION' AND appointment_id IS NOT NULL"),
)
