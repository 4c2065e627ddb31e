"""SQLAlchemy model definitions for client billing profiles."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    String,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import Money


class BillingFrequency(str, enum.Enum):
    """How a client is billed for completed sessions."""

    PER_SESSION = "PER_SESSION"
    MONTHLY = "MONTHLY"
    PREPAID = "PREPAID"


BILLING_FREQUENCY_ENUM = SAEnum(
    BillingFrequency,
    name="billing_frequency_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class ClientProfile(Base):
    """Billing profile for a client, including the prepaid balance."""

    __tablename__ = "client_profiles"
    __table_args__ = (
        CheckConstraint(
            "prepaid_balance IS NULL OR prepaid_balance >= 0",
            name="ck_client_profiles_prepaid_balance_non_negative",
        ),
    )

    id = Column("client_profile_id", String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String(36), nullable=False, unique=True, index=True)
    workspace_id = Column(String(36), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    billing_frequency = Column(BILLING_FREQUENCY_ENUM, nullable=False)
    session_rate = Column(Money(), nullable=False)
    group_session_rate = Column(Money(), nullable=True)
    prepaid_balance = Column(
        Money(),
        nullable=True,
        comment="Only meaningful while billing_frequency is PREPAID",
    )
    prepaid_target_balance = Column(Money(), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    transactions = relationship(
        "PrepaidTransaction",
        back_populates="client_profile",
        order_by="PrepaidTransaction.id",
        passive_deletes=True,
    )

    @property
    def is_prepaid(self) -> bool:
        return self.billing_frequency == BillingFrequency.PREPAID
