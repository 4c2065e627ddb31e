"""Models and enumerations to track invoice email deliveries."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from ..database import Base


class DeliveryStatus(str, enum.Enum):
    """Delivery status reported by the outbound messaging provider."""

    SENT = "sent"
    FAILED = "failed"


DELIVERY_STATUS_ENUM = SAEnum(
    DeliveryStatus,
    name="invoice_delivery_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class InvoiceDeliveryLog(Base):
    """Audit log with the outcome of each invoice email attempt."""

    __tablename__ = "invoice_delivery_logs"

    id = Column("delivery_log_id", String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(
        String(36), ForeignKey("invoices.invoice_id", ondelete="CASCADE"), nullable=False
    )
    delivery_status = Column(DELIVERY_STATUS_ENUM, nullable=False)
    destination = Column(String(255), nullable=True)
    channel = Column(String(50), nullable=False)
    provider_message_id = Column(String(255), nullable=True)
    response_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    invoice = relationship("Invoice", back_populates="delivery_logs")


Index("invoice_delivery_logs_invoice_idx", InvoiceDeliveryLog.invoice_id)
