"""SQLAlchemy models for invoices and their line items."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import relationship

from ..database import Base
from ..db_types import Money


class InvoiceStatus(str, enum.Enum):
    """Invoice states; PAID and CANCELLED are terminal."""

    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


PENDING_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.SENT)
TERMINAL_INVOICE_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)

INVOICE_STATUS_ENUM = SAEnum(
    InvoiceStatus,
    name="invoice_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class Invoice(Base):
    """An invoice issued by a trainer to a client."""

    __tablename__ = "invoices"

    id = Column("invoice_id", String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String(36), nullable=False)
    trainer_id = Column(String(36), nullable=False)
    client_id = Column(String(36), nullable=False, index=True)
    amount = Column(Money(), nullable=False)
    due_date = Column(Date, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(INVOICE_STATUS_ENUM, nullable=False)
    is_prepaid_top_up = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position",
    )
    delivery_logs = relationship(
        "InvoiceDeliveryLog",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_INVOICE_STATUSES


class InvoiceLineItem(Base):
    """A single billable row on an invoice."""

    __tablename__ = "invoice_line_items"

    id = Column("line_item_id", String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    invoice_id = Column(
        String(36),
        ForeignKey("invoices.invoice_id", ondelete="CASCADE"),
        nullable=False,
    )
    position = Column(Integer, nullable=False, default=0)
    appointment_id = Column(String(36), nullable=True)
    description = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Money(), nullable=False)
    total = Column(Money(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    invoice = relationship("Invoice", back_populates="line_items")


Index(
    "uq_invoices_pending_top_up_per_client",
    Invoice.client_id,
    unique=True,
    sqlite_where=text("is_prepaid_top_up = 1 AND status IN ('DRAFT', 'SENT')"),
    postgresql_where=text("is_prepaid_top_up AND status IN ('DRAFT', 'SENT')"),
)
Index("invoice_line_items_invoice_idx", InvoiceLineItem.invoice_id)
