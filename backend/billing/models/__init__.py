"""Expose SQLAlchemy models for convenient imports."""

from .appointment import Appointment, AppointmentStatus
from .client_profile import BillingFrequency, ClientProfile
from .invoice import (
    PENDING_INVOICE_STATUSES,
    TERMINAL_INVOICE_STATUSES,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
)
from .invoice_delivery import DeliveryStatus, InvoiceDeliveryLog
from .operational_metric import OperationalMetricEvent
from .prepaid_transaction import PrepaidTransaction, PrepaidTransactionType
from .trainer_settings import (
    DEFAULT_INVOICE_DUE_DAYS,
    GroupSessionMatchingLogic,
    TrainerSettings,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BillingFrequency",
    "ClientProfile",
    "DEFAULT_INVOICE_DUE_DAYS",
    "DeliveryStatus",
    "GroupSessionMatchingLogic",
    "Invoice",
    "InvoiceDeliveryLog",
    "InvoiceLineItem",
    "InvoiceStatus",
    "OperationalMetricEvent",
    "PENDING_INVOICE_STATUSES",
    "PrepaidTransaction",
    "PrepaidTransactionType",
    "TERMINAL_INVOICE_STATUSES",
    "TrainerSettings",
]
