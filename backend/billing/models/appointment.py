"""Read-only view of scheduled sessions owned by the scheduler."""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import Column, DateTime, Enum as SAEnum, Index, String, func

from ..database import Base


class AppointmentStatus(str, enum.Enum):
    """Lifecycle states of an appointment."""

    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


APPOINTMENT_STATUS_ENUM = SAEnum(
    AppointmentStatus,
    name="appointment_status_enum",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
    native_enum=False,
    validate_strings=True,
)


class Appointment(Base):
    """A training session between a trainer and a client."""

    __tablename__ = "appointments"

    id = Column("appointment_id", String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String(36), nullable=False)
    trainer_id = Column(String(36), nullable=False)
    client_id = Column(String(36), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(APPOINTMENT_STATUS_ENUM, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


Index(
    "appointments_trainer_window_idx",
    Appointment.workspace_id,
    Appointment.trainer_id,
    Appointment.start_time,
)
Index(
    "appointments_client_start_idx",
    Appointment.client_id,
    Appointment.start_time,
)
