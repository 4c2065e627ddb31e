"""Detection of appointments that share a slot with other clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from .. import models

GROUP_ELIGIBLE_STATUSES = (
    models.AppointmentStatus.SCHEDULED,
    models.AppointmentStatus.COMPLETED,
)


@dataclass(frozen=True)
class GroupSessionInfo:
    is_group_session: bool
    participant_count: int


class GroupSessionDetector:
    """Read-only queries deciding whether an appointment is a group session."""

    @staticmethod
    def matching_logic_for(
        settings: Optional[models.TrainerSettings],
    ) -> models.GroupSessionMatchingLogic:
        if settings is None or settings.group_session_matching_logic is None:
            return models.GroupSessionMatchingLogic.EXACT_MATCH
        return models.GroupSessionMatchingLogic(settings.group_session_matching_logic)

    @staticmethod
    def _overlap_condition(
        appointment: models.Appointment, logic: models.GroupSessionMatchingLogic
    ):
        other = models.Appointment
        if logic is models.GroupSessionMatchingLogic.START_MATCH:
            return other.start_time == appointment.start_time
        if logic is models.GroupSessionMatchingLogic.END_MATCH:
            return other.end_time == appointment.end_time
        if logic is models.GroupSessionMatchingLogic.ANY_OVERLAP:
            return and_(
                other.start_time < appointment.end_time,
                other.end_time > appointment.start_time,
            )
        return and_(
            other.start_time == appointment.start_time,
            other.end_time == appointment.end_time,
        )

    @classmethod
    def detect(
        cls,
        db: Session,
        appointment: models.Appointment,
        logic: models.GroupSessionMatchingLogic = models.GroupSessionMatchingLogic.EXACT_MATCH,
    ) -> GroupSessionInfo:
        others = (
            db.query(func.count(models.Appointment.id))
            .filter(
                models.Appointment.trainer_id == appointment.trainer_id,
                models.Appointment.workspace_id == appointment.workspace_id,
                models.Appointment.status.in_(GROUP_ELIGIBLE_STATUSES),
                models.Appointment.id != appointment.id,
                cls._overlap_condition(appointment, logic),
            )
            .scalar()
        )
        participant_count = int(others or 0) + 1
        return GroupSessionInfo(
            is_group_session=participant_count > 1,
            participant_count=participant_count,
        )
