"""Session price resolution for prepaid deductions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from .. import models
from ..db_types import to_money
from .group_sessions import GroupSessionDetector


class RateResolver:
    """Picks the price to charge for a session.

    Group sessions fall through client group rate, trainer default group rate
    and finally the client's individual rate. Individual sessions always use
    the individual rate.
    """

    @staticmethod
    def session_rate(
        profile: models.ClientProfile,
        settings: Optional[models.TrainerSettings],
        is_group_session: bool,
    ) -> Decimal:
        if is_group_session:
            if profile.group_session_rate is not None:
                return to_money(profile.group_session_rate)
            if settings is not None and settings.default_group_session_rate is not None:
                return to_money(settings.default_group_session_rate)
        return to_money(profile.session_rate)

    @staticmethod
    def trainer_settings(db: Session, trainer_id: str) -> Optional[models.TrainerSettings]:
        return (
            db.query(models.TrainerSettings)
            .filter(models.TrainerSettings.trainer_id == trainer_id)
            .first()
        )

    @classmethod
    def rate_for_appointment(
        cls,
        db: Session,
        appointment: models.Appointment,
        profile: models.ClientProfile,
        settings: Optional[models.TrainerSettings],
    ) -> tuple[Decimal, bool]:
        """Return ``(rate, is_group_session)`` for ``appointment``."""

        logic = GroupSessionDetector.matching_logic_for(settings)
        info = GroupSessionDetector.detect(db, appointment, logic)
        return cls.session_rate(profile, settings, info.is_group_session), info.is_group_session

    @staticmethod
    def next_scheduled_appointment(
        db: Session,
        *,
        client_id: str,
        trainer_id: str,
        after: datetime,
        exclude_id: Optional[str] = None,
    ) -> Optional[models.Appointment]:
        query = db.query(models.Appointment).filter(
            models.Appointment.client_id == client_id,
            models.Appointment.trainer_id == trainer_id,
            models.Appointment.status == models.AppointmentStatus.SCHEDULED,
            models.Appointment.start_time > after,
        )
        if exclude_id is not None:
            query = query.filter(models.Appointment.id != exclude_id)
        return query.order_by(models.Appointment.start_time.asc()).first()

    @classmethod
    def next_session_rate(
        cls,
        db: Session,
        profile: models.ClientProfile,
        settings: Optional[models.TrainerSettings],
        *,
        trainer_id: str,
        after: datetime,
        exclude_id: Optional[str] = None,
    ) -> Optional[Decimal]:
        """Rate of the client's next SCHEDULED session, or ``None`` without one."""

        upcoming = cls.next_scheduled_appointment(
            db,
            client_id=profile.client_id,
            trainer_id=trainer_id,
            after=after,
            exclude_id=exclude_id,
        )
        if upcoming is None:
            return None
        rate, _ = cls.rate_for_appointment(db, upcoming, profile, settings)
        return rate
