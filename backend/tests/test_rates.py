from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from backend.billing import models
from backend.billing.services.rates import RateResolver

from conftest import NOW, TRAINER_ID


def _profile(*, session_rate="100", group_session_rate=None) -> models.ClientProfile:
    return models.ClientProfile(
        client_id="client-x",
        workspace_id="workspace-1",
        full_name="Client X",
        billing_frequency=models.BillingFrequency.PREPAID,
        session_rate=Decimal(session_rate),
        group_session_rate=Decimal(group_session_rate) if group_session_rate else None,
    )


def _settings(default_group_session_rate=None) -> models.TrainerSettings:
    return models.TrainerSettings(
        trainer_id="trainer-x",
        workspace_id="workspace-1",
        default_group_session_rate=(
            Decimal(default_group_session_rate) if default_group_session_rate else None
        ),
    )


def test_individual_session_always_uses_client_rate():
    profile = _profile(session_rate="100", group_session_rate="40")
    rate = RateResolver.session_rate(profile, _settings("35"), is_group_session=False)
    assert rate == Decimal("100.00")


def test_group_session_prefers_client_group_rate():
    profile = _profile(group_session_rate="40")
    assert RateResolver.session_rate(profile, _settings("35"), True) == Decimal("40.00")


def test_group_session_falls_back_to_trainer_default():
    profile = _profile()
    assert RateResolver.session_rate(profile, _settings("35"), True) == Decimal("35.00")


def test_group_session_falls_back_to_individual_rate_without_settings():
    profile = _profile(session_rate="90")
    assert RateResolver.session_rate(profile, None, True) == Decimal("90.00")
    assert RateResolver.session_rate(profile, _settings(), True) == Decimal("90.00")


def test_next_session_rate_prices_the_upcoming_group_slot(
    db_session, make_profile, make_appointment, make_settings
):
    make_settings(default_group_session_rate="50")
    profile = make_profile(session_rate="30")
    partner = make_profile()
    slot = NOW + timedelta(days=2)
    make_appointment(profile.client_id, start=slot, status=models.AppointmentStatus.SCHEDULED)
    make_appointment(partner.client_id, start=slot, status=models.AppointmentStatus.SCHEDULED)

    rate = RateResolver.next_session_rate(
        db_session, profile, RateResolver.trainer_settings(db_session, TRAINER_ID),
        trainer_id=TRAINER_ID, after=NOW,
    )

    assert rate == Decimal("50.00")


def test_next_session_rate_is_none_without_future_appointments(db_session, make_profile, make_appointment):
    profile = make_profile()
    make_appointment(profile.client_id, start=NOW - timedelta(days=1))
    make_appointment(
        profile.client_id,
        start=NOW + timedelta(days=1),
        status=models.AppointmentStatus.CANCELLED,
    )

    assert (
        RateResolver.next_session_rate(db_session, profile, None, trainer_id=TRAINER_ID, after=NOW)
        is None
    )
