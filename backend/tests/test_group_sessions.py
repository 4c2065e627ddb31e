from __future__ import annotations

from datetime import timedelta

import pytest

from backend.billing import models
from backend.billing.services.group_sessions import GroupSessionDetector

from conftest import NOW

Logic = models.GroupSessionMatchingLogic


@pytest.fixture
def candidate(make_profile, make_appointment):
    profile = make_profile()
    return make_appointment(profile.client_id, start=NOW, duration=timedelta(hours=1))


def _other(make_profile, make_appointment, *, start, duration=timedelta(hours=1), **kwargs):
    profile = make_profile()
    return make_appointment(profile.client_id, start=start, duration=duration, **kwargs)


def test_single_appointment_is_not_a_group(db_session, candidate):
    info = GroupSessionDetector.detect(db_session, candidate, Logic.EXACT_MATCH)
    assert info.is_group_session is False
    assert info.participant_count == 1


def test_exact_match_requires_same_start_and_end(db_session, candidate, make_profile, make_appointment):
    _other(make_profile, make_appointment, start=NOW)
    _other(make_profile, make_appointment, start=NOW, duration=timedelta(minutes=30))

    info = GroupSessionDetector.detect(db_session, candidate, Logic.EXACT_MATCH)

    assert info.is_group_session is True
    assert info.participant_count == 2


def test_start_match_ignores_end_time(db_session, candidate, make_profile, make_appointment):
    _other(make_profile, make_appointment, start=NOW, duration=timedelta(minutes=30))

    assert GroupSessionDetector.detect(db_session, candidate, Logic.START_MATCH).participant_count == 2
    assert GroupSessionDetector.detect(db_session, candidate, Logic.EXACT_MATCH).participant_count == 1


def test_end_match_ignores_start_time(db_session, candidate, make_profile, make_appointment):
    _other(
        make_profile,
        make_appointment,
        start=NOW + timedelta(minutes=30),
        duration=timedelta(minutes=30),
    )

    assert GroupSessionDetector.detect(db_session, candidate, Logic.END_MATCH).is_group_session
    assert not GroupSessionDetector.detect(db_session, candidate, Logic.START_MATCH).is_group_session


def test_any_overlap_counts_intersecting_ranges_only(db_session, candidate, make_profile, make_appointment):
    _other(make_profile, make_appointment, start=NOW + timedelta(minutes=45))
    _other(make_profile, make_appointment, start=NOW - timedelta(minutes=30))
    # Touching at the boundary is not an overlap.
    _other(make_profile, make_appointment, start=NOW + timedelta(hours=1))

    info = GroupSessionDetector.detect(db_session, candidate, Logic.ANY_OVERLAP)

    assert info.participant_count == 3


def test_cancelled_and_other_trainers_are_ignored(db_session, candidate, make_profile, make_appointment):
    _other(make_profile, make_appointment, start=NOW, status=models.AppointmentStatus.CANCELLED)
    _other(make_profile, make_appointment, start=NOW, status=models.AppointmentStatus.RESCHEDULED)
    _other(make_profile, make_appointment, start=NOW, trainer_id="trainer-2")
    _other(make_profile, make_appointment, start=NOW, workspace_id="workspace-2")

    info = GroupSessionDetector.detect(db_session, candidate, Logic.EXACT_MATCH)

    assert info.is_group_session is False


def test_scheduled_appointments_count_towards_group(db_session, candidate, make_profile, make_appointment):
    _other(make_profile, make_appointment, start=NOW, status=models.AppointmentStatus.SCHEDULED)

    first = GroupSessionDetector.detect(db_session, candidate, Logic.EXACT_MATCH)
    second = GroupSessionDetector.detect(db_session, candidate, Logic.EXACT_MATCH)

    assert first == second
    assert first.is_group_session is True


def test_matching_logic_defaults_to_exact_match(make_settings):
    assert GroupSessionDetector.matching_logic_for(None) is Logic.EXACT_MATCH
    settings = make_settings(logic=Logic.ANY_OVERLAP)
    assert GroupSessionDetector.matching_logic_for(settings) is Logic.ANY_OVERLAP
