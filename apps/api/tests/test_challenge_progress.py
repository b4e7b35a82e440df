"""
Challenge progress aggregation: totals, completion, windows, daily series.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.orm.exc import StaleDataError

from core.config import settings
from core.exceptions import NotFoundError
from models import CanonicalActivity, ChallengeParticipant, ProgressContribution
from services.challenge_progress import (
    AggregationConflictError,
    activity_contribution,
    activity_in_challenge_window,
    apply_activity,
    build_daily_series,
    join_challenge,
    tracked_total,
    list_unaggregated_activity_ids,
)

DAY_1 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _activity(db, user, start_time, distance_m=0.0, elevation_gain_m=None, duration_s=None, owned=True):
    activity = CanonicalActivity(
        user_id=user.id if owned else None,
        owner_status="owned" if owned else "awaiting_owner",
        external_user_id=None if owned else "pending-account",
        source="manual",
        source_activity_id=f"{user.id}:{uuid4().hex}",
        category="running",
        activity_type="RUNNING",
        start_time=start_time,
        distance_m=distance_m,
        elevation_gain_m=elevation_gain_m,
        duration_s=duration_s,
    )
    db.add(activity)
    db.commit()
    return activity


def _fresh(db, participant) -> ChallengeParticipant:
    db.refresh(participant)
    return participant


def test_fifty_km_over_five_days_completes_on_day_five(db_session, test_user, make_challenge):
    challenge = make_challenge(target_distance_km=Decimal("50"))
    participant = join_challenge(db_session, challenge.id, test_user.id, joined_at=DAY_1)

    activities = [
        _activity(db_session, test_user, DAY_1 + timedelta(days=i, hours=7), distance_m=10000.0)
        for i in range(5)
    ]
    for a in activities[:4]:
        apply_activity(db_session, a.id)
        assert _fresh(db_session, participant).is_completed is False

    apply_activity(db_session, activities[4].id)

    participant = _fresh(db_session, participant)
    assert participant.cumulative_distance_km == Decimal("50")
    assert participant.is_completed is True
    assert participant.completed_at == activities[4].start_time

    series = build_daily_series(db_session, challenge.id, test_user.id, today=date(2026, 3, 7))
    assert [p.date for p in series] == [date(2026, 3, d) for d in range(1, 8)]
    assert [p.value for p in series] == [Decimal("10")] * 5 + [Decimal("0")] * 2
    assert series[4].cumulative == Decimal("50")
    assert series[5].cumulative == series[6].cumulative == Decimal("50")
    assert series[-1].cumulative == participant.cumulative_distance_km


def test_completion_is_recorded_once(db_session, test_user, make_challenge):
    challenge = make_challenge(target_distance_km=Decimal("10"))
    participant = join_challenge(db_session, challenge.id, test_user.id)

    first = _activity(db_session, test_user, DAY_1 + timedelta(hours=8), distance_m=12000.0)
    second = _activity(db_session, test_user, DAY_1 + timedelta(days=1, hours=8), distance_m=5000.0)
    apply_activity(db_session, first.id)
    apply_activity(db_session, second.id)

    participant = _fresh(db_session, participant)
    assert participant.is_completed is True
    assert participant.completed_at == first.start_time
    assert participant.cumulative_distance_km == Decimal("17")


def test_totals_do_not_depend_on_arrival_order(db_session, make_user, make_challenge):
    challenge = make_challenge()
    alice = make_user(username="alice")
    bob = make_user(username="bob")
    p_alice = join_challenge(db_session, challenge.id, alice.id)
    p_bob = join_challenge(db_session, challenge.id, bob.id)

    distances = [100.0, 200.0, 333.3, 1234.5678, 0.4]
    alice_acts = [_activity(db_session, alice, DAY_1 + timedelta(hours=i), distance_m=d) for i, d in enumerate(distances)]
    bob_acts = [_activity(db_session, bob, DAY_1 + timedelta(hours=i), distance_m=d) for i, d in enumerate(distances)]

    for a in alice_acts:
        apply_activity(db_session, a.id)
    for a in reversed(bob_acts):
        apply_activity(db_session, a.id)

    assert _fresh(db_session, p_alice).cumulative_distance_km == _fresh(db_session, p_bob).cumulative_distance_km


def test_window_is_inclusive_on_whole_utc_days(make_challenge):
    challenge = make_challenge()

    assert activity_in_challenge_window(challenge, datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc))
    assert activity_in_challenge_window(challenge, datetime(2026, 3, 7, 23, 59, tzinfo=timezone.utc))
    assert not activity_in_challenge_window(challenge, datetime(2026, 2, 28, 23, 59, tzinfo=timezone.utc))
    assert not activity_in_challenge_window(challenge, datetime(2026, 3, 8, 0, 0, tzinfo=timezone.utc))


def test_activity_outside_window_is_skipped(db_session, test_user, make_challenge):
    challenge = make_challenge()
    participant = join_challenge(db_session, challenge.id, test_user.id)
    before = _activity(db_session, test_user, datetime(2026, 2, 20, tzinfo=timezone.utc), distance_m=5000.0)

    assert apply_activity(db_session, before.id) == []

    assert _fresh(db_session, participant).cumulative_distance_km == Decimal("0")
    db_session.refresh(before)
    assert before.aggregated_at is not None


def test_inactive_challenge_is_skipped(db_session, test_user, make_challenge):
    challenge = make_challenge(is_active=False)
    participant = join_challenge(db_session, challenge.id, test_user.id)
    activity = _activity(db_session, test_user, DAY_1 + timedelta(hours=6), distance_m=5000.0)

    assert apply_activity(db_session, activity.id) == []
    assert _fresh(db_session, participant).cumulative_distance_km == Decimal("0")


def test_activity_counts_towards_every_qualifying_challenge(db_session, test_user, make_challenge):
    distance = make_challenge(title="Distance")
    climb = make_challenge(title="Climb", challenge_type="elevation", target_elevation_m=Decimal("1000"))
    minutes = make_challenge(title="Minutes", challenge_type="duration", target_duration_min=Decimal("600"))
    p_distance = join_challenge(db_session, distance.id, test_user.id)
    p_climb = join_challenge(db_session, climb.id, test_user.id)
    p_minutes = join_challenge(db_session, minutes.id, test_user.id)

    activity = _activity(
        db_session, test_user, DAY_1 + timedelta(hours=9),
        distance_m=21097.5, elevation_gain_m=312.4, duration_s=5430,
    )
    updated = apply_activity(db_session, activity.id)

    assert len(updated) == 3
    assert _fresh(db_session, p_distance).cumulative_distance_km == Decimal("21.098")
    assert _fresh(db_session, p_climb).cumulative_elevation_m == Decimal("312.4")
    assert _fresh(db_session, p_minutes).cumulative_duration_min == Decimal("90.5")
    # Only the tracked dimension moves.
    assert p_climb.cumulative_distance_km == Decimal("0")


def test_missing_target_never_completes(db_session, test_user, make_challenge):
    challenge = make_challenge(target_distance_km=None)
    participant = join_challenge(db_session, challenge.id, test_user.id)
    activity = _activity(db_session, test_user, DAY_1, distance_m=100000.0)

    apply_activity(db_session, activity.id)

    participant = _fresh(db_session, participant)
    assert participant.cumulative_distance_km == Decimal("100")
    assert participant.is_completed is False


def test_apply_is_idempotent(db_session, test_user, make_challenge):
    challenge = make_challenge()
    participant = join_challenge(db_session, challenge.id, test_user.id)
    activity = _activity(db_session, test_user, DAY_1, distance_m=7000.0)

    assert len(apply_activity(db_session, activity.id)) == 1
    assert apply_activity(db_session, activity.id) == []

    assert _fresh(db_session, participant).cumulative_distance_km == Decimal("7")
    assert db_session.query(ProgressContribution).count() == 1


def test_unowned_activity_is_not_aggregated(db_session, test_user, make_challenge):
    challenge = make_challenge()
    join_challenge(db_session, challenge.id, test_user.id)
    pending = _activity(db_session, test_user, DAY_1, distance_m=7000.0, owned=False)

    assert apply_activity(db_session, pending.id) == []
    db_session.refresh(pending)
    assert pending.aggregated_at is None


def test_user_without_challenges_is_a_no_op(db_session, test_user):
    activity = _activity(db_session, test_user, DAY_1, distance_m=7000.0)

    assert apply_activity(db_session, activity.id) == []


def test_join_is_idempotent(db_session, test_user, make_challenge):
    challenge = make_challenge()
    first = join_challenge(db_session, challenge.id, test_user.id)
    second = join_challenge(db_session, challenge.id, test_user.id)

    assert first.id == second.id
    assert first.cumulative_distance_km == Decimal("0")
    assert first.is_completed is False


def test_join_unknown_challenge_raises(db_session, test_user):
    with pytest.raises(NotFoundError):
        join_challenge(db_session, uuid4(), test_user.id)


def test_optimistic_lock_conflict_is_retried(db_session, test_user, make_challenge):
    challenge = make_challenge()
    join_challenge(db_session, challenge.id, test_user.id)
    activity = _activity(db_session, test_user, DAY_1, distance_m=1000.0)

    from services import challenge_progress

    real_apply_once = challenge_progress._apply_once
    calls = {"n": 0}

    def flaky(db, activity_id, now):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleDataError("version mismatch")
        return real_apply_once(db, activity_id, now)

    with patch("services.challenge_progress._apply_once", side_effect=flaky):
        updated = apply_activity(db_session, activity.id)

    assert calls["n"] == 2
    assert len(updated) == 1


def test_conflict_after_max_retries_leaves_activity_for_sweep(db_session, test_user, make_challenge):
    challenge = make_challenge()
    join_challenge(db_session, challenge.id, test_user.id)
    activity = _activity(db_session, test_user, DAY_1, distance_m=1000.0)

    with patch("services.challenge_progress._apply_once", side_effect=StaleDataError("version mismatch")) as apply_once:
        with pytest.raises(AggregationConflictError):
            apply_activity(db_session, activity.id)

    assert apply_once.call_count == settings.AGGREGATION_MAX_RETRIES
    db_session.refresh(activity)
    assert activity.aggregated_at is None
    assert list_unaggregated_activity_ids(db_session, older_than=datetime.now(timezone.utc) + timedelta(minutes=1)) == [activity.id]


def test_daily_series_stops_at_today(db_session, test_user, make_challenge):
    challenge = make_challenge()
    join_challenge(db_session, challenge.id, test_user.id)
    apply_activity(db_session, _activity(db_session, test_user, DAY_1 + timedelta(days=1), distance_m=3000.0).id)

    series = build_daily_series(db_session, challenge.id, test_user.id, today=date(2026, 3, 3))

    assert [p.date for p in series] == [date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3)]
    assert [p.cumulative for p in series] == [Decimal("0"), Decimal("3"), Decimal("3")]


def test_daily_series_folds_future_dated_activity_into_last_day(db_session, test_user, make_challenge):
    challenge = make_challenge()
    participant = join_challenge(db_session, challenge.id, test_user.id)
    apply_activity(db_session, _activity(db_session, test_user, DAY_1 + timedelta(days=1), distance_m=3000.0).id)
    # Device clock ahead: dated inside the window but after "today".
    apply_activity(db_session, _activity(db_session, test_user, DAY_1 + timedelta(days=4), distance_m=2000.0).id)

    series = build_daily_series(db_session, challenge.id, test_user.id, today=date(2026, 3, 3))

    assert [p.value for p in series] == [Decimal("0"), Decimal("3"), Decimal("2")]
    assert series[-1].cumulative == tracked_total(_fresh(db_session, participant), challenge.challenge_type)
    assert series[-1].cumulative == Decimal("5")


def test_daily_series_before_start_is_empty(db_session, test_user, make_challenge):
    challenge = make_challenge()
    join_challenge(db_session, challenge.id, test_user.id)

    assert build_daily_series(db_session, challenge.id, test_user.id, today=date(2026, 2, 1)) == []


def test_daily_series_requires_participation(db_session, test_user, make_challenge):
    challenge = make_challenge()

    with pytest.raises(NotFoundError):
        build_daily_series(db_session, challenge.id, test_user.id)


def test_activity_contribution_units():
    activity = CanonicalActivity(distance_m=1500.0, elevation_gain_m=12.3456, duration_s=90)

    assert activity_contribution(activity, "distance") == Decimal("1.5")
    assert activity_contribution(activity, "elevation") == Decimal("12.346")
    assert activity_contribution(activity, "duration") == Decimal("1.5")
    with pytest.raises(ValueError):
        activity_contribution(activity, "calories")
