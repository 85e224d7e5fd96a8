"""
Pure entitlement rules: no database involved.
"""
import random
from datetime import date, datetime, timedelta, timezone

import pytest

from quizcast.features.entitlements.policy import (
    DenialReason,
    evaluate_record,
    fresh_record,
    keep_max,
    next_reset_at,
)
from quizcast.models.entitlement import EntitlementRecord, SubscriptionPlan

TODAY = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 15, 30, tzinfo=timezone.utc)


def _eval(record, *, allowance=2, today=TODAY, now=NOW, consume=True):
    return evaluate_record(record, user_id="u1", today=today, now=now, allowance=allowance, consume=consume)


def test_fresh_user_gets_allowance_then_is_denied():
    first = _eval(None)
    assert first.decision.allowed
    assert first.decision.credits_remaining == 1
    assert first.created and first.changed

    second = _eval(first.record)
    assert second.decision.allowed
    assert second.decision.credits_remaining == 0

    third = _eval(second.record)
    assert not third.decision.allowed
    assert third.decision.reason == DenialReason.EXHAUSTED
    assert third.decision.credits_remaining == 0
    assert third.decision.resets_on == TODAY + timedelta(days=1)
    assert not third.changed


def test_new_day_resets_before_checking():
    record = EntitlementRecord(user_id="u1", credits=0, last_reset_date=TODAY - timedelta(days=1))
    result = _eval(record)
    assert result.reset
    assert result.decision.allowed
    assert result.decision.credits_remaining == 1
    assert result.record.last_reset_date == TODAY


def test_reset_never_carries_over_unused_credits():
    record = EntitlementRecord(user_id="u1", credits=2, last_reset_date=TODAY - timedelta(days=3))
    result = _eval(record, allowance=2)
    assert result.record.credits == 1


def test_null_reset_date_triggers_reset():
    record = EntitlementRecord(user_id="u1", credits=0, last_reset_date=None)
    result = _eval(record)
    assert result.decision.allowed
    assert result.record.last_reset_date == TODAY


def test_valid_unlimited_allows_without_consuming():
    record = EntitlementRecord(
        user_id="u1",
        credits=0,
        last_reset_date=TODAY,
        unlimited=True,
        subscription_plan=SubscriptionPlan.MONTHLY,
        valid_until=NOW + timedelta(days=10),
    )
    result = _eval(record)
    assert result.decision.allowed
    assert result.decision.unlimited
    assert result.decision.credits_remaining is None
    assert result.decision.subscription_plan == SubscriptionPlan.MONTHLY
    assert not result.changed
    assert result.record == record


def test_expired_unlimited_is_corrected_and_falls_through_to_credits():
    record = EntitlementRecord(
        user_id="u1",
        credits=0,
        last_reset_date=TODAY - timedelta(days=40),
        unlimited=True,
        subscription_plan=SubscriptionPlan.MONTHLY,
        valid_until=NOW - timedelta(seconds=1),
    )
    result = _eval(record)
    assert result.expired
    assert result.changed
    assert not result.decision.unlimited
    assert result.record.unlimited is False
    # Reset happened because last_reset_date was stale
    assert result.decision.allowed
    assert result.decision.credits_remaining == 1


def test_unlimited_without_expiry_is_stale():
    record = EntitlementRecord(user_id="u1", credits=0, last_reset_date=TODAY, unlimited=True, valid_until=None)
    result = _eval(record)
    assert result.expired
    assert not result.decision.allowed
    assert result.record.unlimited is False
    assert result.changed


def test_expiry_boundary_is_still_valid():
    record = EntitlementRecord(user_id="u1", unlimited=True, valid_until=NOW, last_reset_date=TODAY)
    result = _eval(record)
    assert result.decision.unlimited


def test_status_query_does_not_consume():
    record = EntitlementRecord(user_id="u1", credits=2, last_reset_date=TODAY)
    result = _eval(record, consume=False)
    assert result.decision.allowed
    assert result.decision.credits_remaining == 2
    assert not result.changed


def test_status_query_still_persists_reset():
    record = EntitlementRecord(user_id="u1", credits=0, last_reset_date=TODAY - timedelta(days=1))
    result = _eval(record, consume=False)
    assert result.changed
    assert result.record.credits == 2


def test_zero_allowance_denies_fresh_user():
    result = _eval(None, allowance=0)
    assert not result.decision.allowed
    assert result.created


@pytest.mark.parametrize("seed", range(5))
def test_credits_never_negative_and_one_reset_per_day(seed):
    rng = random.Random(seed)
    record = None
    day = TODAY
    resets_by_day = {}
    for _ in range(200):
        if rng.random() < 0.1:
            day = day + timedelta(days=rng.choice([1, 2]))
        now = datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc) + timedelta(hours=12)
        result = _eval(record, today=day, now=now, allowance=3, consume=rng.random() < 0.8)
        if result.reset:
            resets_by_day[day] = resets_by_day.get(day, 0) + 1
        record = result.record
        assert record.credits >= 0
    assert all(count == 1 for count in resets_by_day.values())


def test_keep_max():
    early = NOW
    late = NOW + timedelta(days=30)
    assert keep_max(None, early) == early
    assert keep_max(late, early) == late
    assert keep_max(early, late) == late


def test_next_reset_is_utc_midnight():
    assert next_reset_at(TODAY) == datetime(2025, 3, 11, tzinfo=timezone.utc)


def test_fresh_record_defaults():
    record = fresh_record("u1", TODAY, 3)
    assert record.credits == 3
    assert record.last_reset_date == TODAY
    assert record.unlimited is False
    assert record.subscription_plan == SubscriptionPlan.NONE
