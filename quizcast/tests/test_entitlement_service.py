"""
Entitlement service: evaluate / query_status / require_entitlement / admin grant paths
against the real store.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from quizcast.core.errors import QuotaExhaustedError, StoreUnavailableError, ValidationError
from quizcast.features.entitlements import service
from quizcast.features.entitlements.policy import DenialReason
from quizcast.features.entitlements.store import EntitlementStore
from quizcast.models.entitlement import SubscriptionPlan

TODAY = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return EntitlementStore()


def test_fresh_user_two_allows_then_deny(store):
    first = service.evaluate("alice", today=TODAY, now=NOW, store=store)
    second = service.evaluate("alice", today=TODAY, now=NOW, store=store)
    third = service.evaluate("alice", today=TODAY, now=NOW, store=store)

    assert (first.allowed, first.credits_remaining) == (True, 1)
    assert (second.allowed, second.credits_remaining) == (True, 0)
    assert third.allowed is False
    assert third.reason == DenialReason.EXHAUSTED
    assert store.get("alice").credits == 0


def test_allowance_is_configurable(store, default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "DAILY_FREE_CREDITS", 3)
    decision = service.evaluate("alice", today=TODAY, now=NOW, store=store)
    assert decision.credits_remaining == 2


def test_next_day_resets(store):
    service.evaluate("alice", today=TODAY, now=NOW, store=store)
    service.evaluate("alice", today=TODAY, now=NOW, store=store)

    tomorrow = TODAY + timedelta(days=1)
    decision = service.evaluate("alice", today=tomorrow, now=NOW + timedelta(days=1), store=store)
    assert decision.allowed
    assert decision.credits_remaining == 1
    assert store.get("alice").last_reset_date == tomorrow


def test_query_status_creates_record_without_consuming(store):
    decision = service.query_status("bob", today=TODAY, now=NOW, store=store)
    assert decision.allowed
    assert decision.credits_remaining == 2
    assert store.get("bob").credits == 2

    service.query_status("bob", today=TODAY, now=NOW, store=store)
    assert store.get("bob").credits == 2


def test_stale_unlimited_is_corrected_on_read(store):
    store.set(
        "carol",
        {
            "unlimited": True,
            "subscription_plan": SubscriptionPlan.MONTHLY,
            "valid_until": NOW - timedelta(days=1),
            "credits": 0,
            "last_reset_date": TODAY,
        },
    )
    decision = service.evaluate("carol", today=TODAY, now=NOW, store=store)
    assert decision.unlimited is False
    assert decision.allowed is False
    assert store.get("carol").unlimited is False


def test_valid_unlimited_never_touches_credits(store):
    store.set(
        "dave",
        {"unlimited": True, "valid_until": NOW + timedelta(days=5), "credits": 0, "last_reset_date": TODAY},
    )
    for _ in range(5):
        decision = service.evaluate("dave", today=TODAY, now=NOW, store=store)
        assert decision.allowed and decision.unlimited
        assert decision.credits_remaining is None
    record = store.get("dave")
    assert record.credits == 0
    assert record.version == 1


def test_require_entitlement_raises_with_reset_hint(store):
    service.require_entitlement("erin", today=TODAY, now=NOW, store=store)
    service.require_entitlement("erin", today=TODAY, now=NOW, store=store)

    with pytest.raises(QuotaExhaustedError) as exc_info:
        service.require_entitlement("erin", today=TODAY, now=NOW, store=store)
    err = exc_info.value
    assert err.status_code == 402
    assert err.details["resets_on"] == "2025-03-11"
    assert err.headers()["Retry-After"] == str(6 * 3600)


def test_interleaved_evaluations_cannot_double_spend(default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "DAILY_FREE_CREDITS", 1)

    class InterleavingStore(EntitlementStore):
        """Runs a competing evaluation right after the first snapshot is read."""

        def __init__(self, interleave):
            super().__init__(max_retries=5)
            self._interleave = interleave

        def get(self, user_id):
            record = super().get(user_id)
            if self._interleave is not None:
                action, self._interleave = self._interleave, None
                action()
            return record

    competing = []
    racing_store = InterleavingStore(
        lambda: competing.append(service.evaluate("frank", today=TODAY, now=NOW, store=EntitlementStore()))
    )
    decision = service.evaluate("frank", today=TODAY, now=NOW, store=racing_store)

    outcomes = sorted([decision.allowed, competing[0].allowed])
    assert outcomes == [False, True]
    assert EntitlementStore().get("frank").credits == 0


def test_store_failure_fails_closed(store, monkeypatch):
    def unavailable(user_id):
        raise StoreUnavailableError("timeout")

    monkeypatch.setattr(store, "get", unavailable)
    with pytest.raises(StoreUnavailableError):
        service.evaluate("gina", today=TODAY, now=NOW, store=store)


def test_grant_unlimited_monthly_and_keep_max(store):
    record = service.grant_unlimited("hank", "monthly", now=NOW, store=store)
    assert record.unlimited is True
    assert record.subscription_plan == SubscriptionPlan.MONTHLY
    assert record.valid_until == datetime(2025, 4, 10, 18, 0, tzinfo=timezone.utc)

    yearly = service.grant_unlimited("hank", "yearly", now=NOW, store=store)
    assert yearly.valid_until == datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)

    # An earlier grant never shortens access
    again = service.grant_unlimited("hank", "monthly", now=NOW, store=store)
    assert again.valid_until == datetime(2026, 3, 10, 18, 0, tzinfo=timezone.utc)


def test_grant_rejects_unknown_plan(store):
    with pytest.raises(ValidationError):
        service.grant_unlimited("ivy", "lifetime", now=NOW, store=store)
    assert store.get("ivy") is None


def test_revoke_returns_user_to_credits(store):
    service.grant_unlimited("jack", "monthly", now=NOW, store=store)
    record = service.revoke_unlimited("jack", store=store)
    assert record.unlimited is False
    assert record.subscription_plan == SubscriptionPlan.NONE

    decision = service.evaluate("jack", today=TODAY, now=NOW, store=store)
    assert decision.unlimited is False
    assert decision.credits_remaining == 1


def test_revoke_missing_user_is_noop(store):
    assert service.revoke_unlimited("nobody", store=store) is None
