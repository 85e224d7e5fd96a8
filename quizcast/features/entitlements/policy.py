"""
quizcast/features/entitlements/policy.py

Pure entitlement decision rules.

No I/O: given the stored record (or None), the current UTC date/time and the daily
allowance, compute the decision and the record that should be persisted next.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional

from quizcast.models.entitlement import EntitlementRecord, SubscriptionPlan


class DenialReason(str, Enum):
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    unlimited: bool
    credits_remaining: Optional[int]  # None while unlimited
    reason: Optional[DenialReason] = None
    subscription_plan: SubscriptionPlan = SubscriptionPlan.NONE
    valid_until: Optional[datetime] = None
    resets_on: Optional[date] = None


@dataclass(frozen=True)
class Evaluation:
    decision: Decision
    record: EntitlementRecord
    changed: bool
    created: bool = False
    expired: bool = False
    reset: bool = False


def next_reset_at(today: date) -> datetime:
    """UTC midnight that starts the next credit day."""
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)


def fresh_record(user_id: str, today: date, allowance: int) -> EntitlementRecord:
    return EntitlementRecord(user_id=user_id, credits=allowance, last_reset_date=today)


def evaluate_record(
    record: Optional[EntitlementRecord],
    *,
    user_id: str,
    today: date,
    now: datetime,
    allowance: int,
    consume: bool = True,
) -> Evaluation:
    """
    Decide whether a metered action may proceed.

    Args:
        record: Current stored record, or None if the user has none yet
        user_id: Owner of the record
        today: Current UTC calendar date
        now: Current UTC time (for subscription expiry)
        allowance: Daily free credits
        consume: Deduct a credit when allowed in credit mode (False for status queries)

    Returns:
        Evaluation with the decision and the next record state; ``changed`` tells the
        caller whether the record must be persisted.
    """
    created = record is None
    current = fresh_record(user_id, today, allowance) if record is None else record
    changed = created
    expired = False
    reset = False

    if current.unlimited:
        if not current.is_stale(now):
            decision = Decision(
                allowed=True,
                unlimited=True,
                credits_remaining=None,
                subscription_plan=current.subscription_plan,
                valid_until=current.valid_until,
            )
            return Evaluation(decision=decision, record=current, changed=False)
        current = current.model_copy(update={"unlimited": False})
        changed = True
        expired = True

    if current.last_reset_date != today:
        current = current.model_copy(update={"credits": allowance, "last_reset_date": today})
        changed = True
        reset = True

    if current.credits <= 0:
        decision = Decision(
            allowed=False,
            unlimited=False,
            credits_remaining=0,
            reason=DenialReason.EXHAUSTED,
            subscription_plan=current.subscription_plan,
            valid_until=current.valid_until,
            resets_on=today + timedelta(days=1),
        )
        return Evaluation(
            decision=decision,
            record=current,
            changed=changed,
            created=created,
            expired=expired,
            reset=reset,
        )

    if consume:
        current = current.model_copy(update={"credits": current.credits - 1})
        changed = True

    decision = Decision(
        allowed=True,
        unlimited=False,
        credits_remaining=current.credits,
        subscription_plan=current.subscription_plan,
        valid_until=current.valid_until,
    )
    return Evaluation(
        decision=decision,
        record=current,
        changed=changed,
        created=created,
        expired=expired,
        reset=reset,
    )


def keep_max(existing: Optional[datetime], candidate: datetime) -> datetime:
    """Later expiry wins regardless of the order events are applied in."""
    if existing is None:
        return candidate
    return max(existing, candidate)
