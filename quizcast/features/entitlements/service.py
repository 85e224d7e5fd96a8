"""
quizcast/features/entitlements/service.py

Entitlement evaluation service.

Handles:
- evaluate: allow/deny a metered action, consuming a daily credit
- query_status: same rules without consuming a credit
- grant_unlimited / revoke_unlimited: administrative subscription path
- Lazy expiry of stale unlimited grants (no background sweep)

Every write goes through EntitlementStore.read_modify_write so two concurrent
evaluations for the same user can never both spend the same credit.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple

from dateutil.relativedelta import relativedelta

from quizcast.core.config import settings
from quizcast.core.errors import QuotaExhaustedError, ValidationError
from quizcast.features.entitlements.policy import (
    Decision,
    Evaluation,
    evaluate_record,
    keep_max,
    next_reset_at,
)
from quizcast.features.entitlements.store import EntitlementStore, get_store, record_fields
from quizcast.models.entitlement import EntitlementRecord, SubscriptionPlan

logger = logging.getLogger(__name__)

PLAN_DURATIONS = {
    SubscriptionPlan.MONTHLY: relativedelta(months=1),
    SubscriptionPlan.YEARLY: relativedelta(years=1),
}


def _normalize_now(now: Optional[Any]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _resolve_clock(today: Optional[date], now: Optional[datetime]) -> Tuple[date, datetime]:
    normalized_now = _normalize_now(now)
    return (today or normalized_now.date()), normalized_now


def _run(
    user_id: str,
    *,
    consume: bool,
    today: Optional[date],
    now: Optional[datetime],
    store: Optional[EntitlementStore],
) -> Decision:
    resolved_today, resolved_now = _resolve_clock(today, now)
    allowance = settings.DAILY_FREE_CREDITS
    target = store or get_store()

    def compute(current: Optional[EntitlementRecord]):
        evaluation = evaluate_record(
            current,
            user_id=user_id,
            today=resolved_today,
            now=resolved_now,
            allowance=allowance,
            consume=consume,
        )
        fields = record_fields(evaluation.record) if evaluation.changed else None
        return fields, evaluation

    evaluation: Evaluation = target.read_modify_write(user_id, compute)

    if evaluation.expired:
        logger.info(
            "[entitlements] subscription expired, unlimited revoked",
            extra={"user_id": user_id, "event_type": "entitlement.expired"},
        )
    decision = evaluation.decision
    logger.info(
        "[entitlements] %s",
        "allow" if decision.allowed else "deny",
        extra={
            "user_id": user_id,
            "event_type": "entitlement.evaluate" if consume else "entitlement.status",
            "outcome": decision.reason.value if decision.reason else ("unlimited" if decision.unlimited else "credit"),
            "credits_remaining": decision.credits_remaining,
        },
    )
    return decision


def evaluate(
    user_id: str,
    *,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    store: Optional[EntitlementStore] = None,
) -> Decision:
    """
    Decide whether ``user_id`` may perform one metered action now.

    A credit is consumed only when the decision is allow in credit mode. Denials are
    returned, not raised; use require_entitlement for the raising variant.

    Raises:
        StoreUnavailableError: If the store cannot be read or written (fail closed)
    """
    return _run(user_id, consume=True, today=today, now=now, store=store)


def query_status(
    user_id: str,
    *,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    store: Optional[EntitlementStore] = None,
) -> Decision:
    """Current entitlement without consuming a credit (still applies lazy expiry and daily reset)."""
    return _run(user_id, consume=False, today=today, now=now, store=store)


def require_entitlement(
    user_id: str,
    *,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    store: Optional[EntitlementStore] = None,
) -> Decision:
    """evaluate() that raises QuotaExhaustedError on deny."""
    decision = evaluate(user_id, today=today, now=now, store=store)
    if decision.allowed:
        return decision

    resolved_today, resolved_now = _resolve_clock(today, now)
    reset_at = next_reset_at(resolved_today)
    raise QuotaExhaustedError(
        f"You have used all {settings.DAILY_FREE_CREDITS} free uploads for today. Please upgrade to continue.",
        resets_on=decision.resets_on.isoformat() if decision.resets_on else None,
        retry_after_seconds=max(0, int((reset_at - resolved_now).total_seconds())),
    )


def grant_unlimited(
    user_id: str,
    plan: str,
    *,
    now: Optional[datetime] = None,
    actor: Optional[str] = None,
    store: Optional[EntitlementStore] = None,
) -> EntitlementRecord:
    """
    Grant unlimited access for one plan period starting now.

    Args:
        user_id: User to upgrade
        plan: "monthly" or "yearly"
        now: Grant start (defaults to current UTC time)

    Returns:
        The stored record after the grant

    Raises:
        ValidationError: If plan is not monthly or yearly
        StoreUnavailableError: If the store fails
    """
    try:
        resolved_plan = SubscriptionPlan(plan)
    except ValueError:
        resolved_plan = None
    if resolved_plan not in PLAN_DURATIONS:
        raise ValidationError("Invalid or missing subscription plan", details={"plan": plan})

    resolved_now = _normalize_now(now)
    valid_until = resolved_now + PLAN_DURATIONS[resolved_plan]
    target = store or get_store()

    def compute(current: Optional[EntitlementRecord]):
        existing = current.valid_until if current is not None else None
        fields: Dict[str, Any] = {
            "unlimited": True,
            "subscription_plan": resolved_plan,
            "valid_until": keep_max(existing, valid_until),
        }
        return fields, None

    target.read_modify_write(user_id, compute)
    logger.info(
        "[entitlements] unlimited granted",
        extra={"user_id": user_id, "event_type": "entitlement.grant", "plan": resolved_plan.value, "actor": actor},
    )
    return target.get(user_id)


def revoke_unlimited(
    user_id: str,
    *,
    actor: Optional[str] = None,
    store: Optional[EntitlementStore] = None,
) -> Optional[EntitlementRecord]:
    """Return the user to daily-credit mode. Returns None if the user has no record."""
    target = store or get_store()

    def compute(current: Optional[EntitlementRecord]):
        if current is None:
            return None, None
        return {"unlimited": False, "subscription_plan": SubscriptionPlan.NONE}, None

    target.read_modify_write(user_id, compute)
    logger.info(
        "[entitlements] unlimited revoked",
        extra={"user_id": user_id, "event_type": "entitlement.revoke", "actor": actor},
    )
    return target.get(user_id)
