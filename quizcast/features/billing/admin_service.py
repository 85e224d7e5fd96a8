"""
Admin billing operations service.

Handles:
- Manual unlimited grant / revoke (replaces the old self-service upgrade path)
- Failed webhook event listing and replay
- Audit logging
"""
import json
import logging
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError

from quizcast.core.database import billing_admin_audit, billing_events, get_db_session
from quizcast.core.errors import NotFoundError, StoreUnavailableError, ValidationError
from quizcast.features.billing.service import (
    Outcome,
    require_provider,
    reconcile_event,
)
from quizcast.features.entitlements import service as entitlement_service
from quizcast.models.entitlement import EntitlementRecord

logger = logging.getLogger(__name__)

MAX_EVENT_LIMIT = 500


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action in the audit log.

    Args:
        actor: Admin identifier (e.g., "admin_key" or a user id)
        action: Action name (e.g., "replay_webhook", "grant_unlimited")
        target_user_id: User affected by action (optional)
        target_resource: Resource affected (stripe_event_id, etc.)
        payload: Additional context as dict (will be JSON-serialized)
    """
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_admin_audit).values(
                    actor=actor,
                    action=action,
                    target_user_id=target_user_id,
                    target_resource=target_resource,
                    payload_json=json.dumps(payload, default=str) if payload else None,
                )
            )
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Audit log write failed: {e.__class__.__name__}") from e


def admin_grant(user_id: str, plan: str, actor: str) -> EntitlementRecord:
    record = entitlement_service.grant_unlimited(user_id, plan, actor=actor)
    record_admin_audit(
        actor=actor,
        action="grant_unlimited",
        target_user_id=user_id,
        payload={"plan": plan, "valid_until": record.valid_until.isoformat() if record.valid_until else None},
    )
    return record


def admin_revoke(user_id: str, actor: str) -> EntitlementRecord:
    record = entitlement_service.revoke_unlimited(user_id, actor=actor)
    if record is None:
        raise NotFoundError(f"No entitlement record for user: {user_id}", code="entitlement_not_found")
    record_admin_audit(actor=actor, action="revoke_unlimited", target_user_id=user_id)
    return record


def list_failed_events(limit: int = 50) -> list[dict]:
    """
    Events that were received but never processed successfully, newest first.

    Args:
        limit: Max results (capped at 500)
    """
    if limit < 1:
        raise ValidationError("limit must be positive", details={"limit": limit})
    limit = min(limit, MAX_EVENT_LIMIT)

    try:
        with get_db_session() as session:
            events = session.execute(
                select(billing_events)
                .where(billing_events.c.processed == False)  # noqa: E712
                .order_by(billing_events.c.received_at.desc(), billing_events.c.id.desc())
                .limit(limit)
            ).fetchall()
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Billing event store failed: {e.__class__.__name__}") from e

    return [
        {
            "stripe_event_id": e.stripe_event_id,
            "event_type": e.event_type,
            "received_at": e.received_at.isoformat() if e.received_at else None,
            "user_id": e.user_id,
            "error": e.error,
        }
        for e in events
    ]


def replay_event(stripe_event_id: str, actor: str = "admin_key") -> dict:
    """
    Re-dispatch a stored, previously verified event.

    Processed events are not applied again.

    Raises:
        NotFoundError: If event not found or has no stored payload
        BillingDisabledError: If Stripe is not configured
        ReconciliationError / ProviderUnavailableError: If the replay fails again
    """
    provider = require_provider()

    try:
        with get_db_session() as session:
            row = session.execute(
                select(billing_events).where(billing_events.c.stripe_event_id == stripe_event_id)
            ).fetchone()
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Billing event store failed: {e.__class__.__name__}") from e

    if not row:
        raise NotFoundError(f"Event not found: {stripe_event_id}", code="event_not_found")

    if row.processed:
        return {
            "status": Outcome.DUPLICATE,
            "event_id": stripe_event_id,
            "processed_at": row.processed_at.isoformat() if row.processed_at else None,
        }

    if not row.payload_json:
        raise NotFoundError(f"No stored payload for event: {stripe_event_id}", code="event_payload_missing")

    record_admin_audit(
        actor=actor,
        action="replay_webhook",
        target_resource=stripe_event_id,
        payload={"previous_error": row.error},
    )

    event = provider.parse_event(json.loads(row.payload_json))
    result = reconcile_event(event, provider)
    logger.info(
        "[billing] event replayed",
        extra={"event_type": result.event_type, "user_id": result.user_id, "outcome": result.outcome},
    )
    return {
        "status": result.outcome,
        "event_id": stripe_event_id,
        "user_id": result.user_id,
    }
