"""
Billing service orchestrator.

Keeps the entitlement record consistent with Stripe:
- Webhook processing (verify, dedupe by event id, dispatch by event kind)
- Checkout / invoice reconciliation into unlimited grants (keep-max expiry)
- Checkout and portal session creation

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizcast.core.config import settings
from quizcast.core.database import billing_events, get_db_session
from quizcast.core.logging import log_event, mask_email
from quizcast.core.errors import (
    BillingDisabledError,
    EventUnverifiedError,
    MissingIdentityError,
    MissingUserReferenceError,
    NotFoundError,
    ProviderUnavailableError,
    ReconciliationError,
    StoreUnavailableError,
    ValidationError,
)
from quizcast.features.billing.provider import (
    BillingEvent,
    BillingEventKind,
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    CheckoutCompleted,
    InvoicePaymentSucceeded,
)
from quizcast.features.billing.stripe_provider import StripeProvider
from quizcast.features.entitlements.policy import keep_max
from quizcast.features.entitlements.store import EntitlementStore, get_store
from quizcast.models.entitlement import EntitlementRecord, SubscriptionPlan

logger = logging.getLogger(__name__)


class Outcome:
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconciliationResult:
    event_id: str
    event_type: str
    kind: BillingEventKind
    outcome: str
    user_id: Optional[str] = None


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not enabled")
    return provider


# --- entitlement mutation -------------------------------------------------

def _apply_grant(
    store: EntitlementStore,
    user_id: str,
    period_end: datetime,
    plan: Optional[SubscriptionPlan],
    email: Optional[str],
) -> None:
    """Set unlimited with keep-max expiry. Safe to apply repeatedly and out of order."""

    def compute(current: Optional[EntitlementRecord]):
        fields: Dict[str, Any] = {
            "unlimited": True,
            "valid_until": keep_max(current.valid_until if current else None, period_end),
        }
        if plan is not None:
            fields["subscription_plan"] = plan
        elif current is None or current.subscription_plan == SubscriptionPlan.NONE:
            fields["subscription_plan"] = SubscriptionPlan.UNKNOWN
        if email:
            fields["email"] = email.strip()
        return fields, None

    store.read_modify_write(user_id, compute)


def _resolve_invoice_user(store: EntitlementStore, metadata_user_id: Optional[str], email: Optional[str]) -> str:
    """Subscription metadata first, then the unique record stamped with the customer email."""
    if metadata_user_id:
        return metadata_user_id
    if email:
        record = store.find_by_email(email)
        if record is not None:
            log_event(
                "info",
                "[billing] invoice user resolved by customer email",
                user_id=record.user_id,
                event_type="billing.identity",
                extra={"email": email},
                logger_name=__name__,
            )
            return record.user_id
    raise MissingIdentityError(
        "No user reference on the subscription and no user record matches the customer email",
        details={"email": mask_email(email)},
    )


# --- handlers ---------------------------------------------------------------

def _apply_checkout_completed(
    event: CheckoutCompleted,
    provider: BillingProvider,
    store: EntitlementStore,
    now: datetime,
) -> str:
    if not event.user_id:
        raise MissingUserReferenceError(
            "Checkout session carries no user reference",
            details={"event_id": event.event_id},
        )

    period_end = None
    if event.subscription_id:
        try:
            period_end = provider.retrieve_subscription(event.subscription_id).current_period_end
        except BillingProviderError as e:
            logger.warning(
                "[billing] subscription lookup failed at checkout, using grant ttl",
                extra={"user_id": event.user_id, "event_type": event.event_type, "error_message": str(e)},
            )
    if period_end is None:
        period_end = now + timedelta(hours=settings.CHECKOUT_GRANT_TTL_HOURS)

    plan = SubscriptionPlan.from_metadata(event.plan) if event.plan else None
    _apply_grant(store, event.user_id, period_end, plan, event.customer_email)
    return event.user_id


def _apply_invoice_paid(
    event: InvoicePaymentSucceeded,
    provider: BillingProvider,
    store: EntitlementStore,
    now: datetime,
) -> str:
    if not event.subscription_id:
        raise ReconciliationError(
            "Invoice does not reference a subscription",
            code="missing_subscription",
            details={"event_id": event.event_id},
        )

    try:
        subscription = provider.retrieve_subscription(event.subscription_id)
    except BillingProviderError as e:
        raise ProviderUnavailableError(str(e), details={"subscription_id": event.subscription_id}) from e

    period_end = subscription.current_period_end
    if period_end is None:
        raise ReconciliationError(
            "Subscription has no current period end",
            code="missing_period_end",
            details={"subscription_id": event.subscription_id},
        )

    user_id = _resolve_invoice_user(store, subscription.user_id, event.customer_email)
    plan = SubscriptionPlan.from_metadata(subscription.plan)
    _apply_grant(store, user_id, period_end, plan, event.customer_email)
    return user_id


Handler = Callable[[Any, BillingProvider, EntitlementStore, datetime], Optional[str]]

EVENT_HANDLERS: Dict[BillingEventKind, Handler] = {
    BillingEventKind.CHECKOUT_COMPLETED: _apply_checkout_completed,
    BillingEventKind.INVOICE_PAYMENT_SUCCEEDED: _apply_invoice_paid,
}


# --- event bookkeeping ------------------------------------------------------

def _claim_event(event: BillingEvent, payload_hash: str, payload: Dict[str, Any]) -> bool:
    """
    Record the event row.

    Returns:
        False if the event was already processed (duplicate), True if it must be applied
    """
    payload_json = json.dumps(payload, sort_keys=True)
    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed).where(
                    billing_events.c.stripe_event_id == event.event_id
                )
            ).fetchone()

            if existing:
                if existing.processed:
                    return False
                # Earlier attempt failed; reprocess
                session.execute(
                    update(billing_events)
                    .where(billing_events.c.stripe_event_id == event.event_id)
                    .values(payload_hash=payload_hash, payload_json=payload_json, error=None)
                )
                return True

            session.execute(
                insert(billing_events).values(
                    stripe_event_id=event.event_id,
                    event_type=event.event_type,
                    payload_hash=payload_hash,
                    payload_json=payload_json,
                    processed=False,
                )
            )
    except IntegrityError:
        # Another delivery of the same event claimed it first
        return False
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Billing event store failed: {e.__class__.__name__}") from e
    return True


def _finish_event(event_id: str, *, user_id: Optional[str] = None, error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"user_id": user_id}
    if error is None:
        values.update(processed=True, processed_at=datetime.now(timezone.utc), error=None)
    else:
        values["error"] = error[:2000]
    try:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .values(**values)
            )
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"Billing event store failed: {e.__class__.__name__}") from e


def reconcile_event(
    event: BillingEvent,
    provider: BillingProvider,
    *,
    now: Optional[datetime] = None,
    store: Optional[EntitlementStore] = None,
) -> ReconciliationResult:
    """
    Apply one already-claimed event and record the outcome on its row.

    Failures are stored on the event row for manual follow-up, then re-raised.
    """
    resolved_now = now or datetime.now(timezone.utc)
    target = store or get_store()
    handler = EVENT_HANDLERS.get(event.kind)

    if handler is None:
        _finish_event(event.event_id)
        logger.info(
            "[billing] event ignored",
            extra={"event_type": event.event_type, "outcome": Outcome.IGNORED},
        )
        return ReconciliationResult(event.event_id, event.event_type, event.kind, Outcome.IGNORED)

    try:
        user_id = handler(event, provider, target, resolved_now)
    except Exception as e:
        error_code = getattr(e, "code", e.__class__.__name__)
        _finish_event(event.event_id, error=f"{error_code}: {e}")
        log_event(
            "error",
            "[billing] reconciliation failed, event kept for replay",
            event_type=event.event_type,
            error_code=error_code,
            extra={"event_id": event.event_id, "outcome": "failed", "error_message": str(e)},
            logger_name=__name__,
        )
        raise

    _finish_event(event.event_id, user_id=user_id)
    logger.info(
        "[billing] event applied",
        extra={"user_id": user_id, "event_type": event.event_type, "outcome": Outcome.APPLIED},
    )
    return ReconciliationResult(event.event_id, event.event_type, event.kind, Outcome.APPLIED, user_id)


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    now: Optional[datetime] = None,
    store: Optional[EntitlementStore] = None,
) -> ReconciliationResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature (nothing is recorded for unverified events)
    2. Check idempotency (skip if already processed)
    3. Dispatch by event kind
    4. Mark as processed, or store the error and re-raise

    Raises:
        BillingDisabledError: If Stripe is not configured
        EventUnverifiedError: If signature invalid or payload malformed
        ReconciliationError: If the event cannot be applied (including identity errors)
        ProviderUnavailableError: If Stripe could not be reached
        StoreUnavailableError: If the store fails
    """
    provider = require_provider()

    try:
        verified = provider.handle_webhook(headers, body)
    except BillingWebhookError as e:
        logger.warning("[billing] webhook rejected", extra={"error_code": EventUnverifiedError.code})
        raise EventUnverifiedError(str(e)) from e

    event = verified.event
    payload_hash = hashlib.sha256(body).hexdigest()

    if not _claim_event(event, payload_hash, verified.payload):
        logger.info(
            "[billing] duplicate event skipped",
            extra={"event_type": event.event_type, "outcome": Outcome.DUPLICATE},
        )
        return ReconciliationResult(event.event_id, event.event_type, event.kind, Outcome.DUPLICATE)

    return reconcile_event(event, provider, now=now, store=store)


# --- checkout / portal ------------------------------------------------------

def get_stripe_price_for_plan(plan: str) -> Optional[str]:
    """Map plan name to Stripe price ID."""
    price_map = {
        SubscriptionPlan.MONTHLY.value: settings.STRIPE_MONTHLY_PRICE_ID,
        SubscriptionPlan.YEARLY.value: settings.STRIPE_YEARLY_PRICE_ID,
    }
    return price_map.get(plan)


def start_checkout(user_id: str, plan: str, email: Optional[str], base_url: Optional[str] = None) -> str:
    """
    Start checkout session for a subscription.

    The user id and plan ride along as session and subscription metadata, which is
    how later checkout and invoice events find their way back to the user.

    Raises:
        ValidationError: If plan is unknown or has no configured price
        BillingDisabledError: If Stripe is not configured
        ProviderUnavailableError: If checkout creation fails
    """
    provider = require_provider()
    price_id = get_stripe_price_for_plan(plan)
    if not price_id:
        raise ValidationError("Invalid plan", details={"plan": plan})

    root = (base_url or settings.APP_BASE_URL).rstrip("/")
    metadata = {"uid": user_id, "plan": plan}
    try:
        return provider.create_checkout_session(
            price_id=price_id,
            success_url=f"{root}/",
            cancel_url=f"{root}/",
            customer_email=email,
            metadata=metadata,
        )
    except BillingProviderError as e:
        raise ProviderUnavailableError(str(e)) from e


def start_portal(email: Optional[str], return_url: Optional[str] = None) -> str:
    """
    Start billing portal session for customer self-service.

    Raises:
        ValidationError: If the caller has no email to look the customer up by
        NotFoundError: If no Stripe customer has that email
        ProviderUnavailableError: If portal creation fails
    """
    if not email:
        raise ValidationError("An email address is required to open the billing portal")

    provider = require_provider()
    try:
        url = provider.create_portal_session(
            customer_email=email,
            return_url=return_url or settings.APP_BASE_URL,
        )
    except BillingProviderError as e:
        raise ProviderUnavailableError(str(e)) from e
    if not url:
        raise NotFoundError("No billing customer found", code="customer_not_found")
    return url
