"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Verifies webhook signatures before parsing and normalizes payloads into the
closed set of billing event variants.
"""
import json
from typing import Dict, Any, Optional
import stripe

from quizcast.core.config import settings
from quizcast.features.billing.provider import (
    BillingEvent,
    BillingEventKind,
    BillingProviderError,
    BillingWebhookError,
    CheckoutCompleted,
    IgnoredEvent,
    InvoicePaymentSucceeded,
    SubscriptionSnapshot,
    VerifiedEvent,
)


def _as_dict(obj: Any) -> Any:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


def _dig(data: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    current = _as_dict(data)
    for step in path:
        if current is None:
            return None
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = _as_dict(current[step])
        else:
            if not isinstance(current, dict):
                return None
            current = _as_dict(current.get(step))
    return current


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> VerifiedEvent:
        """Verify Stripe webhook signature, then parse the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload_text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
            stripe.WebhookSignature.verify_header(
                payload_text, sig_header, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            payload = json.loads(payload_text)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        if not isinstance(payload, dict):
            raise BillingWebhookError("Invalid payload: expected a JSON object")

        return VerifiedEvent(event=self.parse_event(payload), payload=payload)

    def parse_event(self, payload: Dict[str, Any]) -> BillingEvent:
        """Parse a Stripe event payload into a normalized billing event."""
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise BillingWebhookError("Invalid payload: missing event id or type")

        data = _dig(payload, "data", "object") or {}
        metadata = data.get("metadata") or {}

        if event_type == BillingEventKind.CHECKOUT_COMPLETED.value:
            return CheckoutCompleted(
                event_id=event_id,
                event_type=event_type,
                user_id=_first(metadata.get("uid"), metadata.get("user_id"), data.get("client_reference_id")),
                customer_email=_first(data.get("customer_email"), _dig(data, "customer_details", "email")),
                subscription_id=data.get("subscription"),
                plan=metadata.get("plan"),
            )

        if event_type == BillingEventKind.INVOICE_PAYMENT_SUCCEEDED.value:
            # Newer API versions move the subscription reference under parent/lines
            subscription_id = _first(
                data.get("subscription"),
                _dig(data, "parent", "subscription_details", "subscription"),
                _dig(data, "lines", "data", 0, "parent", "subscription_item_details", "subscription"),
                _dig(data, "lines", "data", 0, "subscription"),
            )
            return InvoicePaymentSucceeded(
                event_id=event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                customer_email=data.get("customer_email"),
            )

        return IgnoredEvent(event_id=event_id, event_type=event_type)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """Fetch a subscription with its items expanded."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, expand=["items.data"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")

        data = _as_dict(subscription)
        period_end = _first(
            data.get("current_period_end"),
            _dig(data, "items", "data", 0, "current_period_end"),
            data.get("billing_cycle_anchor"),
        )
        metadata = {str(k): str(v) for k, v in (data.get("metadata") or {}).items()}
        return SubscriptionSnapshot(
            subscription_id=subscription_id,
            metadata=metadata,
            period_end_unix=int(period_end) if period_end else None,
        )

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create Stripe checkout session; metadata is stamped on the subscription too."""
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": metadata or {},
            "subscription_data": {"metadata": metadata or {}},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(**params)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_email: str, return_url: str) -> Optional[str]:
        """Create Stripe billing portal session for the customer with this email."""
        try:
            customers = stripe.Customer.list(email=customer_email, limit=1)
            if not customers.data:
                return None
            session = stripe.billing_portal.Session.create(
                customer=customers.data[0].id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
