"""
Billing provider protocol and normalized billing events.

Defines the interface for billing providers (Stripe, etc.) and the closed set of
event kinds the reconciliation engine understands. Provider payloads are parsed
into one of the event variants below; everything else becomes IgnoredEvent.
"""
from typing import Protocol, Dict, Any, Optional, Union, ClassVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class BillingEventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CheckoutCompleted:
    """Checkout session finished; carries a direct user reference when we created it."""
    kind: ClassVar[BillingEventKind] = BillingEventKind.CHECKOUT_COMPLETED
    event_id: str
    event_type: str
    user_id: Optional[str]
    customer_email: Optional[str]
    subscription_id: Optional[str]
    plan: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    """Invoice paid; the user is resolved through the referenced subscription."""
    kind: ClassVar[BillingEventKind] = BillingEventKind.INVOICE_PAYMENT_SUCCEEDED
    event_id: str
    event_type: str
    subscription_id: Optional[str]
    customer_email: Optional[str]


@dataclass(frozen=True)
class IgnoredEvent:
    kind: ClassVar[BillingEventKind] = BillingEventKind.IGNORED
    event_id: str
    event_type: str


BillingEvent = Union[CheckoutCompleted, InvoicePaymentSucceeded, IgnoredEvent]


@dataclass(frozen=True)
class VerifiedEvent:
    """A signature-checked event plus the raw payload it was parsed from."""
    event: BillingEvent
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The parts of a provider subscription reconciliation needs."""
    subscription_id: str
    metadata: Dict[str, str]
    period_end_unix: Optional[int]

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("uid") or self.metadata.get("user_id") or None

    @property
    def plan(self) -> Optional[str]:
        return self.metadata.get("plan") or None

    @property
    def current_period_end(self) -> Optional[datetime]:
        # Provider timestamps are whole seconds since the epoch
        if self.period_end_unix is None:
            return None
        return datetime.fromtimestamp(int(self.period_end_unix), tz=timezone.utc)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification and parsing
    - Subscription lookup
    - Checkout and portal session creation
    """

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> VerifiedEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or payload malformed
        """
        ...

    def parse_event(self, payload: Dict[str, Any]) -> BillingEvent:
        """Parse an already-verified payload (used for replays)."""
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Fetch a subscription with its metadata and current period end.

        Raises:
            BillingProviderError: If the provider call fails
        """
        ...

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Create a subscription checkout session and return its URL."""
        ...

    def create_portal_session(self, customer_email: str, return_url: str) -> Optional[str]:
        """Create a billing portal session; None if no customer has that email."""
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook verification/parsing errors."""
    pass
