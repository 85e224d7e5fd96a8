"""
Billing API routes.

- POST /create-checkout-session: Create checkout session
- POST /create-portal-session: Create portal session
- POST /webhook: Handle Stripe webhooks
"""
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from quizcast.core.auth import get_current_user
from quizcast.core.identity import IdentityClaims
from quizcast.features.billing.service import (
    process_webhook_event,
    start_checkout,
    start_portal,
)

router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    plan: Literal["monthly", "yearly"]


class SessionResponse(BaseModel):
    url: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str
    user_id: Optional[str] = None


def _origin(request: Request) -> Optional[str]:
    return request.headers.get("origin")


@router.post("/create-checkout-session", response_model=SessionResponse)
def create_checkout(body: CheckoutRequest, request: Request, identity: IdentityClaims = Depends(get_current_user)):
    """
    Create Stripe checkout session for the caller.

    Errors:
        400: Invalid plan or no price configured
        503: Billing disabled
        502: Stripe API error
    """
    url = start_checkout(
        user_id=identity.user_id,
        plan=body.plan,
        email=identity.email,
        base_url=_origin(request),
    )
    return {"url": url}


@router.post("/create-portal-session", response_model=SessionResponse)
def create_portal(request: Request, identity: IdentityClaims = Depends(get_current_user)):
    """
    Create Stripe billing portal session.

    Errors:
        404: No Stripe customer with the caller's email
        503: Billing disabled
        502: Stripe API error
    """
    return {"url": start_portal(email=identity.email, return_url=_origin(request))}


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    The raw body is required for signature verification. Event deduplication
    uses the Stripe event id (stored in the billing_events table).

    Errors:
        400: Invalid signature or payload, or missing user reference
        422: Event could not be reconciled (stored for replay)
        503: Billing disabled or store unavailable
    """
    body = await request.body()
    headers = dict(request.headers)

    result = await run_in_threadpool(process_webhook_event, headers, body)
    return WebhookResponse(
        received=True,
        event_id=result.event_id,
        outcome=result.outcome,
        user_id=result.user_id,
    )
