"""
Admin-only billing and entitlement operations router.
Requires an admin bearer token or X-Admin-Key for all endpoints.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from quizcast.core.admin_auth import AdminActor, require_admin
from quizcast.features.billing import admin_service
from quizcast.models.entitlement import EntitlementRecord

logger = logging.getLogger("quizcast.admin_billing")

router = APIRouter(prefix="/admin", tags=["admin-billing"])


class GrantRequest(BaseModel):
    plan: str = Field(..., description="monthly or yearly")


class EntitlementResponse(BaseModel):
    user_id: str
    credits: int
    last_reset_date: Optional[str]
    unlimited: bool
    subscription: str
    valid_until: Optional[str]


class FailedEvent(BaseModel):
    stripe_event_id: str
    event_type: str
    received_at: Optional[datetime]
    user_id: Optional[str]
    error: Optional[str]


class FailedEventListResponse(BaseModel):
    total: int
    events: List[FailedEvent]


class ReplayResponse(BaseModel):
    status: str
    event_id: str
    user_id: Optional[str] = None
    processed_at: Optional[str] = None


def _entitlement_response(record: EntitlementRecord) -> EntitlementResponse:
    return EntitlementResponse(**record.to_public_dict())


@router.post("/entitlements/{user_id}/grant", response_model=EntitlementResponse)
def grant_entitlement(user_id: str, body: GrantRequest, actor: AdminActor = Depends(require_admin)):
    logger.info("[admin_billing] grant", extra={"user_id": user_id, "actor": actor.actor_id})
    return _entitlement_response(admin_service.admin_grant(user_id, body.plan, actor=actor.actor_id))


@router.post("/entitlements/{user_id}/revoke", response_model=EntitlementResponse)
def revoke_entitlement(user_id: str, actor: AdminActor = Depends(require_admin)):
    logger.info("[admin_billing] revoke", extra={"user_id": user_id, "actor": actor.actor_id})
    return _entitlement_response(admin_service.admin_revoke(user_id, actor=actor.actor_id))


@router.get("/billing/events/failed", response_model=FailedEventListResponse)
def list_failed_events(
    limit: int = Query(50, ge=1, le=admin_service.MAX_EVENT_LIMIT),
    actor: AdminActor = Depends(require_admin),
):
    events = admin_service.list_failed_events(limit=limit)
    return FailedEventListResponse(total=len(events), events=events)


@router.post("/billing/events/{event_id}/replay", response_model=ReplayResponse)
def replay_event(event_id: str, actor: AdminActor = Depends(require_admin)):
    return admin_service.replay_event(event_id, actor=actor.actor_id)
