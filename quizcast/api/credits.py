"""
Credits API.

- GET /credits: current entitlement for the caller (never consumes a credit)
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from quizcast.core.auth import get_current_user
from quizcast.core.identity import IdentityClaims
from quizcast.features.entitlements import service as entitlement_service

router = APIRouter(tags=["credits"])


class CreditsResponse(BaseModel):
    credits: Optional[int]  # null while unlimited
    unlimited: bool
    subscription: str
    valid_until: Optional[datetime] = None


@router.get("/credits", response_model=CreditsResponse)
def get_credits(identity: IdentityClaims = Depends(get_current_user)):
    decision = entitlement_service.query_status(identity.user_id)
    return CreditsResponse(
        credits=decision.credits_remaining,
        unlimited=decision.unlimited,
        subscription=decision.subscription_plan.value,
        valid_until=decision.valid_until,
    )
