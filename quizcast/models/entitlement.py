"""
quizcast/models/entitlement.py

Entitlement record: one per user, the single source of truth for credits and
subscription-backed unlimited access.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionPlan(str, Enum):
    NONE = "none"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    UNKNOWN = "unknown"

    @classmethod
    def from_metadata(cls, value: Optional[str]) -> "SubscriptionPlan":
        """Map a provider metadata value to a plan; anything unrecognised is UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        try:
            plan = cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN
        return cls.UNKNOWN if plan is cls.NONE else plan


class EntitlementRecord(BaseModel):
    """
    Snapshot of a user's entitlement row.

    - credits: remaining free actions for last_reset_date (never negative)
    - last_reset_date: UTC date the credits belong to; None means never reset
    - unlimited / valid_until: subscription-backed bypass and its expiry
    - version: compare-and-swap counter, bumped on every write
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    credits: int = Field(default=0, ge=0)
    last_reset_date: Optional[date] = None
    unlimited: bool = False
    subscription_plan: SubscriptionPlan = SubscriptionPlan.NONE
    valid_until: Optional[datetime] = None
    email: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("valid_until", "created_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands back naive datetimes; everything stored is UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("subscription_plan", mode="before")
    @classmethod
    def _coerce_plan(cls, value: Any) -> Any:
        if value is None:
            return SubscriptionPlan.NONE
        return value

    def is_stale(self, now: datetime) -> bool:
        """True when the record claims unlimited access that has lapsed (or never had an expiry)."""
        if not self.unlimited:
            return False
        return self.valid_until is None or self.valid_until < now

    def to_public_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "credits": self.credits,
            "last_reset_date": self.last_reset_date.isoformat() if self.last_reset_date else None,
            "unlimited": self.unlimited,
            "subscription": self.subscription_plan.value,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
        }
