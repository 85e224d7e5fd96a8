"""
quizcast/features/entitlements/store.py

Entitlement store backed by the ``entitlements`` table.

Handles:
- get / set (merge or replace) / find_by_email
- Optimistic compare-and-swap on the ``version`` column
- read_modify_write: bounded CAS retry loop used by every read-then-write path
- Mapping driver failures and timeouts to StoreUnavailableError (callers fail closed)
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizcast.core.config import settings
from quizcast.core.database import entitlements, get_db_session
from quizcast.core.errors import AmbiguousIdentityError, ConcurrentUpdateError, StoreUnavailableError
from quizcast.core.logging import mask_email
from quizcast.models.entitlement import EntitlementRecord, SubscriptionPlan

logger = logging.getLogger(__name__)

T = TypeVar("T")

# compute(current) -> (fields to write or None, result)
Compute = Callable[[Optional[EntitlementRecord]], Tuple[Optional[Dict[str, Any]], T]]

WRITABLE_FIELDS = (
    "credits",
    "last_reset_date",
    "unlimited",
    "subscription_plan",
    "valid_until",
    "email",
)

FIELD_DEFAULTS: Dict[str, Any] = {
    "credits": 0,
    "last_reset_date": None,
    "unlimited": False,
    "subscription_plan": SubscriptionPlan.NONE.value,
    "valid_until": None,
    "email": None,
}


class WriteMode(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


def _clean_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(WRITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {sorted(unknown)}")
    values = dict(fields)
    if isinstance(values.get("subscription_plan"), SubscriptionPlan):
        values["subscription_plan"] = values["subscription_plan"].value
    credits = values.get("credits")
    if credits is not None and credits < 0:
        raise ValueError("credits must be non-negative")
    return values


def record_fields(record: EntitlementRecord) -> Dict[str, Any]:
    """Writable columns of a record, for persisting a computed next state."""
    return {name: getattr(record, name) for name in WRITABLE_FIELDS}


def _row_to_record(row) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row.user_id,
        credits=row.credits,
        last_reset_date=row.last_reset_date,
        unlimited=bool(row.unlimited),
        subscription_plan=row.subscription_plan,
        valid_until=row.valid_until,
        email=row.email,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class EntitlementStore:
    """SQL-backed store; safe to share across threads (one session per call)."""

    def __init__(self, max_retries: Optional[int] = None):
        if max_retries is None:
            max_retries = settings.ENTITLEMENT_CAS_MAX_RETRIES
        self.max_retries = max_retries

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(entitlements).where(entitlements.c.user_id == user_id)
                ).first()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Entitlement store read failed: {e.__class__.__name__}") from e
        return _row_to_record(row) if row else None

    def find_by_email(self, email: str) -> Optional[EntitlementRecord]:
        """
        Find the unique record stamped with ``email``.

        Returns:
            The record, or None when no record matches

        Raises:
            AmbiguousIdentityError: If more than one record carries the email
            StoreUnavailableError: If the store cannot be queried
        """
        normalized = (email or "").strip()
        if not normalized:
            return None
        try:
            with get_db_session() as session:
                rows = session.execute(
                    select(entitlements).where(entitlements.c.email == normalized).limit(2)
                ).fetchall()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Entitlement store lookup failed: {e.__class__.__name__}") from e
        if len(rows) > 1:
            raise AmbiguousIdentityError(
                "More than one user record matches the customer email",
                details={"email": mask_email(normalized)},
            )
        return _row_to_record(rows[0]) if rows else None

    def set(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        mode: WriteMode = WriteMode.MERGE,
        expected_version: Optional[int] = None,
    ) -> EntitlementRecord:
        """
        Write fields for a user.

        Args:
            user_id: Record key
            fields: Subset of WRITABLE_FIELDS
            mode: MERGE keeps unspecified columns, REPLACE resets them to defaults
            expected_version: None for an unconditional upsert, 0 to require that no
                record exists yet, n to require the stored version to still be n

        Returns:
            The record as stored after the write

        Raises:
            ConcurrentUpdateError: If expected_version no longer matches
            StoreUnavailableError: On driver errors or timeouts
        """
        values = _clean_fields(fields)
        if mode == WriteMode.REPLACE:
            values = {**FIELD_DEFAULTS, **values}

        try:
            with get_db_session() as session:
                if expected_version == 0:
                    self._insert(session, user_id, values)
                elif expected_version is not None:
                    result = session.execute(
                        update(entitlements)
                        .where(entitlements.c.user_id == user_id)
                        .where(entitlements.c.version == expected_version)
                        .values(**values, version=entitlements.c.version + 1, updated_at=datetime.now(timezone.utc))
                    )
                    if result.rowcount == 0:
                        raise ConcurrentUpdateError(
                            "Entitlement record changed since it was read",
                            details={"user_id": user_id, "expected_version": expected_version},
                        )
                else:
                    result = session.execute(
                        update(entitlements)
                        .where(entitlements.c.user_id == user_id)
                        .values(**values, version=entitlements.c.version + 1, updated_at=datetime.now(timezone.utc))
                    )
                    if result.rowcount == 0:
                        self._insert(session, user_id, values)

                row = session.execute(
                    select(entitlements).where(entitlements.c.user_id == user_id)
                ).first()
        except IntegrityError as e:
            # Lost a lazy-creation race on the primary key
            raise ConcurrentUpdateError(
                "Entitlement record was created concurrently",
                details={"user_id": user_id},
            ) from e
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Entitlement store write failed: {e.__class__.__name__}") from e

        return _row_to_record(row)

    def _insert(self, session, user_id: str, values: Dict[str, Any]) -> None:
        session.execute(
            insert(entitlements).values(
                user_id=user_id,
                **{**FIELD_DEFAULTS, **values},
                version=1,
            )
        )
        session.flush()

    def read_modify_write(self, user_id: str, compute: Compute) -> T:
        """
        Apply ``compute`` against a fresh snapshot until the write wins its CAS.

        One attempt plus up to ``max_retries`` retries on version conflict.

        ``compute`` receives the current record (or None) and returns the fields to
        write (None to skip the write) plus a result passed back to the caller. It may
        run more than once, so it must not have side effects of its own.

        Raises:
            StoreUnavailableError: If the store fails or contention outlasts max_retries
        """
        for attempt in range(1, self.max_retries + 2):
            current = self.get(user_id)
            fields, result = compute(current)
            if fields is None:
                return result
            expected = current.version if current is not None else 0
            try:
                self.set(user_id, fields, expected_version=expected)
                return result
            except ConcurrentUpdateError:
                logger.info(
                    "[entitlements] cas conflict, retrying",
                    extra={"user_id": user_id, "attempt": attempt},
                )
        logger.error(
            "[entitlements] cas retries exhausted",
            extra={"user_id": user_id, "error_code": "store_unavailable"},
        )
        raise StoreUnavailableError(
            "Could not update entitlement record under contention",
            details={"user_id": user_id},
        )


_default_store: Optional[EntitlementStore] = None


def get_store() -> EntitlementStore:
    global _default_store
    if _default_store is None:
        _default_store = EntitlementStore()
    return _default_store
