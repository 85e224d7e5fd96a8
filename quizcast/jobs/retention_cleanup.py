"""
Document retention cleanup.

Deletes stored documents (and their extracted text) older than
DOCUMENT_RETENTION_MONTHS, in batches so no single transaction runs long.

Run as a daily cron job:
    python -m quizcast.jobs.retention_cleanup
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from quizcast.core.config import settings
from quizcast.core.database import documents, get_db_session
from quizcast.core.errors import StoreUnavailableError
from quizcast.core.logging import configure_logging, log_event

logger = logging.getLogger(__name__)


def retention_cutoff(now: Optional[datetime] = None, retention_months: Optional[int] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    months = retention_months if retention_months is not None else settings.DOCUMENT_RETENTION_MONTHS
    return now - relativedelta(months=months)


def purge_expired_documents(
    now: Optional[datetime] = None,
    retention_months: Optional[int] = None,
    batch_size: Optional[int] = None,
) -> int:
    """
    Delete documents created before the retention cutoff.

    Returns:
        Number of documents deleted

    Raises:
        StoreUnavailableError: If a batch delete fails (earlier batches stay committed)
    """
    cutoff = retention_cutoff(now, retention_months)
    batch_size = batch_size or settings.DOCUMENT_CLEANUP_BATCH_SIZE
    total_deleted = 0

    while True:
        expired_ids = (
            select(documents.c.document_id)
            .where(documents.c.created_at < cutoff)
            .limit(batch_size)
        )
        try:
            with get_db_session() as session:
                result = session.execute(delete(documents).where(documents.c.document_id.in_(expired_ids)))
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Document cleanup failed: {e.__class__.__name__}") from e

        deleted = result.rowcount or 0
        total_deleted += deleted
        logger.info(
            "[retention] deleted document batch",
            extra={"event_type": "documents.purged", "batch_size": deleted, "total_deleted": total_deleted},
        )
        if deleted < batch_size:
            break

    log_event(
        "info",
        "retention.complete",
        event_type="documents.purged",
        extra={"deleted": total_deleted, "cutoff": cutoff.isoformat()},
        logger_name=__name__,
    )
    return total_deleted


def main() -> int:
    configure_logging(settings.ENV)
    try:
        purge_expired_documents()
    except StoreUnavailableError as e:
        logger.error("[retention] cleanup aborted: %s", e, extra={"error_code": e.code})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
