"""
Webhook Idempotency Service
Deduplicates payment provider events by their provider-assigned event id.

The unique constraint on processed_external_events.event_id is the only
deduplication primitive: the claim insert is the first write of the webhook
transaction, and an IntegrityError on it means the event was already seen.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import ProcessedEventStatus, ProcessedExternalEvent
from utils.exceptions import DuplicateEvent

logger = logging.getLogger(__name__)


class WebhookIdempotencyService:
    """Claim / complete / fail lifecycle of processed external events"""

    @staticmethod
    def claim(session: Session, event_id: str, event_type: str) -> ProcessedExternalEvent:
        """
        Insert the `processing` row for this event inside the caller's transaction.

        On a duplicate the session is rolled back (nothing else has been written
        yet) and DuplicateEvent is raised carrying the existing row's status.
        """
        row = ProcessedExternalEvent(
            event_id=event_id,
            event_type=event_type,
            status=ProcessedEventStatus.PROCESSING.value,
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            existing = session.execute(
                select(ProcessedExternalEvent).where(ProcessedExternalEvent.event_id == event_id)
            ).scalar_one_or_none()
            logger.info(
                f"🔁 WEBHOOK_DUPLICATE: event_id={event_id} type={event_type} "
                f"previous_status={existing.status if existing else 'unknown'}"
            )
            raise DuplicateEvent(
                f"Event {event_id} already processed",
                details={"event_id": event_id, "previous_status": existing.status if existing else None},
            )

        logger.debug(f"🔐 WEBHOOK_CLAIMED: event_id={event_id} type={event_type}")
        return row

    @staticmethod
    def mark_completed(session: Session, row: ProcessedExternalEvent, result: str) -> None:
        """Mark the claimed event completed; committed together with its ledger effects"""
        row.status = ProcessedEventStatus.COMPLETED.value
        row.processing_result = result
        row.completed_at = datetime.now(timezone.utc)
        session.flush()
        logger.info(f"✅ WEBHOOK_COMPLETED: event_id={row.event_id} result={result}")

    @staticmethod
    def record_failed(session: Session, event_id: str, event_type: str, error_message: str) -> ProcessedExternalEvent:
        """
        Persist a `failed` row after the processing transaction was rolled back.

        The row is kept for manual review and blocks reprocessing of the same
        event id; it is never deleted.
        """
        row = ProcessedExternalEvent(
            event_id=event_id,
            event_type=event_type,
            status=ProcessedEventStatus.FAILED.value,
            processing_result="failed",
            error_message=error_message[:2000],
            completed_at=datetime.now(timezone.utc),
        )
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event finished first; keep its row
            session.rollback()
            existing = session.execute(
                select(ProcessedExternalEvent).where(ProcessedExternalEvent.event_id == event_id)
            ).scalar_one()
            logger.warning(
                f"⚠️ WEBHOOK_FAILED_ROW_EXISTS: event_id={event_id} status={existing.status}"
            )
            return existing

        logger.error(
            f"🚨 WEBHOOK_FAILED: event_id={event_id} type={event_type} "
            f"error={error_message} - manual review required"
        )
        return row

    @staticmethod
    def get_event(session: Session, event_id: str) -> Optional[ProcessedExternalEvent]:
        return session.execute(
            select(ProcessedExternalEvent).where(ProcessedExternalEvent.event_id == event_id)
        ).scalar_one_or_none()
