"""Stripe webhook event ledger (transport-level idempotency)"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.models.stripe_event import StripeEvent, StripeEventStatus
from settlement.schemas.stripe_events import StripeEventEnvelope

logger = logging.getLogger(__name__)


def mark_if_new(event: StripeEventEnvelope, db: Session) -> bool:
    """Claim an event for processing.

    The INSERT against the unique event_id is the single gate: of two
    concurrent deliveries exactly one commits. A row left behind by a
    failed or abandoned attempt is re-claimed with a conditional UPDATE,
    again with a single winner.

    Returns:
        True if the caller now owns the event, False if it was already seen
    """
    record = StripeEvent(
        event_id=event.id,
        event_type=event.type,
        livemode=event.livemode,
        created=event.created_at,
        status=StripeEventStatus.PROCESSING,
        handled=False,
        payload=event.model_dump(mode="json"),
    )
    db.add(record)
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()

    return _reclaim(event.id, db)


def _reclaim(event_id: str, db: Session) -> bool:
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS)
    result = db.execute(
        update(StripeEvent)
        .where(
            StripeEvent.event_id == event_id,
            StripeEvent.handled.is_(False),
            or_(
                StripeEvent.status == StripeEventStatus.FAILED,
                StripeEvent.status == StripeEventStatus.IGNORED,
                and_(
                    StripeEvent.status == StripeEventStatus.PROCESSING,
                    StripeEvent.received_at < cutoff,
                ),
            ),
        )
        .values(status=StripeEventStatus.PROCESSING, received_at=now, error_message=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 1:
        logger.info(f"Re-claimed unfinished webhook event {event_id}")
        return True
    return False


def mark_handled(event_id: str, db: Session):
    db.execute(
        update(StripeEvent)
        .where(StripeEvent.event_id == event_id)
        .values(
            status=StripeEventStatus.HANDLED,
            handled=True,
            handled_at=datetime.now(timezone.utc),
            error_message=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_failed(event_id: str, error: str, db: Session):
    """Release the claim so a redelivery can process the event again"""
    db.execute(
        update(StripeEvent)
        .where(StripeEvent.event_id == event_id, StripeEvent.handled.is_(False))
        .values(status=StripeEventStatus.FAILED, error_message=error[:1000])
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_errored(event_id: str, error: str, db: Session):
    """Close the claim of an event whose handler raised.

    The row stays unhandled so it can be found and replayed by hand, but the
    status keeps redeliveries from re-claiming it.
    """
    db.execute(
        update(StripeEvent)
        .where(StripeEvent.event_id == event_id, StripeEvent.handled.is_(False))
        .values(status=StripeEventStatus.ERRORED, error_message=error[:1000])
        .execution_options(synchronize_session=False)
    )
    db.commit()


def record_ignored(event: StripeEventEnvelope, note: str, db: Session):
    """File an event that will not be processed, for audit only"""
    existing = db.query(StripeEvent).filter(StripeEvent.event_id == event.id).first()
    if existing:
        if not existing.handled:
            existing.note = note
            db.commit()
        return existing

    record = StripeEvent(
        event_id=event.id,
        event_type=event.type,
        livemode=event.livemode,
        created=event.created_at,
        status=StripeEventStatus.IGNORED,
        handled=False,
        note=note,
        payload=event.model_dump(mode="json"),
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event filed it first
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.event_id == event.id).first()
    return record


def get_stripe_event(event_id: str, db: Session) -> Optional[StripeEvent]:
    return db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
