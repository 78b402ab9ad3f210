"""Notification dispatcher - idempotent emails and in-app notifications

Every email attempt is written to the email log. A (source, event_id, type)
that already has a `sent` or `skipped` row is never sent again, so a
redelivered or re-claimed event only fills in what is missing. Paid-order
emails and notifications are gated by order, since Stripe can report one
payment through more than one event.
"""
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import EMAIL_LOG_SOURCE
from settlement.core.metrics import emails_counter
from settlement.models.email_log import EmailLog
from settlement.models.notification import Notification
from settlement.models.user import User
from settlement.services.email_service import EmailSender

logger = logging.getLogger(__name__)

# Statuses that settle an email for good; `failed` leaves it open for a retry
FINAL_EMAIL_STATUSES = ("sent", "skipped")


def run_detached(label: str, fn: Callable[..., Any], *args, **kwargs) -> None:
    """Run a side effect whose outcome never reaches the caller.

    The call completes before this returns (the webhook is a single
    request/response cycle), but its result is discarded and any exception
    is logged here instead of propagating. Use it for work that must never
    turn an already-committed settlement into an error response.
    """
    try:
        fn(*args, **kwargs)
    except Exception as e:
        logger.error(f"Background {label} error: {e}", exc_info=True)


def already_sent(
    source: str,
    event_id: str,
    email_type: str,
    db: Session,
    order_id: Optional[str] = None,
) -> bool:
    """True once a final log row exists for the email.

    With order_id the gate is the order instead of the event, so a second
    paid event for the same order finds the first one's email.
    """
    query = db.query(EmailLog.id).filter(
        EmailLog.source == source,
        EmailLog.type == email_type,
        EmailLog.status.in_(FINAL_EMAIL_STATUSES),
    )
    if order_id:
        query = query.filter(EmailLog.order_id == order_id)
    else:
        query = query.filter(EmailLog.event_id == event_id)
    return query.first() is not None


def record(
    source: str,
    event_id: str,
    email_type: str,
    status: str,
    db: Session,
    recipient: Optional[str] = None,
    error: Optional[str] = None,
    **refs,
) -> EmailLog:
    """Append one email log row. refs: user_id, order_id, subscription_id, reason, details"""
    entry = EmailLog(
        source=source,
        event_id=event_id,
        type=email_type,
        status=status,
        recipient=recipient,
        error=error[:1000] if error else None,
        **refs,
    )
    db.add(entry)
    db.commit()
    emails_counter.labels(type=email_type, status=status).inc()
    return entry


def send_email_once(
    event_id: str,
    email_type: str,
    user_id: Optional[str],
    build_data: Callable[[User], Dict[str, Any]],
    db: Session,
    mailer: EmailSender,
    once_per_order: bool = False,
    **refs,
) -> Optional[str]:
    """Send one email for an event unless the log says it already went out.

    build_data receives the recipient User and returns the template data;
    user_name is filled in automatically. once_per_order gates on
    refs['order_id'] rather than the event. Failures are logged to the email
    log and never raised.

    Returns:
        The resulting status ('sent', 'failed', 'skipped') or None if skipped
        because it was already handled
    """
    source = EMAIL_LOG_SOURCE
    try:
        gate_order_id = refs.get("order_id") if once_per_order else None
        if already_sent(source, event_id, email_type, db, order_id=gate_order_id):
            logger.info(f"Email {email_type} for event {event_id} already handled")
            return None

        user = db.get(User, user_id) if user_id else None
        to = user.email if user else None
        if not to:
            record(source, event_id, email_type, "skipped", db,
                   user_id=user_id or "unknown", reason="no_email", **refs)
            return "skipped"

        data = build_data(user)
        data.setdefault("user_name", user.mail_name)

        if mailer.send(email_type, to, data):
            record(source, event_id, email_type, "sent", db, recipient=to, user_id=user_id, **refs)
            return "sent"

        record(source, event_id, email_type, "failed", db, recipient=to, user_id=user_id,
               error="Email provider did not accept the message", **refs)
        return "failed"

    except Exception as e:
        logger.error(f"send {email_type} email error: {e}", exc_info=True)
        db.rollback()
        try:
            record(source, event_id, email_type, "failed", db,
                   user_id=user_id or "unknown", error=str(e) or type(e).__name__, **refs)
        except Exception as log_error:
            db.rollback()
            logger.error(f"Could not write email log for {email_type}/{event_id}: {log_error}")
        return "failed"


def record_side_effect_failure(event_id: str, effect: str, error: Exception, db: Session, **refs):
    """Log a failed non-email side effect next to the email attempts"""
    db.rollback()
    try:
        record(EMAIL_LOG_SOURCE, event_id, effect, "failed", db,
               error=str(error) or type(error).__name__, **refs)
    except Exception as log_error:
        db.rollback()
        logger.error(f"Could not write failure log for {effect}/{event_id}: {log_error}")


def create_notification_once(
    event_id: str,
    user_id: str,
    notification_type: str,
    title: str,
    message: str,
    db: Session,
    link: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
) -> bool:
    """Create an in-app notification at most once per dedupe key.

    The key defaults to (event, type); callers settling an order pass a key
    derived from the order instead.
    """
    dedupe_key = dedupe_key or f"{event_id}:{notification_type}"
    notification = Notification(
        user_id=user_id,
        type=notification_type,
        title=title,
        message=message,
        link=link,
        data=data,
        read=False,
        dedupe_key=dedupe_key,
    )
    db.add(notification)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Notification {dedupe_key} already exists")
        return False
    logger.info(f"Notification {notification_type} sent to {user_id}")
    return True
