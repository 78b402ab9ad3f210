"""Order and post-statistics persistence

All order mutations go through `apply_order_transition`, which merge-writes
only the fields an event implies and refuses to move an order backwards
(e.g. a late `processing` event after `paid`).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.models.order import Order, OrderStatus
from settlement.models.post import Post, PostSpecialCheer

logger = logging.getLogger(__name__)

SPECIAL_CHEER_ITEM_TYPE = "special_cheer"

# INSERT .. ON CONFLICT DO NOTHING per supported backend
_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

_OPEN = {OrderStatus.PROCESSING, OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELED,
         OrderStatus.PENDING_BANK_TRANSFER}

# from-status -> statuses an event may move the order to
ALLOWED_TRANSITIONS = {
    None: _OPEN,
    OrderStatus.PENDING: _OPEN,
    OrderStatus.PENDING_BANK_TRANSFER: _OPEN - {OrderStatus.PENDING_BANK_TRANSFER},
    OrderStatus.PROCESSING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELED},
    OrderStatus.FAILED: {OrderStatus.PROCESSING, OrderStatus.PAID, OrderStatus.CANCELED},
    OrderStatus.CANCELED: set(),
    OrderStatus.PAID: {OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
}


def can_transition(current: Optional[str], new: str) -> bool:
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(current, set())


def _lock_order(order_id: str, db: Session) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).with_for_update().first()


def apply_order_transition(
    order_id: str,
    status: str,
    payment_status: str,
    db: Session,
    create: bool = True,
    fields: Optional[Dict[str, Any]] = None,
) -> Tuple[Optional[Order], bool]:
    """Merge-write an order's status plus the given fields.

    Args:
        order_id: PaymentIntent or Checkout Session ID
        status: target order status
        payment_status: Stripe-side payment status to mirror
        db: Database session
        create: create the order if it does not exist yet
        fields: extra columns to set; None values are not written

    Returns:
        (order, applied) - applied is False when the order is missing and
        create is False, or when the transition is not allowed
    """
    fields = {k: v for k, v in (fields or {}).items() if v is not None}

    for attempt in range(2):
        order = _lock_order(order_id, db)
        created = order is None
        if created:
            if not create:
                logger.warning(f"Order {order_id} not found; skipping '{status}' update")
                return None, False
            order = Order(id=order_id)

        if not can_transition(order.status, status):
            logger.warning(
                f"Ignoring stale transition for order {order_id}: {order.status} -> {status}"
            )
            db.rollback()
            return (None if created else order), False

        if created:
            db.add(order)

        order.status = status
        order.payment_status = payment_status
        for key, value in fields.items():
            setattr(order, key, value)
        order.updated_at = datetime.now(timezone.utc)

        try:
            db.commit()
            db.refresh(order)
            return order, True
        except IntegrityError:
            # A concurrent delivery created the same order; re-read and retry once
            db.rollback()
            if attempt:
                raise
    return None, False


def mark_order_paid(order_id: str, db: Session, user_id: Optional[str] = None) -> Tuple[Optional[Order], bool]:
    """Move an order to paid. paid_at is stamped once and never moved."""
    existing = db.query(Order).filter(Order.id == order_id).first()
    fields: Dict[str, Any] = {}
    if existing is None or existing.paid_at is None:
        fields["paid_at"] = datetime.now(timezone.utc)
    if user_id and (existing is None or not existing.user_id):
        fields["user_id"] = user_id
    return apply_order_transition(order_id, OrderStatus.PAID, "succeeded", db, fields=fields)


def find_special_cheer_item(order: Order) -> Optional[Dict[str, Any]]:
    for item in order.items or []:
        if isinstance(item, dict) and item.get("itemType") == SPECIAL_CHEER_ITEM_TYPE and item.get("postId"):
            return item
    return None


def _increment_post_stats(post_id: str, amount: int, now: datetime, db: Session) -> int:
    result = db.execute(
        update(Post)
        .where(Post.id == post_id)
        .values(
            super_thanks=Post.super_thanks + amount,
            super_thanks_count=Post.super_thanks_count + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _ensure_post(post_id: str, now: datetime, db: Session):
    """Create an empty stats record; a concurrent creator wins silently"""
    insert = _INSERTS[db.get_bind().dialect.name]
    db.execute(
        insert(Post)
        .values(id=post_id, super_thanks=0, super_thanks_count=0, updated_at=now)
        .on_conflict_do_nothing(index_elements=["id"])
    )


def record_special_cheer(
    post_id: str,
    order_id: str,
    user_id: Optional[str],
    amount: int,
    message: Optional[str],
    db: Session,
) -> bool:
    """Increment a post's Special Cheer totals and append the history row.

    Both happen in one transaction. The history row is unique per order,
    so a repeated call for the same order rolls back without counting twice.
    Counters are bumped with an in-database expression, never read-modify-write.
    A missing post is created empty first and then incremented like any other.

    Returns:
        True if this call settled the cheer, False if it was already recorded
    """
    now = datetime.now(timezone.utc)
    if _increment_post_stats(post_id, amount, now, db) == 0:
        logger.warning(f"Post {post_id} not found; creating stats record for Special Cheer")
        _ensure_post(post_id, now, db)
        _increment_post_stats(post_id, amount, now, db)

    db.add(PostSpecialCheer(
        post_id=post_id,
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        message=message,
        payment_status="succeeded",
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Special Cheer for order {order_id} already recorded; skipping increment")
        return False

    logger.info(f"Special Cheer processed: ¥{amount} for post {post_id}")
    return True
