"""Settlement handlers - one per Stripe money-movement flow

Each handler commits the order/subscription state an event implies first,
then runs its side effects through `run_detached` so that a failed email or
notification can never undo or block the financial update.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import settings
from settlement.core.metrics import special_cheer_amount_counter
from settlement.models.group import Group
from settlement.models.order import Order, OrderStatus
from settlement.models.post import Post
from settlement.models.subscription import Subscription
from settlement.models.user import User
from settlement.schemas.stripe_events import (
    ChargePayload,
    CheckoutSessionPayload,
    ClassifiedEvent,
    InvoicePayload,
    PaymentIntentPayload,
    SubscriptionPayload,
)
from settlement.services.email_service import EmailKind, EmailSender, build_order_email_data
from settlement.services.notification_service import (
    create_notification_once,
    record_side_effect_failure,
    run_detached,
    send_email_once,
)
from settlement.services.order_service import (
    apply_order_transition,
    find_special_cheer_item,
    mark_order_paid,
    record_special_cheer,
)
from settlement.services.stripe_service import PaymentGateway

logger = logging.getLogger(__name__)

# Errors worth a provider redelivery rather than a swallowed 2xx
TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
)


@dataclass
class SettlementContext:
    db: Session
    gateway: PaymentGateway
    mailer: EmailSender


def _now():
    return datetime.now(timezone.utc)


# ============================================================================
# PAYMENT INTENT LIFECYCLE
# ============================================================================

def handle_payment_intent_processing(ctx: SettlementContext, event: ClassifiedEvent):
    pi: PaymentIntentPayload = event.payload
    apply_order_transition(pi.id, OrderStatus.PROCESSING, "processing", ctx.db)


def handle_payment_intent_succeeded(ctx: SettlementContext, event: ClassifiedEvent):
    pi: PaymentIntentPayload = event.payload
    order, applied = mark_order_paid(pi.id, ctx.db, user_id=pi.uid)
    if applied:
        settle_paid_order(ctx, event.event.id, order)


def handle_payment_intent_failed(ctx: SettlementContext, event: ClassifiedEvent):
    pi: PaymentIntentPayload = event.payload
    apply_order_transition(
        pi.id, OrderStatus.FAILED, "failed", ctx.db,
        fields={"failure_reason": pi.failure_message},
    )


def handle_payment_intent_canceled(ctx: SettlementContext, event: ClassifiedEvent):
    pi: PaymentIntentPayload = event.payload
    apply_order_transition(
        pi.id, OrderStatus.CANCELED, "canceled", ctx.db,
        fields={"cancel_reason": pi.cancellation_reason or "unknown", "canceled_at": _now()},
    )


# ============================================================================
# CHECKOUT (BANK TRANSFER)
# ============================================================================

def handle_checkout_session_completed(ctx: SettlementContext, event: ClassifiedEvent):
    session: CheckoutSessionPayload = event.payload
    if not session.is_bank_transfer:
        logger.info(f"Checkout session {session.id} is not a bank transfer; nothing to settle")
        return
    apply_order_transition(
        session.id, OrderStatus.PENDING_BANK_TRANSFER, "requires_action", ctx.db,
        fields={
            "user_id": session.metadata.get("userId"),
            "payment_type": "bank_transfer",
            "hosted_instructions_url": session.hosted_instructions_url,
        },
    )


def handle_checkout_async_payment_succeeded(ctx: SettlementContext, event: ClassifiedEvent):
    session: CheckoutSessionPayload = event.payload
    order, applied = mark_order_paid(session.id, ctx.db, user_id=session.metadata.get("userId"))
    if applied:
        settle_paid_order(ctx, event.event.id, order)


def handle_checkout_async_payment_failed(ctx: SettlementContext, event: ClassifiedEvent):
    session: CheckoutSessionPayload = event.payload
    apply_order_transition(
        session.id, OrderStatus.FAILED, "failed", ctx.db, create=False,
        fields={"failure_reason": "Bank transfer was not completed"},
    )


# ============================================================================
# PAID ORDER SIDE EFFECTS
# ============================================================================

def settle_paid_order(ctx: SettlementContext, event_id: str, order: Order):
    """Branch on line items: a Special Cheer order gets the cheer side effects,
    any other order gets the standard confirmation email. Never both."""
    item = find_special_cheer_item(order)
    if item:
        settle_special_cheer(ctx, event_id, order, item)
    else:
        run_detached(
            "order confirmation email", send_email_once,
            event_id, EmailKind.ORDER_CONFIRMATION, order.user_id,
            lambda user: build_order_email_data(order, user.mail_name),
            ctx.db, ctx.mailer, once_per_order=True, order_id=order.id,
        )


def settle_special_cheer(ctx: SettlementContext, event_id: str, order: Order, item: dict):
    db = ctx.db
    post_id = item["postId"]
    amount = item.get("price") or 0
    message = (item.get("metadata") or {}).get("message")
    order_id = order.id
    payer_id = order.user_id

    try:
        if record_special_cheer(post_id, order_id, payer_id, amount, message, db):
            special_cheer_amount_counter.inc(amount)
    except Exception as e:
        logger.error(f"Failed to update Special Cheer stats for post {post_id}: {e}", exc_info=True)
        record_side_effect_failure(event_id, "special_cheer_stats", e, db, order_id=order_id)

    run_detached(
        "Special Cheer notification", notify_special_cheer_creator,
        ctx, event_id, order_id, post_id, payer_id, amount, message,
    )

    post = db.get(Post, post_id)
    post_title = (post.title if post else None) or item.get("postTitle") or item.get("name") or "Post"
    run_detached(
        "Special Cheer email", send_email_once,
        event_id, EmailKind.SPECIAL_CHEER_CONFIRMATION, payer_id,
        lambda user: {
            "post_id": post_id,
            "post_title": post_title,
            "group_name": (item.get("metadata") or {}).get("groupName"),
            "amount": amount,
            "message": message,
            "paid_at": order.paid_at,
            "order_id": order_id,
        },
        db, ctx.mailer, once_per_order=True, order_id=order_id, details={"postId": post_id, "amount": amount},
    )


def notify_special_cheer_creator(
    ctx: SettlementContext,
    event_id: str,
    order_id: str,
    post_id: str,
    payer_id: Optional[str],
    amount: int,
    message: Optional[str],
):
    db = ctx.db
    try:
        post = db.get(Post, post_id)
        creator_id = post.creator_id if post else None
        if not creator_id or creator_id == payer_id:
            return

        sender = db.get(User, payer_id) if payer_id else None
        sender_name = (sender.display_name if sender else None) or "Anonymous"
        create_notification_once(
            event_id, creator_id, "special_cheer",
            "Special Cheer received",
            f"{sender_name} sent a ¥{amount:,} Special Cheer",
            db,
            link=f"/posts/{post_id}",
            data={
                "postId": post_id,
                "senderId": payer_id,
                "amount": amount,
                "postTitle": post.title,
                "message": message,
            },
            dedupe_key=f"{order_id}:special_cheer",
        )
    except Exception as e:
        logger.error(f"Failed to notify creator for post {post_id}: {e}", exc_info=True)
        record_side_effect_failure(event_id, "special_cheer_notification", e, db, order_id=order_id)


# ============================================================================
# REFUNDS
# ============================================================================

def handle_charge_refunded(ctx: SettlementContext, event: ClassifiedEvent):
    charge: ChargePayload = event.payload
    payment_intent_id = charge.payment_intent_id
    if not payment_intent_id:
        logger.warning(f"Refunded charge {charge.id} has no payment intent; skipping")
        return
    apply_order_transition(payment_intent_id, OrderStatus.REFUNDED, "refunded", ctx.db, create=False)


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def _find_user_by_customer(customer_id: Optional[str], db: Session) -> Optional[User]:
    if not customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == customer_id).limit(1).first()


def handle_invoice_payment_failed(ctx: SettlementContext, event: ClassifiedEvent):
    """Dunning: cancel once the invoice has failed often enough.

    The attempt count comes from the event itself, so ordering between
    failure events does not matter.
    """
    invoice: InvoicePayload = event.payload
    sub_id = invoice.subscription_id
    customer_id = invoice.customer
    if not sub_id or not customer_id:
        logger.warning(f"Invoice {invoice.id} has no subscription or customer; skipping dunning")
        return

    attempts = invoice.attempt_count or 1
    threshold = settings.SUBSCRIPTION_CANCEL_AFTER_FAILED_ATTEMPTS
    if attempts < threshold:
        logger.info(f"Invoice {invoice.id} failed attempt {attempts}/{threshold}; keeping {sub_id}")
        return

    db = ctx.db
    mirrors = db.query(Subscription).filter(Subscription.stripe_subscription_id == sub_id).all()
    if mirrors and all(m.status == "canceled" for m in mirrors):
        logger.info(f"Subscription {sub_id} already canceled; skipping dunning cancel")
        return

    try:
        ctx.gateway.cancel_subscription(sub_id)
    except TRANSIENT_ERRORS:
        raise
    except stripe.StripeError as e:
        logger.error(f"invoice.payment_failed: could not cancel {sub_id}: {e}")
        return

    reflect_subscription_cancel(customer_id, sub_id, db)


def reflect_subscription_cancel(customer_id: str, subscription_id: str, db: Session):
    user = _find_user_by_customer(customer_id, db)
    if not user:
        logger.warning(f"No user found for customer {customer_id}")
        return
    mirror = db.query(Subscription).filter(
        Subscription.user_id == user.id,
        Subscription.stripe_subscription_id == subscription_id,
    ).first()
    if not mirror:
        return
    mirror.status = "canceled"
    mirror.updated_at = _now()
    db.commit()
    logger.info(f"Subscription {subscription_id} for user {user.id} marked canceled")


def _upsert_subscription_mirror(user: User, sub: SubscriptionPayload, db: Session) -> Subscription:
    for attempt in range(2):
        mirror = db.query(Subscription).filter(
            Subscription.user_id == user.id,
            Subscription.group_id == sub.group_id,
        ).first()
        if not mirror:
            mirror = Subscription(user_id=user.id, group_id=sub.group_id)
            db.add(mirror)

        mirror.stripe_subscription_id = sub.id
        mirror.status = sub.status
        mirror.current_period_end = sub.period_end
        mirror.cancel_at_period_end = sub.cancel_at_period_end
        mirror.plan_type = sub.plan_type
        mirror.updated_at = _now()
        try:
            db.commit()
            return mirror
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
    return mirror


def handle_subscription_event(ctx: SettlementContext, event: ClassifiedEvent):
    """Sync the subscription mirror and send the matching lifecycle email"""
    sub: SubscriptionPayload = event.payload
    db = ctx.db
    event_id = event.event.id
    event_type = event.event.type

    user = _find_user_by_customer(sub.customer, db)
    if not user:
        logger.warning(f"No user found for customer {sub.customer}")
        return
    if not sub.group_id:
        logger.warning(f"Subscription {sub.id} has no groupId metadata; skipping sync")
        return

    _upsert_subscription_mirror(user, sub, db)
    logger.info(f"Subscription {sub.id} synced for user {user.id} / group {sub.group_id}: {sub.status}")

    group = db.get(Group, sub.group_id)
    group_name = group.name if group else sub.group_id
    user_id = user.id

    if event_type == "customer.subscription.created" and sub.status == "active":
        run_detached(
            "subscription confirmation email", send_email_once,
            event_id, EmailKind.SUBSCRIPTION_CONFIRMATION, user_id,
            lambda u: {
                "group_name": group_name,
                "plan_type": sub.plan_type,
                "amount": sub.unit_amount // 100,
                "next_billing_date": sub.period_end,
            },
            db, ctx.mailer, subscription_id=sub.id,
        )

    if event_type == "customer.subscription.updated":
        previous = event.previous_attributes

        if "cancel_at_period_end" in previous and not previous["cancel_at_period_end"] and sub.cancel_at_period_end:
            _send_cancel_email(ctx, event_id, user_id, sub, group_name)

        old_pm = previous.get("default_payment_method")
        if old_pm and sub.default_payment_method and old_pm != sub.default_payment_method:
            run_detached(
                "payment update email", _send_payment_update_email,
                ctx, event_id, user_id, sub, group_name,
            )

    if event_type == "customer.subscription.deleted":
        _send_cancel_email(ctx, event_id, user_id, sub, group_name)


def _send_cancel_email(ctx: SettlementContext, event_id: str, user_id: str, sub: SubscriptionPayload, group_name: str):
    canceled_at = _now()
    run_detached(
        "subscription cancel email", send_email_once,
        event_id, EmailKind.SUBSCRIPTION_CANCEL, user_id,
        lambda u: {
            "group_name": group_name,
            "plan_type": sub.plan_type,
            "canceled_at": canceled_at,
            "period_end": sub.period_end,
        },
        ctx.db, ctx.mailer, subscription_id=sub.id,
    )


def _send_payment_update_email(ctx: SettlementContext, event_id: str, user_id: str, sub: SubscriptionPayload, group_name: str):
    card = ctx.gateway.retrieve_card(sub.default_payment_method)
    if not card:
        logger.info(f"Payment method {sub.default_payment_method} is not a card; no update email")
        return
    updated_at = _now()
    send_email_once(
        event_id, EmailKind.SUBSCRIPTION_PAYMENT_UPDATE, user_id,
        lambda u: {
            "group_name": group_name,
            "new_payment_method": card,
            "updated_at": updated_at,
        },
        ctx.db, ctx.mailer, subscription_id=sub.id,
    )


def handle_unhandled(ctx: SettlementContext, event: ClassifiedEvent):
    logger.info(f"Ignoring unhandled event type {event.event.type}")
