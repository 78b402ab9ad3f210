"""Settlement flow tests: orders, Special Cheers, refunds, bank transfers, memberships"""
from unittest.mock import patch

import pytest
import stripe

from conftest import make_event, payment_intent, subscription_object
from settlement.core.config import settings
from settlement.models.email_log import EmailLog
from settlement.models.notification import Notification
from settlement.models.order import Order
from settlement.models.post import Post, PostSpecialCheer
from settlement.models.stripe_event import StripeEvent
from settlement.models.subscription import Subscription


def _email_types(db_session, event_id, status="sent"):
    return sorted(
        row.type for row in db_session.query(EmailLog).filter(
            EmailLog.event_id == event_id, EmailLog.status == status
        )
    )


@pytest.mark.critical
class TestOrderLifecycle:
    """PaymentIntent events move orders forward only"""

    def test_processing_then_succeeded_ends_paid(self, post_event, db_session, product_order):
        post_event(make_event("evt_p", "payment_intent.processing", payment_intent("pi_1")))
        db_session.refresh(product_order)
        assert product_order.status == "processing"
        assert product_order.payment_status == "processing"

        post_event(make_event("evt_s", "payment_intent.succeeded", payment_intent("pi_1")))
        db_session.refresh(product_order)
        assert product_order.status == "paid"
        assert product_order.payment_status == "succeeded"
        assert product_order.paid_at is not None

    def test_late_processing_does_not_regress_paid_order(self, post_event, db_session, product_order):
        post_event(make_event("evt_s", "payment_intent.succeeded", payment_intent("pi_1")))
        post_event(make_event("evt_p", "payment_intent.processing", payment_intent("pi_1")))

        db_session.refresh(product_order)
        assert product_order.status == "paid"
        assert product_order.payment_status == "succeeded"

    def test_payment_failed_records_reason(self, post_event, db_session, product_order):
        post_event(make_event(
            "evt_f", "payment_intent.payment_failed",
            payment_intent("pi_1", last_payment_error={"message": "Your card was declined."}),
        ))

        db_session.refresh(product_order)
        assert product_order.status == "failed"
        assert product_order.payment_status == "failed"
        assert product_order.failure_reason == "Your card was declined."

    def test_payment_failed_without_error_message(self, post_event, db_session, product_order):
        post_event(make_event("evt_f", "payment_intent.payment_failed", payment_intent("pi_1")))

        db_session.refresh(product_order)
        assert product_order.failure_reason == "Unknown error"

    def test_canceled_records_reason_and_time(self, post_event, db_session, product_order):
        post_event(make_event(
            "evt_c", "payment_intent.canceled",
            payment_intent("pi_1", cancellation_reason="abandoned"),
        ))

        db_session.refresh(product_order)
        assert product_order.status == "canceled"
        assert product_order.cancel_reason == "abandoned"
        assert product_order.canceled_at is not None

    def test_cancel_after_paid_is_rejected(self, post_event, db_session, product_order):
        post_event(make_event("evt_s", "payment_intent.succeeded", payment_intent("pi_1")))
        post_event(make_event("evt_c", "payment_intent.canceled", payment_intent("pi_1")))

        db_session.refresh(product_order)
        assert product_order.status == "paid"
        assert product_order.cancel_reason is None

    def test_success_for_unknown_order_creates_it(self, post_event, db_session, payer):
        post_event(make_event("evt_n", "payment_intent.succeeded", payment_intent("pi_new", uid=payer.id)))

        order = db_session.query(Order).filter(Order.id == "pi_new").one()
        assert order.status == "paid"
        assert order.user_id == payer.id

    def test_order_confirmation_contains_taxed_items(self, post_event, product_order, mailer):
        post_event(make_event("evt_1", "payment_intent.succeeded", payment_intent("pi_1")))

        kind, to, data = mailer.send.call_args.args
        assert kind == "order_confirmation"
        assert to == "delivered@resend.dev"
        assert data["user_name"] == "Hana"
        assert data["items"] == [{"name": "Tour T-shirt", "quantity": 1, "price": 3300}]
        assert data["total"] == 3300
        assert data["address"]["prefecture"] == "Tokyo"

    def test_order_email_skipped_without_address(self, post_event, db_session, product_order, payer, mailer):
        payer.email = None
        db_session.commit()

        post_event(make_event("evt_1", "payment_intent.succeeded", payment_intent("pi_1")))

        mailer.send.assert_not_called()
        row = db_session.query(EmailLog).filter(EmailLog.event_id == "evt_1").one()
        assert row.status == "skipped"
        assert row.reason == "no_email"
        db_session.refresh(product_order)
        assert product_order.status == "paid"

    def test_second_paid_event_for_same_order_sends_one_confirmation(self, post_event, db_session, product_order, mailer):
        post_event(make_event("evt_s", "payment_intent.succeeded", payment_intent("pi_1")))
        post_event(make_event("evt_s2", "checkout.session.async_payment_succeeded", {"id": "pi_1"}))

        assert mailer.send.call_count == 1
        sent = db_session.query(EmailLog).filter(
            EmailLog.type == "order_confirmation", EmailLog.status == "sent"
        ).all()
        assert [row.event_id for row in sent] == ["evt_s"]

    def test_email_failure_does_not_affect_settlement(self, post_event, db_session, product_order, mailer):
        mailer.send.side_effect = RuntimeError("resend is down")

        response = post_event(make_event("evt_1", "payment_intent.succeeded", payment_intent("pi_1")))

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        db_session.refresh(product_order)
        assert product_order.status == "paid"
        assert _email_types(db_session, "evt_1", status="failed") == ["order_confirmation"]


@pytest.mark.critical
class TestSpecialCheer:
    """Tips update post stats exactly once and never send an order email"""

    def test_cheer_updates_stats_notifies_and_emails(self, post_event, db_session, cheer_order, post, mailer):
        response = post_event(make_event("evt_2", "payment_intent.succeeded", payment_intent("pi_2", uid="uid_payer")))
        assert response.status_code == 200

        db_session.refresh(post)
        assert post.super_thanks == 500
        assert post.super_thanks_count == 1

        history = db_session.query(PostSpecialCheer).filter(PostSpecialCheer.post_id == "post_9").all()
        assert len(history) == 1
        assert history[0].order_id == "pi_2"
        assert history[0].amount == 500
        assert history[0].message == "Loved the show!"
        assert history[0].user_id == "uid_payer"

        notifications = db_session.query(Notification).filter(Notification.user_id == "uid_creator").all()
        assert len(notifications) == 1
        assert notifications[0].type == "special_cheer"
        assert notifications[0].message == "Hana sent a ¥500 Special Cheer"
        assert notifications[0].link == "/posts/post_9"
        assert notifications[0].data["senderId"] == "uid_payer"

        assert _email_types(db_session, "evt_2") == ["special_cheer_confirmation"]
        kind, to, data = mailer.send.call_args.args
        assert kind == "special_cheer_confirmation"
        assert data["post_title"] == "Live at Budokan"
        assert data["amount"] == 500

    def test_cheer_never_sends_order_confirmation(self, post_event, db_session, cheer_order, mailer):
        post_event(make_event("evt_2", "payment_intent.succeeded", payment_intent("pi_2")))

        kinds = [c.args[0] for c in mailer.send.call_args_list]
        assert "order_confirmation" not in kinds
        assert db_session.query(EmailLog).filter(EmailLog.type == "order_confirmation").count() == 0

    def test_no_notification_when_creator_tips_own_post(self, post_event, db_session, cheer_order, post, creator):
        cheer_order.user_id = creator.id
        db_session.commit()

        post_event(make_event("evt_2", "payment_intent.succeeded", payment_intent("pi_2")))

        assert db_session.query(Notification).count() == 0
        db_session.refresh(post)
        assert post.super_thanks == 500

    def test_n_tips_count_n(self, post_event, db_session, payer, post):
        for i in range(3):
            db_session.add(Order(
                id=f"pi_tip_{i}",
                user_id=payer.id,
                status="pending",
                items=[{"itemType": "special_cheer", "postId": post.id, "price": 100 * (i + 1)}],
            ))
        db_session.commit()

        for i in range(3):
            post_event(make_event(f"evt_tip_{i}", "payment_intent.succeeded", payment_intent(f"pi_tip_{i}")))

        db_session.refresh(post)
        assert post.super_thanks_count == 3
        assert post.super_thanks == 600
        assert db_session.query(PostSpecialCheer).count() == 3

    def test_second_paid_event_for_same_order_does_not_double_count(self, post_event, db_session, cheer_order, post, mailer):
        post_event(make_event("evt_2", "payment_intent.succeeded", payment_intent("pi_2")))
        post_event(make_event("evt_2b", "checkout.session.async_payment_succeeded", {"id": "pi_2"}))

        db_session.refresh(post)
        assert post.super_thanks == 500
        assert post.super_thanks_count == 1
        assert db_session.query(Notification).count() == 1
        assert _email_types(db_session, "evt_2") == ["special_cheer_confirmation"]
        assert _email_types(db_session, "evt_2b") == []
        assert mailer.send.call_count == 1

    def test_cheer_for_missing_post_creates_stats_record(self, post_event, db_session, payer):
        db_session.add(Order(
            id="pi_orphan",
            user_id=payer.id,
            status="pending",
            items=[{"itemType": "special_cheer", "postId": "post_gone", "price": 300}],
        ))
        db_session.commit()

        post_event(make_event("evt_o", "payment_intent.succeeded", payment_intent("pi_orphan")))

        post = db_session.get(Post, "post_gone")
        assert post.super_thanks == 300
        assert post.super_thanks_count == 1
        assert db_session.query(Notification).count() == 0


@pytest.mark.high
class TestRefundsAndBankTransfer:
    def test_refund_marks_paid_order_refunded(self, post_event, db_session, product_order):
        post_event(make_event("evt_s", "payment_intent.succeeded", payment_intent("pi_1")))
        post_event(make_event("evt_r", "charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"}))

        db_session.refresh(product_order)
        assert product_order.status == "refunded"
        assert product_order.payment_status == "refunded"

    def test_refund_object_with_nested_charge(self, post_event, db_session, product_order):
        post_event(make_event("evt_s", "payment_intent.succeeded", payment_intent("pi_1")))
        post_event(make_event("evt_rf", "charge.refunded", {"id": "re_1", "charge": {"id": "ch_1", "payment_intent": "pi_1"}}))

        db_session.refresh(product_order)
        assert product_order.status == "refunded"

    def test_refund_for_unknown_order_creates_nothing(self, post_event, db_session):
        post_event(make_event("evt_r", "charge.refunded", {"id": "ch_1", "payment_intent": {"id": "pi_missing"}}))

        assert db_session.query(Order).count() == 0

    def test_bank_transfer_checkout_then_funds_arrive(self, post_event, db_session, payer, mailer):
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "payment_method_types": ["customer_balance"],
            "metadata": {"userId": payer.id},
            "url": "https://payments.stripe.com/instructions/cs_1",
        }
        post_event(make_event("evt_cs", "checkout.session.completed", session))

        order = db_session.query(Order).filter(Order.id == "cs_1").one()
        assert order.status == "pending_bank_transfer"
        assert order.payment_status == "requires_action"
        assert order.user_id == payer.id
        assert order.hosted_instructions_url == "https://payments.stripe.com/instructions/cs_1"
        mailer.send.assert_not_called()

        post_event(make_event("evt_as", "checkout.session.async_payment_succeeded", session))

        db_session.refresh(order)
        assert order.status == "paid"
        assert _email_types(db_session, "evt_as") == ["order_confirmation"]

    def test_card_checkout_completion_is_ignored(self, post_event, db_session):
        post_event(make_event("evt_cs", "checkout.session.completed", {
            "id": "cs_card", "payment_method_types": ["card"],
        }))

        assert db_session.query(Order).count() == 0

    def test_bank_transfer_not_completed(self, post_event, db_session, payer):
        session = {"id": "cs_2", "payment_method_types": ["customer_balance"], "metadata": {"userId": payer.id}}
        post_event(make_event("evt_cs", "checkout.session.completed", session))
        post_event(make_event("evt_af", "checkout.session.async_payment_failed", session))

        order = db_session.get(Order, "cs_2")
        db_session.refresh(order)
        assert order.status == "failed"
        assert order.payment_status == "failed"


@pytest.mark.critical
class TestDunning:
    """Failed renewals cancel the subscription once the threshold is reached"""

    @pytest.fixture
    def membership(self, db_session, payer, group):
        sub = Subscription(
            user_id=payer.id,
            group_id=group.id,
            stripe_subscription_id="sub_test123",
            status="active",
            plan_type="monthly",
        )
        db_session.add(sub)
        db_session.commit()
        return sub

    def _invoice(self, attempts):
        return {"id": "in_1", "customer": "cus_test123", "subscription": "sub_test123", "attempt_count": attempts}

    def test_first_failure_keeps_subscription(self, post_event, gateway, membership, db_session):
        post_event(make_event("evt_d1", "invoice.payment_failed", self._invoice(1)))

        gateway.cancel_subscription.assert_not_called()
        db_session.refresh(membership)
        assert membership.status == "active"

    def test_threshold_failures_cancel_exactly_once(self, post_event, gateway, membership, db_session):
        post_event(make_event("evt_d1", "invoice.payment_failed", self._invoice(1)))
        post_event(make_event("evt_d2", "invoice.payment_failed", self._invoice(2)))
        post_event(make_event("evt_d3", "invoice.payment_failed", self._invoice(3)))

        gateway.cancel_subscription.assert_called_once_with("sub_test123")
        db_session.refresh(membership)
        assert membership.status == "canceled"

    def test_subscription_id_from_invoice_parent(self, post_event, gateway, membership):
        invoice = {
            "id": "in_2",
            "customer": "cus_test123",
            "attempt_count": 2,
            "parent": {"subscription_details": {"subscription": "sub_test123"}},
        }
        post_event(make_event("evt_d", "invoice.payment_failed", invoice))

        gateway.cancel_subscription.assert_called_once_with("sub_test123")

    def test_configurable_threshold(self, post_event, gateway, membership):
        with patch.object(settings, "SUBSCRIPTION_CANCEL_AFTER_FAILED_ATTEMPTS", 3):
            post_event(make_event("evt_d2", "invoice.payment_failed", self._invoice(2)))
            gateway.cancel_subscription.assert_not_called()
            post_event(make_event("evt_d3", "invoice.payment_failed", self._invoice(3)))

        gateway.cancel_subscription.assert_called_once()

    def test_stripe_error_leaves_mirror_untouched(self, post_event, gateway, membership, db_session):
        gateway.cancel_subscription.side_effect = stripe.InvalidRequestError("No such subscription", "id")

        response = post_event(make_event("evt_d2", "invoice.payment_failed", self._invoice(2)))

        assert response.status_code == 200
        db_session.refresh(membership)
        assert membership.status == "active"
        entry = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_d2").one()
        assert entry.handled is True

    def test_rate_limited_cancel_is_retried(self, post_event, gateway, membership, db_session):
        gateway.cancel_subscription.side_effect = [stripe.RateLimitError("Too many requests"), None]
        event = make_event("evt_d2", "invoice.payment_failed", self._invoice(2))

        assert post_event(event).status_code == 503
        assert post_event(event).status_code == 200

        assert gateway.cancel_subscription.call_count == 2
        db_session.refresh(membership)
        assert membership.status == "canceled"


@pytest.mark.high
class TestSubscriptionSync:
    """Subscription events keep the membership mirror and send lifecycle emails"""

    def test_created_active_upserts_mirror_and_confirms(self, post_event, db_session, payer, group, mailer):
        post_event(make_event("evt_sc", "customer.subscription.created", subscription_object()))

        mirror = db_session.query(Subscription).filter(Subscription.user_id == payer.id).one()
        assert mirror.group_id == "grp_1"
        assert mirror.status == "active"
        assert mirror.plan_type == "monthly"
        assert mirror.stripe_subscription_id == "sub_test123"
        assert mirror.current_period_end is not None

        kind, to, data = mailer.send.call_args.args
        assert kind == "subscription_confirmation"
        assert data["group_name"] == "Aurora Fan Club"
        assert data["amount"] == 500

    def test_created_incomplete_sends_no_email(self, post_event, db_session, payer, group, mailer):
        post_event(make_event("evt_sc", "customer.subscription.created", subscription_object(status="incomplete")))

        assert db_session.query(Subscription).count() == 1
        mailer.send.assert_not_called()

    def test_yearly_plan_and_group_id_fallback(self, post_event, db_session, payer, mailer):
        post_event(make_event("evt_sc", "customer.subscription.created", subscription_object(
            group_id="grp_unknown", interval="year",
        )))

        mirror = db_session.query(Subscription).one()
        assert mirror.plan_type == "yearly"
        assert mailer.send.call_args.args[2]["group_name"] == "grp_unknown"

    def test_updated_syncs_existing_mirror(self, post_event, db_session, payer, group):
        post_event(make_event("evt_sc", "customer.subscription.created", subscription_object()))
        post_event(make_event("evt_su", "customer.subscription.updated", subscription_object(status="past_due")))

        mirrors = db_session.query(Subscription).all()
        assert len(mirrors) == 1
        assert mirrors[0].status == "past_due"

    def test_cancel_at_period_end_sends_cancel_email(self, post_event, db_session, payer, group, mailer):
        post_event(make_event(
            "evt_su", "customer.subscription.updated",
            subscription_object(cancel_at_period_end=True),
            previous_attributes={"cancel_at_period_end": False},
        ))

        assert _email_types(db_session, "evt_su") == ["subscription_cancel"]
        assert db_session.query(Subscription).one().cancel_at_period_end is True

    def test_unrelated_update_sends_no_email(self, post_event, db_session, payer, group, mailer):
        post_event(make_event(
            "evt_su", "customer.subscription.updated",
            subscription_object(cancel_at_period_end=True),
            previous_attributes={"status": "past_due"},
        ))

        mailer.send.assert_not_called()

    def test_payment_method_change_sends_card_details(self, post_event, db_session, payer, group, gateway, mailer):
        post_event(make_event(
            "evt_su", "customer.subscription.updated",
            subscription_object(default_payment_method="pm_card_new"),
            previous_attributes={"default_payment_method": "pm_card_old"},
        ))

        gateway.retrieve_card.assert_called_once_with("pm_card_new")
        kind, to, data = mailer.send.call_args.args
        assert kind == "subscription_payment_update"
        assert data["new_payment_method"] == {"brand": "visa", "last4": "4242"}

    def test_non_card_payment_method_sends_nothing(self, post_event, db_session, payer, group, gateway, mailer):
        gateway.retrieve_card.return_value = None

        post_event(make_event(
            "evt_su", "customer.subscription.updated",
            subscription_object(default_payment_method="pm_bank"),
            previous_attributes={"default_payment_method": "pm_card_old"},
        ))

        mailer.send.assert_not_called()

    def test_deleted_marks_canceled_and_emails(self, post_event, db_session, payer, group):
        post_event(make_event("evt_sc", "customer.subscription.created", subscription_object()))
        post_event(make_event("evt_sd", "customer.subscription.deleted", subscription_object(status="canceled")))

        assert db_session.query(Subscription).one().status == "canceled"
        assert _email_types(db_session, "evt_sd") == ["subscription_cancel"]

    def test_unknown_customer_is_skipped(self, post_event, db_session, group, mailer):
        response = post_event(make_event("evt_sc", "customer.subscription.created", subscription_object(customer="cus_nobody")))

        assert response.status_code == 200
        assert db_session.query(Subscription).count() == 0
        mailer.send.assert_not_called()

    def test_missing_group_metadata_is_skipped(self, post_event, db_session, payer, mailer):
        post_event(make_event("evt_sc", "customer.subscription.created", subscription_object(metadata={})))

        assert db_session.query(Subscription).count() == 0
        mailer.send.assert_not_called()
