"""Email service - transactional email templates and Resend transport"""
import logging
from datetime import datetime
from html import escape
from typing import Any, Callable, Dict, Optional, Tuple

import resend

from settlement.core.config import settings

logger = logging.getLogger(__name__)

STORE_NAME = "PLAY TUNE STORE"
TAX_RATE = 0.1


class EmailKind:
    ORDER_CONFIRMATION = "order_confirmation"
    SPECIAL_CHEER_CONFIRMATION = "special_cheer_confirmation"
    SUBSCRIPTION_CONFIRMATION = "subscription_confirmation"
    SUBSCRIPTION_CANCEL = "subscription_cancel"
    SUBSCRIPTION_PAYMENT_UPDATE = "subscription_payment_update"


def _yen(amount: Optional[int]) -> str:
    return f"¥{int(amount or 0):,}"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"


def _layout(subject: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 560px; margin: 0 auto;">
      <p style="color: #999; font-size: 12px;">{STORE_NAME}</p>
      <h2 style="margin: .6em 0 0; font-size: 20px;">{escape(subject)}</h2>
      {body}
      <p style="color: #999; font-size: 12px; margin-top: 20px;">
        This message was sent automatically. Please do not reply.
      </p>
    </div>
    """


def render_order_confirmation(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"[{STORE_NAME}] Thank you for your order"
    rows = "".join(
        f"<tr><td>{escape(str(it['name']))}</td><td>x{it['quantity']}</td>"
        f"<td style='text-align:right'>{_yen(it['price'])}</td></tr>"
        for it in data.get("items", [])
    )
    address = data.get("address")
    address_html = ""
    if address:
        address_html = (
            f"<p><strong>Ship to:</strong> {escape(address.get('name') or '')}<br/>"
            f"{escape(address.get('prefecture') or '')} {escape(address.get('city') or '')} "
            f"{escape(address.get('line1') or '')}</p>"
        )
    body = f"""
    <p>Hi {escape(data['user_name'])}, we have received your payment.</p>
    <p>Order ID: {escape(data['order_id'])}<br/>Paid at: {_date(data.get('paid_at'))}</p>
    <table style="width: 100%;">{rows}</table>
    <p>Shipping: {_yen(data.get('shipping_fee'))}<br/>
       <strong>Total: {_yen(data.get('total'))}</strong> ({escape(data.get('payment_type') or 'card')})</p>
    {address_html}
    """
    return subject, _layout(subject, body)


def render_special_cheer_confirmation(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"[{STORE_NAME}] Your Special Cheer was sent"
    message = data.get("message")
    message_html = f"<blockquote>{escape(message)}</blockquote>" if message else ""
    group = f" ({escape(data['group_name'])})" if data.get("group_name") else ""
    body = f"""
    <p>Hi {escape(data['user_name'])}, thank you for your Special Cheer!</p>
    <p>Post: <a href="{settings.FRONTEND_URL}/posts/{escape(data['post_id'])}">{escape(data['post_title'])}</a>{group}<br/>
       Amount: <strong>{_yen(data.get('amount'))}</strong><br/>
       Order ID: {escape(data['order_id'])}</p>
    {message_html}
    """
    return subject, _layout(subject, body)


def render_subscription_confirmation(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Welcome to the {data['group_name']} membership"
    body = f"""
    <p>Hi {escape(data['user_name'])}, your membership is now active.</p>
    <p>Plan: {escape(data['plan_type'])}<br/>
       Amount: {_yen(data.get('amount'))}<br/>
       Next billing date: {_date(data.get('next_billing_date'))}</p>
    """
    return subject, _layout(subject, body)


def render_subscription_cancel(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Your {data['group_name']} membership has been canceled"
    body = f"""
    <p>Hi {escape(data['user_name'])}, we have received your cancellation.</p>
    <p>Plan: {escape(data['plan_type'])}<br/>
       Canceled on: {_date(data.get('canceled_at'))}<br/>
       Member benefits remain available until {_date(data.get('period_end'))}.</p>
    """
    return subject, _layout(subject, body)


def render_subscription_payment_update(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"The payment method for your {data['group_name']} membership was changed"
    card = data.get("new_payment_method") or {}
    body = f"""
    <p>Hi {escape(data['user_name'])}, the payment method for your membership was updated.</p>
    <p>New card: {escape(str(card.get('brand') or '').upper())} ending in {escape(str(card.get('last4') or '????'))}<br/>
       Updated on: {_date(data.get('updated_at'))}</p>
    <p>If you did not make this change, please contact support immediately.</p>
    """
    return subject, _layout(subject, body)


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    EmailKind.ORDER_CONFIRMATION: render_order_confirmation,
    EmailKind.SPECIAL_CHEER_CONFIRMATION: render_special_cheer_confirmation,
    EmailKind.SUBSCRIPTION_CONFIRMATION: render_subscription_confirmation,
    EmailKind.SUBSCRIPTION_CANCEL: render_subscription_cancel,
    EmailKind.SUBSCRIPTION_PAYMENT_UPDATE: render_subscription_payment_update,
}


class EmailSender:
    """Renders a template and hands it to Resend. Never retries."""

    def __init__(self, api_key: str, from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    def send(self, kind: str, to: str, data: Dict[str, Any]) -> bool:
        """Send one email.

        Returns:
            bool: True on success, False on failure
        """
        subject, html = TEMPLATES[kind](data)
        return self._send_email(to, subject, html)

    def _send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.api_key:
            logger.warning("RESEND_API_KEY is not set; skipping email")
            return False

        try:
            resend.api_key = self.api_key
            response = resend.Emails.send(
                {
                    "from": self.from_email,
                    "to": to,
                    "subject": subject,
                    "html": html,
                }
            )

            # Resend returns a dict with 'id' on success; older clients return an object
            email_id = None
            if isinstance(response, dict):
                email_id = response.get('id')
            elif hasattr(response, 'id'):
                email_id = response.id

            if email_id:
                logger.info(f"Email sent successfully to {to} (id: {email_id})")
                return True
            logger.error(f"Email send returned invalid response: {response} (type: {type(response)})")
            return False

        except Exception as exc:
            logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
            return False


def get_email_sender() -> EmailSender:
    """Dependency for FastAPI endpoints"""
    return EmailSender(settings.RESEND_API_KEY, settings.RESEND_FROM_EMAIL)


def build_order_email_data(order, user_name: str) -> Dict[str, Any]:
    """Order confirmation payload; unit prices include consumption tax"""
    items = []
    for it in order.items or []:
        price = it.get("price") or 0
        items.append({
            "name": it.get("name") or it.get("id") or "Item",
            "quantity": it.get("quantity") or 1,
            "price": price + round(price * TAX_RATE) if price else 0,
        })
    shipping = order.shipping_info or None
    return {
        "user_name": user_name,
        "order_id": order.id,
        "total": order.total or 0,
        "payment_type": order.payment_type or "card",
        "address": {
            "name": shipping.get("name"),
            "prefecture": shipping.get("prefecture"),
            "city": shipping.get("city"),
            "line1": shipping.get("line1"),
        } if shipping else None,
        "items": items,
        "shipping_fee": order.shipping_fee or 0,
        "paid_at": order.paid_at,
    }
