"""Stripe webhook route"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from settlement.db.session import get_db
from settlement.services.email_service import EmailSender, get_email_sender
from settlement.services.stripe_service import PaymentGateway, get_payment_gateway
from settlement.services.webhook_service import WebhookRetryableError, process_stripe_webhook

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    mailer: EmailSender = Depends(get_email_sender),
):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    Processing (database, Stripe and Resend calls) runs in the threadpool.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        return await run_in_threadpool(process_stripe_webhook, payload, sig_header, db, gateway, mailer)
    except stripe.SignatureVerificationError:
        raise HTTPException(400, "Invalid signature")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, "Invalid payload")
    except WebhookRetryableError as e:
        logger.warning(f"Asking Stripe to redeliver {e.event_id}")
        return JSONResponse(
            status_code=503,
            content={"received": False, "status": "retry", "event_id": e.event_id},
        )
    except Exception as e:
        # Unexpected error - log but return 200 to prevent retries
        logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
        return {"received": True, "status": "error", "message": "Webhook processing failed"}
