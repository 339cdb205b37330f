"""Stripe webhook receiver"""
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from billing.core.exceptions import InvalidWebhookPayload, WebhookConfigurationError
from billing.db.session import get_db
from billing.schemas.subscriptions import WebhookResponse
from billing.services.stripe_service import get_stripe_client
from billing.services.subscription_service import process_stripe_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/stripe", response_model=WebhookResponse, response_model_exclude_none=True)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client=Depends(get_stripe_client)
):
    """Handle Stripe webhook events

    Note: the body is read as raw bytes; signature verification fails on
    anything that has been parsed and re-serialized.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not payload:
        raise HTTPException(400, "Missing request body")
    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        # Lock waits, Stripe calls and DB writes all block; keep them off the event loop
        result = await run_in_threadpool(process_stripe_webhook, payload, sig_header, db, client)
    except WebhookConfigurationError as e:
        logger.error(f"Webhook rejected: {e}")
        raise HTTPException(500, "Webhook secret not configured")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")
    except InvalidWebhookPayload as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, str(e))
    except Exception as e:
        # Unexpected error - log but return 200 to prevent retries
        logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
        return {"received": True, "error": "Webhook processing failed"}

    if result["status"] == "error_logged":
        return {"received": True, "error": "Internal handler error"}
    return {"received": True}
