"""Subscription service - webhook processing and user-facing subscription actions"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.exceptions import InvalidWebhookPayload, WebhookConfigurationError
from billing.core.metrics import (
    webhook_events_counter, webhook_signature_failures_counter, subscription_actions_counter
)
from billing.core.otel import webhook_span
from billing.models.stripe_event import StripeEvent
from billing.services.stripe_service import (
    EVENT_HANDLERS, log_stripe_event, mark_stripe_event_processed, _get_stripe_value, _to_datetime
)
from billing.services.subscription_utils import (
    get_plan_by_id, get_subscription_by_id, get_user_subscription, get_or_create_customer_id
)

logger = logging.getLogger(__name__)


# ============================================================================
# WEBHOOK PROCESSING
# ============================================================================

def verify_stripe_event(payload: bytes, sig_header: str) -> Dict[str, Any]:
    """Verify the Stripe-Signature header against the raw body and decode the event

    Raises:
        WebhookConfigurationError: STRIPE_WEBHOOK_SECRET is not set
        stripe.SignatureVerificationError: signature mismatch, malformed header or stale timestamp
        InvalidWebhookPayload: body is not a Stripe event
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook secret not configured")
        raise WebhookConfigurationError("Webhook secret not configured")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        webhook_signature_failures_counter.inc()
        raise InvalidWebhookPayload(f"Payload is not valid UTF-8: {e}")

    try:
        stripe.WebhookSignature.verify_header(
            body, sig_header, settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE
        )
    except stripe.SignatureVerificationError:
        webhook_signature_failures_counter.inc()
        raise

    try:
        event = json.loads(body)
    except ValueError as e:
        raise InvalidWebhookPayload(f"Invalid JSON payload: {e}")

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise InvalidWebhookPayload("Payload is not a Stripe event")
    return event


def dispatch_stripe_event(event: Dict[str, Any], db: Session, client) -> Dict[str, Any]:
    """Run the handler for a logged event and record the outcome

    Handler failures never propagate: the session is rolled back and the event
    row keeps the error as a dead letter for later inspection and replay.
    """
    event_id = event["id"]
    event_type = event["type"]
    handler = EVENT_HANDLERS.get(event_type)

    if handler is None:
        logger.info(f"Ignoring unhandled webhook event type {event_type} ({event_id})")
        mark_stripe_event_processed(event_id, db)
        webhook_events_counter.labels(event_type=event_type, outcome="ignored").inc()
        return {"status": "ignored"}

    data = (event.get("data") or {}).get("object") or {}

    try:
        with webhook_span(event_type, event_id):
            handler(data, db, client)
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing webhook {event_id} ({event_type}): {e}", exc_info=True)
        mark_stripe_event_processed(event_id, db, error_message=f"{type(e).__name__}: {e}")
        webhook_events_counter.labels(event_type=event_type, outcome="failed").inc()
        return {"status": "error_logged", "error": str(e)}

    mark_stripe_event_processed(event_id, db)
    webhook_events_counter.labels(event_type=event_type, outcome="success").inc()
    logger.info(f"Successfully processed webhook event {event_id} of type {event_type}")
    return {"status": "success"}


def process_stripe_webhook(
    payload: bytes,
    sig_header: str,
    db: Session,
    client
) -> Dict[str, Any]:
    """Process Stripe webhook event

    Validates webhook signature, handles idempotency, and processes different event types.
    Returns normally even on handler errors so Stripe does not retry a permanently
    failing event. Only verification problems raise.

    Args:
        payload: Raw request body as bytes (must not be parsed by middleware)
        sig_header: Stripe signature header
        db: Database session
        client: Stripe API client used by handlers to re-fetch subscriptions

    Returns:
        Dict with status information

    Raises:
        WebhookConfigurationError: Webhook secret missing
        stripe.SignatureVerificationError: Invalid signature
        InvalidWebhookPayload: Invalid payload
    """
    event = verify_stripe_event(payload, sig_header)

    stripe_event = log_stripe_event(event["id"], event["type"], event, db)
    if stripe_event.processed and not stripe_event.error_message:
        logger.info(f"Webhook event {event['id']} already processed")
        webhook_events_counter.labels(event_type=event["type"], outcome="duplicate").inc()
        return {"status": "already_processed"}

    return dispatch_stripe_event(event, db, client)


def replay_stripe_event(stripe_event_id: str, db: Session, client) -> Dict[str, Any]:
    """Re-dispatch a stored event (typically a dead letter)

    Raises:
        LookupError: no event with that ID was ever received
    """
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == stripe_event_id).first()
    if not stripe_event:
        raise LookupError(f"Webhook event {stripe_event_id} not found")

    logger.info(f"Replaying webhook event {stripe_event_id} ({stripe_event.event_type}), previous error: {stripe_event.error_message}")
    result = dispatch_stripe_event(stripe_event.payload, db, client)
    db.refresh(stripe_event)
    result["attempts"] = stripe_event.attempts
    return result


# ============================================================================
# USER-FACING SUBSCRIPTION ACTIONS
# ============================================================================

def get_subscription_details(user_id: str, db: Session) -> Dict[str, Any]:
    """Current subscription row for a user, with its plan"""
    sub = get_user_subscription(user_id, db)
    if not sub:
        return {"subscription": None}

    details = sub.to_dict()
    plan = get_plan_by_id(sub.plan_id, db) if sub.plan_id else None
    details["plan"] = plan.to_dict() if plan else None
    return {"subscription": details}


def create_checkout_session(
    user_id: str,
    plan_type: str,
    db: Session,
    client,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None
) -> Dict[str, Any]:
    """Start a Stripe Checkout session for a plan

    The session metadata carries the user and internal plan ID; the
    checkout.session.completed webhook uses them to create the subscription row.

    Raises:
        LookupError: plan not found or has no Stripe price
        ValueError: Stripe customer could not be resolved
    """
    plan = get_plan_by_id(plan_type, db)
    if not plan or not plan.stripe_price_id:
        raise LookupError(f"Plan type '{plan_type}' not found or missing Stripe price ID")

    customer_id = get_or_create_customer_id(user_id, db, client)

    base_url = settings.FRONTEND_URL.rstrip("/")
    session = client.checkout.Session.create(
        customer=customer_id,
        payment_method_types=["card"],
        line_items=[{"price": plan.stripe_price_id, "quantity": 1}],
        mode="subscription",
        success_url=success_url or f"{base_url}/account?tab=subscription&checkout=success",
        cancel_url=cancel_url or f"{base_url}/account?tab=subscription&checkout=cancelled",
        metadata={"userId": user_id, "planId": plan.id}
    )

    subscription_actions_counter.labels(action="checkout", status="created").inc()
    logger.info(f"Created checkout session {session['id']} for user {user_id}, plan {plan.plan_type}")
    return {"sessionId": session["id"]}


def create_portal_session(user_id: str, db: Session, client, return_url: Optional[str] = None) -> Dict[str, Any]:
    """Open a Stripe billing portal session for the user's customer"""
    customer_id = get_or_create_customer_id(user_id, db, client)
    session = client.billing_portal.Session.create(
        customer=customer_id,
        return_url=return_url or f"{settings.FRONTEND_URL.rstrip('/')}/account?tab=subscription"
    )
    return {"url": session["url"]}


def cancel_subscription(subscription_id: str, user_id: str, db: Session, client) -> Dict[str, Any]:
    """Cancel a subscription at the end of the current period

    Stripe stays the source of truth; the local row is marked cancel_pending
    until the subscription.updated/deleted webhooks arrive.

    Raises:
        LookupError: subscription does not exist
        PermissionError: subscription belongs to another user
        ValueError: subscription is admin-granted and not backed by Stripe
    """
    sub = get_subscription_by_id(subscription_id, db)
    if not sub:
        raise LookupError("Subscription not found")
    if sub.user_id != user_id:
        raise PermissionError("You can only cancel your own subscriptions")
    if sub.is_manual:
        raise ValueError("Manually granted subscriptions cannot be canceled through Stripe")

    updated = client.Subscription.modify(sub.id, cancel_at_period_end=True)
    cancel_at = _to_datetime(_get_stripe_value(updated, "cancel_at"))

    try:
        sub.status = "cancel_pending"
        sub.cancel_at = cancel_at
        sub.cancel_at_period_end = True
        sub.updated_at = datetime.now(timezone.utc)
        db.commit()
    except Exception as e:
        # Stripe already scheduled the cancellation; the webhook will converge the row
        db.rollback()
        logger.error(f"Failed to update subscription {sub.id} after Stripe cancellation: {e}", exc_info=True)

    subscription_actions_counter.labels(action="cancel", status="scheduled").inc()
    logger.info(f"Subscription {sub.id} for user {user_id} set to cancel at period end")
    return {
        "success": True,
        "status": _get_stripe_value(updated, "status"),
        "cancel_at": cancel_at.isoformat() if cancel_at else None
    }
