import logging
import math
import stripe
from typing import Any, Callable, Dict, Optional, Tuple
from datetime import datetime, timezone
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.db.helpers import upsert_subscription_for_user
from billing.db.redis import subscription_lock
from billing.models.stripe_event import StripeEvent
from billing.services.subscription_utils import get_plan_by_id, get_subscription_by_id, is_uuid

logger = logging.getLogger(__name__)

# Lazy initialization - no HTTP session at import time
_http_client = None


# ============================================================================
# STRIPE CLIENT
# ============================================================================

def get_stripe_client():
    """Dependency: configured Stripe API client

    Handlers and services take the client as an argument so tests (and replay
    tooling) can inject their own.
    """
    global _http_client
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not configured, Stripe API calls will fail")
    if _http_client is None:
        # Calls run under the subscription lock, so they must finish before it expires
        _http_client = stripe.RequestsClient(timeout=settings.STRIPE_HTTP_TIMEOUT)
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = settings.STRIPE_API_VERSION
    stripe.default_http_client = _http_client
    stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
    return stripe


# ============================================================================
# STRIPE EVENT LOG (idempotency + dead letters)
# ============================================================================

def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    """Record a verified event before dispatch, returning the existing row for redeliveries"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        return stripe_event

    stripe_event = StripeEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        payload=payload,
        processed=False
    )
    db.add(stripe_event)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event inserted it first
        db.rollback()
        return db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).one()
    db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None):
    """Mark an event handled; a non-empty error_message turns it into a dead letter"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.error_message = error_message
        stripe_event.attempts = (stripe_event.attempts or 0) + 1
        db.commit()


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def _get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from Stripe object (supports both dict and attribute access).

    Dict access is tried first: StripeObject is a dict subclass and attribute
    access would return dict methods for keys such as "items".
    """
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
    else:
        value = getattr(obj, key, default)
    return default if value is None else value


def _get_nested(obj: Any, *keys, default=None):
    for key in keys:
        obj = _get_stripe_value(obj, key)
        if obj is None:
            return default
    return obj


def _to_datetime(value: Any) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds value to an aware datetime, None if unusable"""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not value or not math.isfinite(value):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _first_item(subscription: Any) -> Any:
    items = _get_nested(subscription, "items", "data")
    if items:
        return items[0]
    return None


def _period_field(subscription: Any, field: str, now: datetime) -> datetime:
    """Period bound from the first subscription item, then the top level, then now"""
    item_value = _to_datetime(_get_stripe_value(_first_item(subscription), field))
    if item_value:
        return item_value

    top_level_value = _to_datetime(_get_stripe_value(subscription, field))
    if top_level_value:
        return top_level_value

    logger.warning(
        f"Subscription {_get_stripe_value(subscription, 'id')} has no valid {field} "
        f"(got {_get_stripe_value(subscription, field)!r}), defaulting to now"
    )
    return now


def extract_period_bounds(subscription: Any) -> Tuple[datetime, datetime]:
    """Return (current_period_start, current_period_end), never raising on bad data"""
    now = datetime.now(timezone.utc)
    return (
        _period_field(subscription, "current_period_start", now),
        _period_field(subscription, "current_period_end", now),
    )


def _optional_datetime(obj: Any, field: str) -> Optional[datetime]:
    """Timestamp field that is legitimately absent; invalid values degrade to None"""
    raw = _get_stripe_value(obj, field)
    if raw is None:
        return None
    value = _to_datetime(raw)
    if value is None:
        logger.warning(f"Ignoring invalid {field} value {raw!r} on {_get_stripe_value(obj, 'id')}")
    return value


def _stripe_id(value: Any) -> Optional[str]:
    """ID of a Stripe reference that may be expanded into an object"""
    if value is None or isinstance(value, str):
        return value
    return _get_stripe_value(value, "id")


def _subscription_state(subscription: Any) -> Dict[str, Any]:
    """Columns mirrored from an authoritative (re-fetched) Stripe subscription"""
    period_start, period_end = extract_period_bounds(subscription)
    return {
        "status": _get_stripe_value(subscription, "status"),
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": bool(_get_stripe_value(subscription, "cancel_at_period_end", False)),
        "cancel_at": _optional_datetime(subscription, "cancel_at"),
        "canceled_at": _optional_datetime(subscription, "canceled_at"),
        "ended_at": _optional_datetime(subscription, "ended_at"),
        "updated_at": datetime.now(timezone.utc),
    }


# ============================================================================
# WEBHOOK HANDLERS
# ============================================================================

def handle_checkout_session_completed(session: Any, db: Session, client):
    """Materialize the user's subscription row after a completed checkout"""
    metadata = _get_stripe_value(session, "metadata", {})
    user_id = _get_stripe_value(metadata, "userId")
    plan_identifier = _get_stripe_value(metadata, "planId")
    subscription_id = _stripe_id(_get_stripe_value(session, "subscription"))
    customer_id = _stripe_id(_get_stripe_value(session, "customer"))

    if not user_id or not plan_identifier or not subscription_id:
        logger.error(
            f"Checkout session {_get_stripe_value(session, 'id')} missing required data: "
            f"userId={user_id}, planId={plan_identifier}, subscription={subscription_id}"
        )
        return

    plan_id = plan_identifier
    if not is_uuid(plan_identifier):
        plan = get_plan_by_id(plan_identifier, db)
        if plan:
            plan_id = plan.id
        else:
            logger.warning(f"No active plan with plan_type '{plan_identifier}', storing raw plan identifier")

    with subscription_lock(subscription_id):
        subscription = client.Subscription.retrieve(subscription_id)
        values = _subscription_state(subscription)
        values.update({
            "id": subscription_id,
            "user_id": user_id,
            "stripe_customer_id": customer_id,
            "plan_id": plan_id,
        })
        upsert_subscription_for_user(values, db)
        db.commit()

    logger.info(f"Stored subscription {subscription_id} for user {user_id} (plan {plan_id}, status {values['status']})")


def handle_subscription_updated(subscription_data: Any, db: Session, client):
    """Mirror Stripe-side changes onto an existing row (also used for subscription.created)"""
    subscription_id = _get_stripe_value(subscription_data, "id")

    with subscription_lock(subscription_id):
        subscription = client.Subscription.retrieve(subscription_id)

        sub = get_subscription_by_id(subscription_id, db)
        if not sub:
            logger.warning(f"Subscription {subscription_id} not found locally, waiting for checkout completion to create it")
            return

        for column, value in _subscription_state(subscription).items():
            setattr(sub, column, value)
        db.commit()

    logger.info(f"Updated subscription {subscription_id}: status={sub.status}, cancel_at_period_end={sub.cancel_at_period_end}")


def handle_subscription_deleted(subscription_data: Any, db: Session, client):
    """Mark the row canceled once Stripe has terminated the subscription"""
    subscription_id = _get_stripe_value(subscription_data, "id")
    now = datetime.now(timezone.utc)

    with subscription_lock(subscription_id):
        sub = get_subscription_by_id(subscription_id, db)
        if not sub:
            logger.warning(f"Deleted subscription {subscription_id} not found locally")
            return

        sub.status = "canceled"
        sub.ended_at = _to_datetime(_get_stripe_value(subscription_data, "ended_at")) or now
        sub.canceled_at = _to_datetime(_get_stripe_value(subscription_data, "canceled_at")) or now
        sub.updated_at = now
        db.commit()

    logger.info(f"Subscription {subscription_id} canceled")


def get_invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Find the subscription an invoice belongs to across Stripe API versions"""
    subscription_id = _stripe_id(_get_stripe_value(invoice, "subscription"))
    if subscription_id:
        return subscription_id

    subscription_id = _stripe_id(_get_nested(invoice, "parent", "subscription_details", "subscription"))
    if subscription_id:
        return subscription_id

    for line in _get_nested(invoice, "lines", "data", default=[]):
        subscription_id = _stripe_id(_get_stripe_value(line, "subscription")) or _stripe_id(
            _get_nested(line, "parent", "subscription_item_details", "subscription")
        )
        if subscription_id:
            return subscription_id
    return None


def handle_invoice_payment_succeeded(invoice: Any, db: Session, client):
    """Refresh status and period from Stripe after a paid invoice"""
    invoice_id = _get_stripe_value(invoice, "id")
    if not _get_stripe_value(invoice, "customer"):
        logger.error(f"Invoice {invoice_id} has no customer")
        return

    subscription_id = get_invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info(f"Invoice {invoice_id} is not tied to a subscription, ignoring")
        return

    paid = _get_stripe_value(invoice, "status") == "paid" or _get_stripe_value(invoice, "paid") is True
    if not paid:
        logger.info(f"Invoice {invoice_id} not marked paid, ignoring")
        return

    with subscription_lock(subscription_id):
        sub = get_subscription_by_id(subscription_id, db)
        if not sub:
            logger.warning(f"Subscription {subscription_id} for invoice {invoice_id} not found locally")
            return

        subscription = client.Subscription.retrieve(subscription_id)
        period_start, period_end = extract_period_bounds(subscription)
        sub.status = _get_stripe_value(subscription, "status")
        sub.current_period_start = period_start
        sub.current_period_end = period_end
        sub.latest_invoice_id = invoice_id
        sub.updated_at = datetime.now(timezone.utc)
        db.commit()

    logger.info(f"Invoice {invoice_id} paid, subscription {subscription_id} renewed until {period_end.isoformat()}")


def handle_invoice_payment_failed(invoice: Any, db: Session, client):
    """Flag the subscription past_due; nothing else on the row changes"""
    invoice_id = _get_stripe_value(invoice, "id")
    subscription_id = get_invoice_subscription_id(invoice)
    if not subscription_id:
        logger.info(f"Failed invoice {invoice_id} is not tied to a subscription, ignoring")
        return

    with subscription_lock(subscription_id):
        sub = get_subscription_by_id(subscription_id, db)
        if not sub:
            logger.warning(f"Subscription {subscription_id} for failed invoice {invoice_id} not found locally")
            return

        sub.status = "past_due"
        sub.latest_invoice_id = invoice_id
        sub.updated_at = datetime.now(timezone.utc)
        db.commit()

    logger.warning(f"Payment failed for invoice {invoice_id}, subscription {subscription_id} is past_due")


EVENT_HANDLERS: Dict[str, Callable[[Any, Session, Any], None]] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
}
