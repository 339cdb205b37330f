"""Admin service - manual subscription grants and webhook event inspection"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from billing.core.config import ACTIVE_SUBSCRIPTION_STATUSES, MANUAL_SUBSCRIPTION_PREFIX
from billing.core.exceptions import SubscriptionConflict
from billing.core.logging import admin_logger
from billing.core.metrics import subscription_actions_counter
from billing.db.helpers import upsert_subscription_for_user
from billing.models.stripe_event import StripeEvent
from billing.models.subscription import Subscription
from billing.services.subscription_utils import get_subscription_by_id

logger = logging.getLogger(__name__)

MANUAL_PERIOD_YEARS = 100


def manual_subscription_id(user_id: str) -> str:
    return f"{MANUAL_SUBSCRIPTION_PREFIX}{user_id}"


def _add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return value.replace(year=value.year + years, day=28)


def grant_manual_subscription(user_id: str, admin_user: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Give a user an admin-granted subscription with no Stripe counterpart

    Reactivates a previously revoked manual subscription, otherwise writes a
    new manual_<user_id> row over whatever inactive row the user has.

    Raises:
        SubscriptionConflict: user already has an active or trialing subscription
    """
    active = db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES)
    ).first()
    if active:
        logger.warning(f"Refusing manual grant for user {user_id}: subscription {active.id} is {active.status}")
        raise SubscriptionConflict("User already has an active or trialing subscription")

    sub_id = manual_subscription_id(user_id)
    existing = get_subscription_by_id(sub_id, db)
    reactivated = existing is not None and existing.status == "canceled"

    now = datetime.now(timezone.utc)
    upsert_subscription_for_user({
        "id": sub_id,
        "user_id": user_id,
        "stripe_customer_id": sub_id,
        "plan_id": None,
        "status": "active",
        "current_period_start": now,
        "current_period_end": _add_years(now, MANUAL_PERIOD_YEARS),
        "cancel_at_period_end": False,
        "cancel_at": None,
        "canceled_at": None,
        "ended_at": None,
        "latest_invoice_id": None,
        "created_at": now,
        "updated_at": now,
    }, db)
    db.commit()

    action = "reactivated" if reactivated else "granted"
    subscription_actions_counter.labels(action="manual_grant", status=action).inc()
    admin_logger.info(f"Admin {admin_user.get('email')} ({admin_user.get('id')}) {action} manual subscription {sub_id}")
    return {"success": True, "status": action, "subscription_id": sub_id}


def revoke_manual_subscription(user_id: str, admin_user: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Cancel an active manual subscription

    Raises:
        LookupError: user has no active manual subscription
    """
    sub_id = manual_subscription_id(user_id)
    sub = db.query(Subscription).filter(
        Subscription.id == sub_id,
        Subscription.user_id == user_id,
        Subscription.status == "active"
    ).first()
    if not sub:
        raise LookupError("No active manual subscription found for this user")

    now = datetime.now(timezone.utc)
    sub.status = "canceled"
    sub.canceled_at = now
    sub.updated_at = now
    db.commit()

    subscription_actions_counter.labels(action="manual_revoke", status="revoked").inc()
    admin_logger.info(f"Admin {admin_user.get('email')} ({admin_user.get('id')}) revoked manual subscription {sub_id}")
    return {"success": True, "status": "revoked", "subscription_id": sub_id}


def list_webhook_events(
    db: Session,
    limit: int = 50,
    event_type: Optional[str] = None,
    failed_only: bool = False
) -> Dict[str, Any]:
    """Recent webhook events, optionally only dead letters"""
    query = db.query(StripeEvent)

    if event_type:
        query = query.filter(StripeEvent.event_type == event_type)
    if failed_only:
        query = query.filter(StripeEvent.error_message.isnot(None))

    total = query.count()
    events = query.order_by(desc(StripeEvent.id)).limit(limit).all()

    return {
        "events": [
            {
                "id": e.id,
                "stripe_event_id": e.stripe_event_id,
                "event_type": e.event_type,
                "processed": e.processed,
                "failed": e.failed,
                "error_message": e.error_message,
                "attempts": e.attempts,
                "created_at": e.created_at.isoformat() if e.created_at else None,
                "processed_at": e.processed_at.isoformat() if e.processed_at else None,
            }
            for e in events
        ],
        "total": total
    }
