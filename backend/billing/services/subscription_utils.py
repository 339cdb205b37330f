"""Lookups shared by the webhook handlers and the subscription endpoints"""
import logging
import re
from typing import Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from billing.core.config import MANUAL_SUBSCRIPTION_PREFIX
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.services import auth_service

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE
)


def is_uuid(value) -> bool:
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def get_plan_by_id(identifier: str, db: Session) -> Optional[Plan]:
    """Look up a plan by UUID, or by plan type (e.g. "monthly") among active plans"""
    if not identifier:
        return None
    if is_uuid(identifier):
        return db.query(Plan).filter(Plan.id == identifier).first()
    return db.query(Plan).filter(
        Plan.plan_type == identifier,
        Plan.active.is_(True)
    ).first()


def get_subscription_by_id(subscription_id: str, db: Session) -> Optional[Subscription]:
    if not subscription_id:
        return None
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def get_user_subscription(user_id: str, db: Session) -> Optional[Subscription]:
    """The user's most recent subscription row, if any"""
    return db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).order_by(desc(Subscription.created_at)).first()


def get_or_create_customer_id(user_id: str, db: Session, client) -> str:
    """Return the user's Stripe customer ID, creating a Stripe customer if none is known

    The new ID is not stored here. It is persisted by the checkout webhook
    when the subscription row is written, so abandoned checkouts can leave
    orphan customers in Stripe.

    Raises:
        ValueError: the user does not exist or has no email
    """
    sub = get_user_subscription(user_id, db)
    if sub and sub.stripe_customer_id and not sub.stripe_customer_id.startswith(MANUAL_SUBSCRIPTION_PREFIX):
        return sub.stripe_customer_id

    user = auth_service.get_user_by_id(user_id)
    if not user or not user.get("email"):
        raise ValueError(f"No email found for user {user_id}")

    customer = client.Customer.create(
        email=user["email"],
        metadata={"userId": user_id}
    )
    logger.info(f"Created Stripe customer {customer['id']} for user {user_id}")
    return customer["id"]
