"""Admin API routes"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from billing.core.exceptions import SubscriptionConflict
from billing.core.logging import admin_logger
from billing.core.security import require_admin
from billing.db.session import get_db
from billing.services.admin_service import (
    grant_manual_subscription, revoke_manual_subscription, list_webhook_events
)
from billing.services.stripe_service import get_stripe_client
from billing.services.subscription_service import replay_stripe_event

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


@router.post("/users/{user_id}/grant-monthly")
def grant_monthly(
    user_id: str,
    admin_user: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Grant a manual monthly subscription (admin only)"""
    try:
        return grant_manual_subscription(user_id, admin_user, db)
    except SubscriptionConflict as e:
        raise HTTPException(409, str(e))


@router.post("/users/{user_id}/revoke-monthly")
def revoke_monthly(
    user_id: str,
    admin_user: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Revoke a manual monthly subscription (admin only)"""
    try:
        return revoke_manual_subscription(user_id, admin_user, db)
    except LookupError as e:
        raise HTTPException(404, str(e))


@router.get("/webhooks/events")
def get_webhook_events(
    limit: int = Query(50, ge=1, le=200),
    event_type: Optional[str] = None,
    failed_only: bool = False,
    admin_user: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Get recent Stripe webhook events (failed_only lists dead letters)"""
    return list_webhook_events(db, limit=limit, event_type=event_type, failed_only=failed_only)


@router.post("/webhooks/events/{event_id}/replay")
def replay_webhook_event(
    event_id: str,
    admin_user: Dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
    client=Depends(get_stripe_client)
):
    """Re-run a stored Stripe webhook event"""
    try:
        result = replay_stripe_event(event_id, db, client)
    except LookupError as e:
        raise HTTPException(404, str(e))

    admin_logger.info(f"Admin {admin_user.get('email')} replayed webhook event {event_id}: {result['status']}")
    return result
