"""Subscription API routes"""
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from billing.core.security import require_auth, authorize_user_access
from billing.db.session import get_db
from billing.schemas.subscriptions import CheckoutRequest, PortalRequest, CancelRequest
from billing.services.stripe_service import get_stripe_client
from billing.services.subscription_service import (
    get_subscription_details, create_checkout_session, create_portal_session, cancel_subscription
)

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.get("/get-details")
def get_details(
    user_id: Optional[str] = Query(None, alias="userId"),
    user: Dict[str, Any] = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Get the current subscription (and plan) for a user"""
    if not user_id:
        raise HTTPException(400, "userId query parameter is required")
    authorize_user_access(user, user_id)
    return get_subscription_details(user_id, db)


@router.post("/create-checkout")
def create_checkout(
    request_data: CheckoutRequest,
    user: Dict[str, Any] = Depends(require_auth),
    db: Session = Depends(get_db),
    client=Depends(get_stripe_client)
):
    """Create a Stripe Checkout session for a plan type"""
    return_url = request_data.return_url
    try:
        return create_checkout_session(
            user["id"], request_data.plan_type, db, client,
            success_url=return_url.success if return_url else None,
            cancel_url=return_url.cancel if return_url else None
        )
    except LookupError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        logger.error(f"Failed to resolve Stripe customer for user {user['id']}: {e}")
        raise HTTPException(500, "Failed to retrieve or create customer ID")
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout for user {user['id']}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to create checkout session")


@router.post("/create-portal")
def create_portal(
    request_data: PortalRequest,
    user: Dict[str, Any] = Depends(require_auth),
    db: Session = Depends(get_db),
    client=Depends(get_stripe_client)
):
    """Create a Stripe billing portal session"""
    authorize_user_access(user, request_data.user_id)
    try:
        return create_portal_session(request_data.user_id, db, client, return_url=request_data.return_url)
    except ValueError as e:
        logger.error(f"Failed to resolve Stripe customer for user {request_data.user_id}: {e}")
        raise HTTPException(500, "Failed to retrieve or create customer billing information")
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating portal for user {request_data.user_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to create billing portal session")


@router.post("/cancel")
def cancel(
    request_data: CancelRequest,
    user: Dict[str, Any] = Depends(require_auth),
    db: Session = Depends(get_db),
    client=Depends(get_stripe_client)
):
    """Cancel a subscription at the end of the current billing period"""
    try:
        return cancel_subscription(request_data.subscription_id, user["id"], db, client)
    except LookupError as e:
        raise HTTPException(404, str(e))
    except PermissionError as e:
        raise HTTPException(403, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except stripe.StripeError as e:
        logger.error(f"Stripe error canceling subscription {request_data.subscription_id}: {e}", exc_info=True)
        raise HTTPException(502, "Failed to cancel subscription with Stripe")
