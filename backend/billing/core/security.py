"""Authentication dependencies backed by Supabase Auth"""
from typing import Any, Dict, Optional

import httpx
from fastapi import Depends, Header, HTTPException

from billing.core.config import settings
from billing.core.logging import security_logger
from billing.services import auth_service


def require_auth(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Dependency: Require a valid Supabase access token, return the user"""
    if not authorization:
        raise HTTPException(401, "Missing authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid authorization header format")

    try:
        user = auth_service.get_user_from_token(token.strip())
    except (httpx.HTTPError, ValueError) as e:
        security_logger.error(f"Token verification failed: {e}")
        raise HTTPException(401, "Unable to verify token")

    if not user:
        security_logger.warning("Rejected invalid or expired access token")
        raise HTTPException(401, "Invalid or expired token")

    return user


def require_admin(user: Dict[str, Any] = Depends(require_auth)) -> Dict[str, Any]:
    """Dependency: Require the configured admin account"""
    admin_email = settings.ADMIN_EMAIL.strip().lower()
    email = (user.get("email") or "").strip().lower()
    if not admin_email or email != admin_email:
        security_logger.warning(f"Admin access denied for user {user.get('id')}")
        raise HTTPException(403, "Admin access required")
    return user


def authorize_user_access(user: Dict[str, Any], user_id: str) -> None:
    """Raise 403 unless the authenticated user is acting on their own data"""
    if user.get("id") != user_id:
        security_logger.warning(f"User {user.get('id')} attempted to access data for user {user_id}")
        raise HTTPException(403, "Forbidden: You can only access your own subscription")
