"""Supabase Auth lookups over the GoTrue REST API"""
import logging
from typing import Any, Dict, Optional

import httpx

from billing.core.config import settings

logger = logging.getLogger(__name__)


def _auth_url(path: str) -> str:
    if not settings.SUPABASE_URL:
        raise ValueError("SUPABASE_URL not configured")
    return f"{settings.SUPABASE_URL.rstrip('/')}/auth/v1{path}"


def get_user_from_token(access_token: str) -> Optional[Dict[str, Any]]:
    """Resolve a Supabase access token to its user

    Returns the user object ({"id", "email", ...}) or None if Supabase rejects
    the token (invalid or expired).

    Raises:
        httpx.HTTPError: Supabase could not be reached
    """
    response = httpx.get(
        _auth_url("/user"),
        headers={
            "apikey": settings.SUPABASE_SERVICE_KEY,
            "Authorization": f"Bearer {access_token}",
        },
        timeout=settings.SUPABASE_TIMEOUT
    )

    if response.status_code in (401, 403):
        return None
    response.raise_for_status()

    user = response.json()
    if not user or not user.get("id"):
        return None
    return user


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a user with the service-role admin API, None if it does not exist"""
    response = httpx.get(
        _auth_url(f"/admin/users/{user_id}"),
        headers={
            "apikey": settings.SUPABASE_SERVICE_KEY,
            "Authorization": f"Bearer {settings.SUPABASE_SERVICE_KEY}",
        },
        timeout=settings.SUPABASE_TIMEOUT
    )

    if response.status_code == 404:
        logger.warning(f"Supabase user {user_id} not found")
        return None
    response.raise_for_status()
    return response.json()
