import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Request

from db.engine import get_mongo_collection
from inference.errors import AccessDenied, AuthRequired
from inference.policy import ANONYMOUS, Authenticated, Principal

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    token = header.replace("Bearer ", "").strip()
    return token or None


def lookup_token(token: str) -> Optional[Authenticated]:
    """Resolve an API token to its owner, ``None`` if unknown, inactive or expired."""
    tokens_collection = get_mongo_collection("api_tokens")
    token_entry = tokens_collection.find_one({"token": token, "active": True})
    if not token_entry:
        return None

    expires_at = token_entry.get("expires_at")
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) > expires_at:
            return None

    return Authenticated(id=str(token_entry["owner"]), role=token_entry.get("role", "user"))


def optional_auth(request: Request) -> Principal:
    """Authenticated principal when a valid token is sent, anonymous otherwise."""
    token = _bearer_token(request)
    if token is None:
        return ANONYMOUS
    principal = lookup_token(token)
    if principal is None:
        logger.warning("Ignoring invalid or expired token on optional-auth route")
        return ANONYMOUS
    return principal


def require_auth(request: Request) -> Authenticated:
    token = _bearer_token(request)
    if token is None:
        raise AuthRequired("Missing Authorization header")
    principal = lookup_token(token)
    if principal is None:
        raise AuthRequired("Invalid or expired token")
    return principal


def require_admin(principal: Authenticated = Depends(require_auth)) -> Authenticated:
    if principal.role != "admin":
        raise AccessDenied("Admin role required")
    return principal
