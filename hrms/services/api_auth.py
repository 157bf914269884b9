"""API authentication and authorization service.

Provides session and token-based authentication for the HRMS REST API.
"""

from __future__ import annotations

from datetime import datetime
from functools import wraps
from typing import Any, Callable, Iterable, Optional

from flask import g, jsonify, request
from flask_login import current_user  # type: ignore

from ..extensions import db
from ..models import APIKey, User


def get_api_key_from_request() -> Optional[str]:
    """Extract API key from request headers.

    Looks for the key in:
    1. Authorization: Bearer <key>
    2. X-API-Key: <key>
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip()

    api_key_header = request.headers.get("X-API-Key", "")
    if api_key_header:
        return api_key_header.strip()

    return None


def authenticate_request() -> tuple[Optional[User], Optional[APIKey]]:
    """Authenticate the current request.

    Returns:
        tuple: (user, api_key) where api_key is set only for token auth
    """
    if current_user.is_authenticated:
        user_obj = getattr(current_user, "model", None)
        if user_obj is None:
            user_obj = current_user
        return user_obj, None

    api_key_str = get_api_key_from_request()
    if not api_key_str or not api_key_str.startswith(APIKey.KEY_PREFIX):
        return None, None

    key_prefix = api_key_str[:11]  # "hrms_" + first 6 hex chars
    candidates = APIKey.query.filter_by(key_prefix=key_prefix, is_active=True).all()
    api_key = next((key for key in candidates if key.verify_key(api_key_str)), None)
    if api_key is None or not api_key.is_usable():
        return None, None

    api_key.last_used_at = datetime.utcnow()
    db.session.commit()

    return api_key.user, api_key


def require_api_auth(roles: Optional[Iterable[str]] = None):
    """Decorator to require API authentication.

    Args:
        roles: Optional roles allowed to call the endpoint. If None, any
            authenticated user is allowed.

    Example:
        @api_v1_bp.get('/integrations/connections')
        @require_api_auth(roles=[ROLE_ADMIN])
        def list_connections():
            user = g.api_user
    """
    allowed = tuple(roles or ())

    def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(f)
        def decorated_function(*args: Any, **kwargs: Any) -> Any:
            user, api_key = authenticate_request()

            if not user:
                return (
                    jsonify(
                        {
                            "error": "Authentication required",
                            "message": "Provide a valid API key in Authorization header",
                        }
                    ),
                    401,
                )

            g.api_user = user
            g.api_key = api_key

            if allowed and user.role not in allowed:
                return (
                    jsonify(
                        {
                            "error": "Insufficient permissions",
                            "message": f"Requires one of roles: {', '.join(allowed)}",
                        }
                    ),
                    403,
                )

            return f(*args, **kwargs)

        return decorated_function

    return decorator
