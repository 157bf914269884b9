"""API v1 authentication and API key management endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from flask import current_app, g, jsonify, request
from flask_login import login_user, logout_user  # type: ignore

from ...extensions import db, limiter
from ...models import APIKey, User
from ...security import LoginUser, verify_password
from ...services.api_auth import require_api_auth
from . import api_v1_bp


def _api_key_to_dict(api_key: APIKey, include_key: str | None = None) -> dict[str, Any]:
    """Convert APIKey model to dictionary.

    Args:
        api_key: The API key model
        include_key: If provided, include the full key (only for newly created keys)
    """
    data = {
        "id": api_key.id,
        "name": api_key.name,
        "key_prefix": api_key.key_prefix,
        "is_active": api_key.is_active,
        "created_at": api_key.created_at.isoformat() if api_key.created_at else None,
        "last_used_at": api_key.last_used_at.isoformat() if api_key.last_used_at else None,
        "expires_at": api_key.expires_at.isoformat() if api_key.expires_at else None,
    }
    if include_key:
        data["key"] = include_key
    return data


def _user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "employee_id": user.employee_id,
    }


@api_v1_bp.post("/auth/login")
@limiter.limit(lambda: current_app.config.get("LOGIN_RATE_LIMIT", "10 per minute"))
def login():
    """Start a session with email and password.

    Request body:
        email (str): Account email
        password (str): Account password

    Returns:
        200: Logged-in user
        400: Missing credentials
        401: Invalid credentials
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    user = User.query.filter_by(email=email).first()
    if user is None or not verify_password(user.password_hash, password):
        current_app.logger.info("Failed login attempt for %s", email)
        return jsonify({"error": "Invalid credentials"}), 401

    login_user(LoginUser(user), remember=True)
    return jsonify({"user": _user_to_dict(user)})


@api_v1_bp.post("/auth/logout")
@require_api_auth()
def logout():
    """End the current session.

    Returns:
        204: Logged out
    """
    logout_user()
    return ("", 204)


@api_v1_bp.get("/auth/me")
@require_api_auth()
def get_current_user():
    """Get current authenticated user information.

    Returns:
        200: User data including API key info if token auth was used
    """
    user_data = _user_to_dict(g.api_user)
    api_key = g.api_key
    if api_key:
        user_data["auth_method"] = "api_key"
        user_data["api_key_id"] = api_key.id
    else:
        user_data["auth_method"] = "session"
    return jsonify({"user": user_data})


@api_v1_bp.get("/auth/keys")
@require_api_auth()
def list_api_keys():
    """List all API keys for the current user.

    Returns:
        200: List of API keys (without sensitive data)
    """
    user = g.api_user
    keys = APIKey.query.filter_by(user_id=user.id).order_by(APIKey.created_at.desc()).all()
    return jsonify({"keys": [_api_key_to_dict(k) for k in keys]})


@api_v1_bp.post("/auth/keys")
@require_api_auth()
def create_api_key():
    """Create a new API key for the current user.

    Request body:
        name (str): Human-readable name for the key
        expires_days (int, optional): Days until expiration (default: no expiration)

    Returns:
        201: Created API key (includes full key - only shown once)
        400: Invalid request
    """
    user = g.api_user
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    name = (data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "Key name is required"}), 400

    full_key, key_hash, key_prefix = APIKey.generate_key()

    expires_at = None
    expires_days = data.get("expires_days")
    if isinstance(expires_days, int) and expires_days > 0:
        expires_at = datetime.utcnow() + timedelta(days=expires_days)

    api_key = APIKey(
        user_id=user.id,
        name=name,
        key_hash=key_hash,
        key_prefix=key_prefix,
        expires_at=expires_at,
    )
    db.session.add(api_key)
    db.session.commit()

    return jsonify({
        "key": _api_key_to_dict(api_key, include_key=full_key),
        "message": "API key created successfully. Save this key securely - it won't be shown again."
    }), 201


@api_v1_bp.delete("/auth/keys/<int:key_id>")
@require_api_auth()
def delete_api_key(key_id: int):
    """Delete an API key.

    Returns:
        204: Key deleted successfully
        404: Key not found
    """
    user = g.api_user
    api_key = APIKey.query.filter_by(id=key_id, user_id=user.id).first()
    if not api_key:
        return jsonify({"error": "API key not found"}), 404

    db.session.delete(api_key)
    db.session.commit()
    return ("", 204)
