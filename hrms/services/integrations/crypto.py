"""At-rest encryption for integration access tokens (Fernet)."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app

from . import TokenEncryptionError


def _get_encryption_key() -> bytes:
    """Return the Fernet key from ``INTEGRATION_TOKEN_KEY``.

    When the key is not configured a deterministic key is derived from
    ``SECRET_KEY`` so stored tokens survive restarts in development.
    """
    key_str = current_app.config.get("INTEGRATION_TOKEN_KEY")
    if key_str:
        return key_str.encode("utf-8")

    current_app.logger.warning(
        "INTEGRATION_TOKEN_KEY not set, deriving token key from SECRET_KEY. "
        "Set INTEGRATION_TOKEN_KEY in .env for production!"
    )
    secret = str(current_app.config.get("SECRET_KEY") or "")
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_token(token: str) -> bytes:
    if not token:
        raise TokenEncryptionError("Access token must not be empty.")
    try:
        return Fernet(_get_encryption_key()).encrypt(token.encode("utf-8"))
    except ValueError as exc:
        raise TokenEncryptionError(f"Failed to encrypt access token: {exc}") from exc


def decrypt_token(encrypted: bytes) -> str:
    try:
        return Fernet(_get_encryption_key()).decrypt(encrypted).decode("utf-8")
    except (InvalidToken, ValueError) as exc:
        raise TokenEncryptionError(
            "Failed to decrypt access token; was INTEGRATION_TOKEN_KEY rotated?"
        ) from exc


def mask_token(token: str | None) -> str:
    return "***" if token else ""
