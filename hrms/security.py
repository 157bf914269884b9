"""Password hashing and the Flask-Login user adapter."""

from __future__ import annotations

from typing import Iterable

from flask_login import UserMixin  # type: ignore
from werkzeug.security import check_password_hash, generate_password_hash

ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_EMPLOYEE = "EMPLOYEE"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_EMPLOYEE)


def hash_password(password: str) -> str:
    return generate_password_hash(password, method="pbkdf2:sha256")


def verify_password(password_hash: str, candidate: str) -> bool:
    return check_password_hash(password_hash, candidate)


class LoginUser(UserMixin):
    """Wraps a ``User`` row for Flask-Login sessions."""

    def __init__(self, db_user) -> None:
        self._db_user = db_user

    def get_id(self) -> str:
        return str(self._db_user.id)

    @property
    def model(self):
        return self._db_user

    def has_role(self, roles: Iterable[str]) -> bool:
        return self._db_user.role in set(roles)

    def __getattr__(self, item):
        return getattr(self._db_user, item)
