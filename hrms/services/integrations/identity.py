"""Identity mapping between external platform accounts and employees.

Sync only reads this store. Mappings are created out-of-band by an
administrator pairing discovered external users with employees.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_

from ...extensions import db
from ...models import Employee, IntegrationUserMapping, WorkItem


class IdentityMappingError(Exception):
    """Raised when a mapping payload is invalid."""


def normalize_email(value: Optional[str]) -> Optional[str]:
    text = (value or "").strip().lower()
    return text or None


def find_mapping(connection_id: int, external_email: Optional[str]) -> Optional[int]:
    """Return the employee id mapped to ``external_email`` for a connection."""
    email = normalize_email(external_email)
    if email is None:
        return None
    mapping = IntegrationUserMapping.query.filter_by(
        connection_id=connection_id, external_email=email
    ).first()
    return mapping.employee_id if mapping else None


class IdentityResolver:
    """Preloaded ``email -> employee_id`` lookup for one connection."""

    def __init__(self, connection_id: int) -> None:
        self.connection_id = connection_id
        self._mappings: List[IntegrationUserMapping] = (
            IntegrationUserMapping.query.filter_by(connection_id=connection_id)
            .order_by(IntegrationUserMapping.id)
            .all()
        )
        self._by_email: Dict[str, int] = {
            mapping.external_email: mapping.employee_id
            for mapping in self._mappings
            if mapping.employee_id is not None and mapping.external_email
        }

    def __call__(self, external_email: Optional[str]) -> Optional[int]:
        email = normalize_email(external_email)
        return self._by_email.get(email) if email else None

    def mapped_users(self) -> List[IntegrationUserMapping]:
        """Mappings that carry both an employee and an external email."""
        return [
            mapping
            for mapping in self._mappings
            if mapping.employee_id is not None and mapping.external_email
        ]


def discover_external_users(connection_id: int) -> List[Dict[str, Any]]:
    """List distinct external assignees seen in synced work items.

    Each entry is merged with its existing mapping (if any) so an admin UI can
    show who is mapped and who is not.
    """
    existing = {
        mapping.external_email: mapping
        for mapping in IntegrationUserMapping.query.filter_by(
            connection_id=connection_id
        ).all()
    }

    rows = (
        WorkItem.query.filter(
            WorkItem.connection_id == connection_id,
            WorkItem.assigned_to.isnot(None),
        )
        .order_by(WorkItem.assigned_to_name, WorkItem.id)
        .all()
    )

    users: Dict[str, Dict[str, Any]] = {}
    for item in rows:
        if item.assigned_to in users:
            continue
        email = normalize_email(item.assigned_to_email)
        mapping = existing.get(email) if email else None
        users[item.assigned_to] = {
            "id": mapping.id if mapping else None,
            "external_id": item.assigned_to,
            "external_username": item.assigned_to_name,
            "external_email": email,
            "employee_id": mapping.employee_id if mapping else None,
        }

    # Mappings for people who currently hold no work items still matter for
    # commit sync.
    listed_emails = {user["external_email"] for user in users.values()}
    for email, mapping in existing.items():
        if email not in listed_emails:
            users[mapping.external_id or email] = {
                "id": mapping.id,
                "external_id": mapping.external_id,
                "external_username": mapping.external_username,
                "external_email": email,
                "employee_id": mapping.employee_id,
            }
    return list(users.values())


def replace_mappings(
    connection_id: int, mappings: Iterable[Dict[str, Any]]
) -> List[IntegrationUserMapping]:
    """Replace a connection's mappings and back-fill work-item assignees.

    Entries without an ``employee_id`` are dropped. Existing work items whose
    raw assignee matches a new mapping get ``assigned_to_id`` set.
    """
    cleaned: Dict[str, Dict[str, Any]] = {}
    for entry in mappings:
        if not isinstance(entry, dict):
            raise IdentityMappingError("Each mapping must be an object.")
        employee_id = entry.get("employee_id")
        if not employee_id:
            continue
        email = normalize_email(entry.get("external_email"))
        if email is None:
            raise IdentityMappingError(
                "Mapped identities require an external email."
            )
        employee = db.session.get(Employee, int(employee_id))
        if employee is None:
            raise IdentityMappingError(f"Employee {employee_id} not found.")
        cleaned[email] = {
            "external_id": entry.get("external_id"),
            "external_username": entry.get("external_username"),
            "external_email": email,
            "employee_id": employee.id,
            "employee_email": entry.get("employee_email") or employee.email,
        }

    IntegrationUserMapping.query.filter_by(connection_id=connection_id).delete(
        synchronize_session=False
    )
    created: List[IntegrationUserMapping] = []
    for values in cleaned.values():
        mapping = IntegrationUserMapping(connection_id=connection_id, **values)
        db.session.add(mapping)
        created.append(mapping)

        conditions = [WorkItem.assigned_to_email == values["external_email"]]
        if values["external_id"]:
            conditions.append(WorkItem.assigned_to == values["external_id"])
        WorkItem.query.filter(
            WorkItem.connection_id == connection_id, or_(*conditions)
        ).update(
            {WorkItem.assigned_to_id: values["employee_id"]},
            synchronize_session=False,
        )

    db.session.flush()
    return created
