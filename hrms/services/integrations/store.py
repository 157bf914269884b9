"""Idempotent writes into the unified work-item, commit and page tables.

Every upsert is keyed by the natural uniqueness constraint of its table and
namespaced by ``connection_id``; callers own the transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Type, TypeVar

from ...extensions import db
from ...models import ConfluencePage, DeveloperCommit, WorkItem
from .utils import utcnow

ModelT = TypeVar("ModelT", WorkItem, DeveloperCommit, ConfluencePage)


def _upsert(
    model: Type[ModelT],
    connection_id: int,
    key_field: str,
    fields: Dict[str, Any],
    now: Optional[datetime],
) -> ModelT:
    key = fields[key_field]
    row = model.query.filter_by(
        connection_id=connection_id, **{key_field: key}
    ).one_or_none()
    if row is None:
        row = model(connection_id=connection_id, **{key_field: key})
        db.session.add(row)

    for name, value in fields.items():
        if name != key_field:
            setattr(row, name, value)
    row.last_synced_at = now or utcnow()
    if hasattr(row, "is_stale"):
        row.is_stale = False
        row.stale_since = None
    return row


def upsert_work_item(
    connection_id: int, fields: Dict[str, Any], now: Optional[datetime] = None
) -> WorkItem:
    return _upsert(WorkItem, connection_id, "external_id", fields, now)


def upsert_commit(
    connection_id: int, fields: Dict[str, Any], now: Optional[datetime] = None
) -> DeveloperCommit:
    return _upsert(DeveloperCommit, connection_id, "commit_hash", fields, now)


def upsert_confluence_page(
    connection_id: int, fields: Dict[str, Any], now: Optional[datetime] = None
) -> ConfluencePage:
    return _upsert(ConfluencePage, connection_id, "external_id", fields, now)


def mark_stale_work_items(
    connection_id: int,
    project_name: str,
    seen_ids: Iterable[str],
    now: Optional[datetime] = None,
) -> int:
    """Flag items of one project that a complete pass did not return."""
    seen = set(seen_ids)
    stamp = now or utcnow()
    count = 0
    rows = WorkItem.query.filter_by(
        connection_id=connection_id, project_name=project_name, is_stale=False
    ).all()
    for row in rows:
        if row.external_id not in seen:
            row.is_stale = True
            row.stale_since = stamp
            count += 1
    return count


def mark_stale_pages(
    connection_id: int,
    space_id: str,
    seen_ids: Iterable[str],
    now: Optional[datetime] = None,
) -> int:
    """Flag pages of one space that a complete pass did not return."""
    seen = set(seen_ids)
    stamp = now or utcnow()
    count = 0
    rows = ConfluencePage.query.filter_by(
        connection_id=connection_id, space_id=space_id, is_stale=False
    ).all()
    for row in rows:
        if row.external_id not in seen:
            row.is_stale = True
            row.stale_since = stamp
            count += 1
    return count
