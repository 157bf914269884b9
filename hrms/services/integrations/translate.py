"""Pure translation of native platform records into unified-store fields.

Translators never touch the database. Identity resolution is passed in as a
callable so they can be exercised in isolation.
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from ...models import PLATFORM_ASANA, PLATFORM_AZURE_DEVOPS
from . import TranslationError
from .asana import get_task_priority, get_task_status
from .azure_devops import extract_work_item_ids
from .utils import parse_datetime

Resolver = Callable[[Optional[str]], Optional[int]]

_TITLE_MAX_LENGTH = 1024


def _no_mapping(_email: Optional[str]) -> Optional[int]:
    return None


def _require(record: Dict[str, Any], key: str, kind: str) -> Any:
    value = record.get(key)
    if value is None or value == "":
        raise TranslationError(f"{kind} is missing required field '{key}'.")
    return value


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _split_tags(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(";") if tag.strip()]
    tags: List[str] = []
    for entry in value:
        name = entry.get("name") if isinstance(entry, dict) else entry
        if name:
            tags.append(str(name))
    return tags


def _normalize_email(value: Any) -> Optional[str]:
    text = (str(value).strip() if value else "").lower()
    return text or None


def _translator(kind: str):
    """Report malformed nested shapes (``null`` or scalars where objects are
    expected) as :class:`TranslationError` so the caller skips the record."""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise TranslationError(f"Malformed {kind}: {exc}") from exc

        return wrapper

    return decorator


@_translator("Azure DevOps work item")
def translate_azure_work_item(
    record: Dict[str, Any],
    project_name: str,
    resolve: Resolver = _no_mapping,
    *,
    project_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not isinstance(record, dict):
        raise TranslationError("Azure DevOps work item is not an object.")
    external_id = _require(record, "id", "Azure DevOps work item")
    fields = record.get("fields")
    if not isinstance(fields, dict):
        raise TranslationError(f"Work item {external_id} has no fields.")

    assignee = fields.get("System.AssignedTo") or {}
    if not isinstance(assignee, dict):
        assignee = {"displayName": str(assignee)}
    assignee_email = _normalize_email(assignee.get("uniqueName"))
    links = record.get("_links") or {}
    html_link = (links.get("html") or {}).get("href")
    priority = fields.get("Microsoft.VSTS.Common.Priority")

    return {
        "external_id": str(external_id),
        "external_url": html_link or record.get("url"),
        "platform": PLATFORM_AZURE_DEVOPS,
        "title": str(fields.get("System.Title") or f"Work item {external_id}")[
            :_TITLE_MAX_LENGTH
        ],
        "description": fields.get("System.Description"),
        "work_item_type": fields.get("System.WorkItemType"),
        "status": fields.get("System.State"),
        "priority": str(priority) if priority is not None else None,
        "assigned_to_id": resolve(assignee_email) if assignee_email else None,
        "assigned_to": assignee.get("id") or assignee.get("uniqueName"),
        "assigned_to_name": assignee.get("displayName"),
        "assigned_to_email": assignee_email,
        "created_date": parse_datetime(fields.get("System.CreatedDate")),
        "modified_date": parse_datetime(fields.get("System.ChangedDate")),
        "completed_date": parse_datetime(
            fields.get("Microsoft.VSTS.Common.ClosedDate")
        ),
        "due_date": parse_datetime(fields.get("Microsoft.VSTS.Scheduling.DueDate")),
        "project_name": project_name,
        "project_external_id": project_id,
        "area_path": fields.get("System.AreaPath"),
        "iteration_path": fields.get("System.IterationPath"),
        "story_points": _as_float(fields.get("Microsoft.VSTS.Scheduling.StoryPoints")),
        "tags": _split_tags(fields.get("System.Tags")),
        "raw_payload": fields,
    }


@_translator("Azure DevOps commit")
def translate_azure_commit(
    record: Dict[str, Any], employee_id: int, repository_name: str
) -> Dict[str, Any]:
    if not isinstance(record, dict):
        raise TranslationError("Azure DevOps commit is not an object.")
    commit_hash = _require(record, "commitId", "Azure DevOps commit")
    author = record.get("author") or {}
    committer = record.get("committer") or {}
    counts = record.get("changeCounts") or {}
    added = _as_int(counts.get("Add"))
    edited = _as_int(counts.get("Edit"))
    deleted = _as_int(counts.get("Delete"))
    message = record.get("comment")
    author_date = parse_datetime(author.get("date"))

    return {
        "commit_hash": str(commit_hash),
        "employee_id": employee_id,
        "message": message,
        "url": record.get("remoteUrl") or record.get("url"),
        "repository_name": repository_name,
        "files_changed": added + edited + deleted,
        "lines_added": added,
        "lines_deleted": deleted,
        "commit_date": parse_datetime(committer.get("date")) or author_date,
        "author_date": author_date,
        "author_name": author.get("name"),
        "author_email": author.get("email"),
        "committer_name": committer.get("name"),
        "committer_email": committer.get("email"),
        "linked_work_items": extract_work_item_ids(message),
    }


@_translator("Asana task")
def translate_asana_task(
    task: Dict[str, Any],
    project: Dict[str, Any],
    resolve: Resolver = _no_mapping,
) -> Dict[str, Any]:
    if not isinstance(task, dict):
        raise TranslationError("Asana task is not an object.")
    gid = _require(task, "gid", "Asana task")
    project_gid = project.get("gid")

    assignee = task.get("assignee") or {}
    assignee_email = _normalize_email(assignee.get("email"))
    section: Dict[str, Any] = {}
    for membership in task.get("memberships") or []:
        if (membership.get("project") or {}).get("gid") == project_gid:
            section = membership.get("section") or {}
            break
    else:
        memberships = task.get("memberships") or []
        if memberships:
            section = memberships[0].get("section") or {}

    return {
        "external_id": str(gid),
        "external_url": task.get("permalink_url"),
        "platform": PLATFORM_ASANA,
        "title": str(task.get("name") or f"Task {gid}")[:_TITLE_MAX_LENGTH],
        "description": task.get("notes"),
        "work_item_type": "Task",
        "status": get_task_status(task, project_gid),
        "priority": get_task_priority(task),
        "assigned_to_id": resolve(assignee_email) if assignee_email else None,
        "assigned_to": assignee.get("gid"),
        "assigned_to_name": assignee.get("name"),
        "assigned_to_email": assignee_email,
        "created_date": parse_datetime(task.get("created_at")),
        "modified_date": parse_datetime(task.get("modified_at")),
        "completed_date": parse_datetime(task.get("completed_at")),
        "due_date": parse_datetime(task.get("due_at") or task.get("due_on")),
        "project_name": project.get("name"),
        "project_external_id": project_gid,
        "section_id": section.get("gid"),
        "section_name": section.get("name"),
        "tags": _split_tags(task.get("tags")),
        "raw_payload": task,
    }


@_translator("Confluence page")
def translate_confluence_page(
    page: Dict[str, Any],
    space: Dict[str, Any],
    parent_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Translate a page; ``parent_id`` from the walked tree wins over the record's."""
    if not isinstance(page, dict):
        raise TranslationError("Confluence page is not an object.")
    external_id = _require(page, "id", "Confluence page")
    version = page.get("version") or {}
    body = (page.get("body") or {}).get("storage") or {}
    resolved_parent = parent_id or page.get("parentId")
    raw = {key: value for key, value in page.items() if key != "body"}

    return {
        "external_id": str(external_id),
        "page_type": page.get("type") or "page",
        "status": page.get("status"),
        "title": str(page.get("title") or f"Page {external_id}")[:_TITLE_MAX_LENGTH],
        "content": body.get("value"),
        "space_id": str(space.get("id")) if space.get("id") is not None else None,
        "space_key": space.get("key"),
        "space_name": space.get("name"),
        "parent_id": str(resolved_parent) if resolved_parent else None,
        "position": page.get("position"),
        "author_id": page.get("authorId") or version.get("authorId"),
        "author_name": page.get("authorName"),
        "owner_id": page.get("ownerId"),
        "version": version.get("number"),
        "version_message": version.get("message") or None,
        "created_date": parse_datetime(page.get("createdAt")),
        "updated_date": parse_datetime(version.get("createdAt")),
        "raw_payload": raw,
    }
