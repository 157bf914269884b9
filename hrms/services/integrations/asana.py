"""Asana REST API (v1.0) client."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

import requests

from .client import BaseAPIClient

ASANA_API_URL = "https://app.asana.com/api/1.0"
PAGE_LIMIT = 100

TASK_FIELDS = ",".join(
    [
        "name",
        "notes",
        "assignee",
        "assignee.name",
        "assignee.email",
        "completed",
        "completed_at",
        "created_at",
        "modified_at",
        "due_on",
        "due_at",
        "start_on",
        "projects.name",
        "memberships.project.name",
        "memberships.section.name",
        "tags.name",
        "tags.color",
        "permalink_url",
        "workspace.name",
        "custom_fields",
    ]
)
PROJECT_FIELDS = (
    "name,color,archived,created_at,modified_at,owner,workspace,permalink_url"
)


def _asana_timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return f"{value.isoformat()}T00:00:00Z"
    return str(value)


class AsanaClient(BaseAPIClient):
    platform = "Asana"

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = ASANA_API_URL,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if not access_token:
            raise ValueError("Asana personal access token must be provided.")
        super().__init__(base_url, session=session, timeout=timeout)
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})

    def _extract_error_message(self, response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            errors = data.get("errors") or []
            if errors and isinstance(errors[0], dict) and errors[0].get("message"):
                return str(errors[0]["message"])
        return response.reason or super()._extract_error_message(response)

    def _data(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        body = self._get(path, params) or {}
        return body.get("data")

    def _paginate(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["limit"] = PAGE_LIMIT
        records: List[Dict[str, Any]] = []
        while True:
            body = self._get(path, query) or {}
            records.extend(body.get("data") or [])
            next_page = body.get("next_page") or {}
            offset = next_page.get("offset")
            if not offset:
                return records
            query["offset"] = offset

    def _probe(self) -> None:
        self.get_current_user()

    def get_current_user(self) -> Dict[str, Any]:
        return self._data("/users/me") or {}

    def get_workspaces(self) -> List[Dict[str, Any]]:
        return self._paginate("/workspaces")

    def get_projects(
        self, workspace_gid: str, *, archived: Optional[bool] = None
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "workspace": workspace_gid,
            "opt_fields": PROJECT_FIELDS,
        }
        if archived is not None:
            params["archived"] = "true" if archived else "false"
        return self._paginate("/projects", params)

    def get_tasks(
        self,
        project_gid: str,
        *,
        assignee: Optional[str] = None,
        completed_since: Any = None,
        modified_since: Any = None,
    ) -> List[Dict[str, Any]]:
        return self._paginate(
            "/tasks",
            {
                "project": project_gid,
                "opt_fields": TASK_FIELDS,
                "assignee": assignee,
                "completed_since": _asana_timestamp(completed_since),
                "modified_since": _asana_timestamp(modified_since),
            },
        )

    def get_user_tasks(
        self,
        workspace_gid: str,
        assignee_gid: str = "me",
        *,
        completed_since: Any = None,
    ) -> List[Dict[str, Any]]:
        return self._paginate(
            "/tasks",
            {
                "workspace": workspace_gid,
                "assignee": assignee_gid,
                "opt_fields": TASK_FIELDS,
                "completed_since": _asana_timestamp(completed_since),
            },
        )

    def get_users(self, workspace_gid: str) -> List[Dict[str, Any]]:
        return self._paginate(
            "/users", {"workspace": workspace_gid, "opt_fields": "name,email,photo"}
        )

    def get_sections(self, project_gid: str) -> List[Dict[str, Any]]:
        return self._paginate(f"/projects/{project_gid}/sections")

    def get_task(self, task_gid: str) -> Dict[str, Any]:
        return self._data(f"/tasks/{task_gid}", {"opt_fields": TASK_FIELDS}) or {}

    def search_tasks(
        self,
        workspace_gid: str,
        *,
        text: Optional[str] = None,
        assignee: Optional[str] = None,
        projects: Optional[List[str]] = None,
        completed: Optional[bool] = None,
        modified_since: Any = None,
    ) -> List[Dict[str, Any]]:
        """Workspace task search (premium workspaces only; not paginated)."""
        params: Dict[str, Any] = {"opt_fields": TASK_FIELDS}
        if text:
            params["text"] = text
        if assignee:
            params["assignee.any"] = assignee
        if projects:
            params["projects.any"] = ",".join(projects)
        if completed is not None:
            params["completed"] = "true" if completed else "false"
        if modified_since is not None:
            params["modified_since"] = _asana_timestamp(modified_since)
        return self._data(f"/workspaces/{workspace_gid}/tasks/search", params) or []


def get_task_status(task: Dict[str, Any], project_gid: Optional[str] = None) -> str:
    """Infer a status from the board column (section) the task sits in.

    Asana has no first-class status field. The membership for ``project_gid``
    wins when given; otherwise the first membership with a section is used.
    """
    memberships = task.get("memberships") or []
    if project_gid:
        for membership in memberships:
            project = membership.get("project") or {}
            section = membership.get("section") or {}
            if project.get("gid") == project_gid and section.get("name"):
                return section["name"]
    for membership in memberships:
        section = membership.get("section") or {}
        if section.get("name"):
            return section["name"]
    return "Completed" if task.get("completed") else "In Progress"


def get_task_priority(task: Dict[str, Any]) -> Optional[str]:
    for custom_field in task.get("custom_fields") or []:
        name = (custom_field.get("name") or "").lower()
        if "priority" not in name:
            continue
        enum_value = custom_field.get("enum_value") or {}
        return enum_value.get("name") or custom_field.get("text_value") or None
    return None
