"""Azure DevOps REST API (v7.0) client.

Work items are fetched with the two-step protocol the platform imposes: a WIQL
query returns ids only, then the full records are batch-fetched by id.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote, urlsplit

import requests
from requests.auth import HTTPBasicAuth

from .client import BaseAPIClient
from .utils import normalize_base_url

API_VERSION = "7.0"
WORK_ITEM_BATCH_SIZE = 200
COMMIT_PAGE_SIZE = 100
PROJECT_PAGE_SIZE = 100
CONTINUATION_HEADER = "x-ms-continuationtoken"
DEFAULT_LIST_TOP = 50

_WORK_ITEM_REF = re.compile(r"#(\d+)")


def extract_work_item_ids(message: Optional[str]) -> List[str]:
    """Return ``#123`` style work-item references in order of appearance."""
    if not message:
        return []
    return _WORK_ITEM_REF.findall(message)


def _wiql_literal(value: Any) -> str:
    text = str(value)
    return "'" + text.replace("'", "''") + "'"


def _wiql_list(values: Iterable[Any]) -> str:
    return ", ".join(_wiql_literal(value) for value in values)


def _wiql_date(value: Any) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError as exc:
        raise ValueError(f"Invalid start date for WIQL query: {value!r}") from exc


def build_wiql(
    project_name: str,
    *,
    types: Optional[Sequence[str]] = None,
    assigned_to: Optional[str] = None,
    states: Optional[Sequence[str]] = None,
    start_date: Any = None,
) -> str:
    """Build a WIQL query with every interpolated value escaped."""
    clauses = [f"[System.TeamProject] = {_wiql_literal(project_name)}"]
    if types:
        clauses.append(f"[System.WorkItemType] IN ({_wiql_list(types)})")
    if assigned_to:
        clauses.append(f"[System.AssignedTo] = {_wiql_literal(assigned_to)}")
    if states:
        clauses.append(f"[System.State] IN ({_wiql_list(states)})")
    if start_date:
        clauses.append(f"[System.CreatedDate] >= '{_wiql_date(start_date)}'")
    return (
        "SELECT [System.Id] FROM WorkItems WHERE "
        + " AND ".join(clauses)
        + " ORDER BY [System.ChangedDate] DESC"
    )


def _isoformat(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


class AzureDevOpsClient(BaseAPIClient):
    platform = "Azure DevOps"

    def __init__(
        self,
        organization_url: str,
        access_token: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if not access_token:
            raise ValueError("Azure DevOps personal access token must be provided.")
        super().__init__(
            normalize_base_url(organization_url), session=session, timeout=timeout
        )
        # PATs go in the password slot with an empty username.
        self.session.auth = HTTPBasicAuth("", access_token)
        self.session.headers.update({"Content-Type": "application/json"})

    @property
    def organization_name(self) -> str:
        return urlsplit(self.base_url).path.rstrip("/").rsplit("/", 1)[-1]

    def _api(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> Any:
        query = {"api-version": API_VERSION}
        if params:
            query.update({k: v for k, v in params.items() if v is not None})
        return self._request(method, path, params=query, json_body=json_body)

    def _values(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        data = self._api("GET", path, params) or {}
        return list(data.get("value") or [])

    @staticmethod
    def _project_path(project_name: str) -> str:
        return "/" + quote(project_name, safe="")

    def _probe(self) -> None:
        self.get_projects()

    def get_projects(self) -> List[Dict[str, Any]]:
        """List every project, following ``x-ms-continuationtoken`` pages."""
        path = "/_apis/projects"
        params: Dict[str, Any] = {"api-version": API_VERSION, "$top": PROJECT_PAGE_SIZE}
        projects: List[Dict[str, Any]] = []
        while True:
            response = self._send("GET", path, params=dict(params))
            data = self._decode(response, "GET", path) or {}
            projects.extend(data.get("value") or [])
            token = response.headers.get(CONTINUATION_HEADER)
            if not token:
                return projects
            params["continuationToken"] = token

    def get_work_items(
        self,
        project_name: str,
        *,
        types: Optional[Sequence[str]] = None,
        assigned_to: Optional[str] = None,
        states: Optional[Sequence[str]] = None,
        start_date: Any = None,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        wiql = build_wiql(
            project_name,
            types=types,
            assigned_to=assigned_to,
            states=states,
            start_date=start_date,
        )
        result = self._api(
            "POST",
            f"{self._project_path(project_name)}/_apis/wit/wiql",
            json_body={"query": wiql},
        ) or {}
        ids = [ref["id"] for ref in result.get("workItems") or [] if "id" in ref]
        if top:
            ids = ids[:top]

        items: List[Dict[str, Any]] = []
        for offset in range(0, len(ids), WORK_ITEM_BATCH_SIZE):
            chunk = ids[offset : offset + WORK_ITEM_BATCH_SIZE]
            items.extend(
                self._values(
                    "/_apis/wit/workitems",
                    {"ids": ",".join(str(i) for i in chunk), "$expand": "all"},
                )
            )
        return items

    def get_repositories(self, project_name: str) -> List[Dict[str, Any]]:
        return self._values(
            f"{self._project_path(project_name)}/_apis/git/repositories"
        )

    def get_commits(
        self,
        project_name: str,
        repository_id: str,
        *,
        author: Optional[str] = None,
        from_date: Any = None,
        to_date: Any = None,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List commits; without ``top`` every page is fetched via ``$skip``."""
        path = (
            f"{self._project_path(project_name)}/_apis/git/repositories/"
            f"{quote(str(repository_id), safe='')}/commits"
        )
        params: Dict[str, Any] = {
            "searchCriteria.author": author,
            "searchCriteria.fromDate": _isoformat(from_date) if from_date else None,
            "searchCriteria.toDate": _isoformat(to_date) if to_date else None,
        }
        if top:
            params["searchCriteria.$top"] = top
            return self._values(path, params)

        commits: List[Dict[str, Any]] = []
        skip = 0
        while True:
            params["searchCriteria.$top"] = COMMIT_PAGE_SIZE
            params["searchCriteria.$skip"] = skip
            page = self._values(path, params)
            commits.extend(page)
            if len(page) < COMMIT_PAGE_SIZE:
                return commits
            skip += COMMIT_PAGE_SIZE

    def get_users(self) -> List[Dict[str, Any]]:
        """List organization users from the Graph API (vssps host)."""
        return self._values(
            f"https://vssps.dev.azure.com/{self.organization_name}/_apis/graph/users"
        )

    def get_pipelines(self, project_name: str) -> List[Dict[str, Any]]:
        return self._values(f"{self._project_path(project_name)}/_apis/pipelines")

    def get_builds(
        self,
        project_name: str,
        *,
        definition_id: Optional[int] = None,
        branch_name: Optional[str] = None,
        status: Optional[str] = None,
        result: Optional[str] = None,
        top: int = DEFAULT_LIST_TOP,
    ) -> List[Dict[str, Any]]:
        return self._values(
            f"{self._project_path(project_name)}/_apis/build/builds",
            {
                "definitions": definition_id,
                "branchName": branch_name,
                "statusFilter": status,
                "resultFilter": result,
                "$top": top,
            },
        )

    def get_releases(
        self,
        project_name: str,
        *,
        definition_id: Optional[int] = None,
        top: int = DEFAULT_LIST_TOP,
    ) -> List[Dict[str, Any]]:
        """List releases from the release-management (vsrm) host."""
        return self._values(
            f"https://vsrm.dev.azure.com/{self.organization_name}"
            f"{self._project_path(project_name)}/_apis/release/releases",
            {"definitionId": definition_id, "$top": top, "$expand": "environments"},
        )

    def get_pull_requests(
        self,
        project_name: str,
        repository_id: str,
        *,
        status: Optional[str] = None,
        creator_id: Optional[str] = None,
        top: int = DEFAULT_LIST_TOP,
    ) -> List[Dict[str, Any]]:
        return self._values(
            f"{self._project_path(project_name)}/_apis/git/repositories/"
            f"{quote(str(repository_id), safe='')}/pullrequests",
            {
                "searchCriteria.status": status,
                "searchCriteria.creatorId": creator_id,
                "$top": top,
            },
        )
