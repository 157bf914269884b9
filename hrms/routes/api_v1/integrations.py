"""API v1 integration endpoints: connections, sync, identity mappings and
the unified work data produced by sync."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional

from flask import current_app, g, jsonify, request

from ...extensions import db, limiter
from ...models import (
    PLATFORM_AZURE_DEVOPS,
    PLATFORM_CONFLUENCE,
    ConfluencePage,
    DeveloperCommit,
    IntegrationConnection,
    SyncHistory,
    WorkItem,
)
from ...security import ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_MANAGER
from ...services.api_auth import require_api_auth
from ...services.integrations import (
    IntegrationConfigError,
    IntegrationError,
    SyncInProgressError,
    SyncOptions,
)
from ...services.integrations import connections as connection_service
from ...services.integrations.confluence import PageNode, build_page_hierarchy
from ...services.integrations.identity import (
    IdentityMappingError,
    discover_external_users,
    replace_mappings,
)
from ...services.integrations.sync import IntegrationSyncService
from ...services.integrations.utils import parse_date
from ...services.sync_scheduler import get_scheduler_status
from . import api_v1_bp

ADMIN_ONLY = [ROLE_ADMIN]
ADMIN_OR_MANAGER = [ROLE_ADMIN, ROLE_MANAGER]

WORK_ITEM_LIMIT = 100
LINKED_COMMIT_LIMIT = 5


def _get_connection(connection_id: Any) -> Optional[IntegrationConnection]:
    try:
        return db.session.get(IntegrationConnection, int(connection_id))
    except (TypeError, ValueError):
        return None


def _json_body() -> Optional[Dict[str, Any]]:
    """Return the JSON object body, ``{}`` when absent, or None for non-objects."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    return data if isinstance(data, dict) else None


def _flag(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "no", "off"}
    return bool(value)


# Connections


@api_v1_bp.get("/integrations/connections")
@require_api_auth(roles=ADMIN_OR_MANAGER)
def list_connections():
    """List integration connections.

    Returns:
        200: Connections with masked tokens and synced object counts
    """
    connections = IntegrationConnection.query.order_by(
        IntegrationConnection.created_at.desc()
    ).all()
    return jsonify({
        "connections": [connection_service.connection_to_dict(c) for c in connections],
        "count": len(connections),
    })


@api_v1_bp.post("/integrations/connections")
@require_api_auth(roles=ADMIN_ONLY)
def create_connection():
    """Create a connection after testing its credentials.

    Request body:
        platform (str): AZURE_DEVOPS, ASANA or CONFLUENCE
        name (str): Display name
        access_token (str): Personal access token / API token
        organization_url (str): Azure DevOps organization or Confluence site URL
        account_email (str): Confluence account email
        workspace_id (str, optional): Asana workspace gid (first one if omitted)
        confluence_space_key (str, optional): Restrict Confluence sync to a space
        sync_frequency (int, optional): Minutes between scheduled syncs

    Returns:
        201: Created connection
        400: Invalid request or failed connection test
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        connection = connection_service.create_connection(
            platform=data.get("platform") or "",
            name=data.get("name") or "",
            access_token=data.get("access_token") or "",
            organization_url=data.get("organization_url"),
            organization_name=data.get("organization_name"),
            workspace_id=data.get("workspace_id"),
            confluence_space_key=data.get("confluence_space_key"),
            account_email=data.get("account_email"),
            sync_frequency=data.get("sync_frequency"),
            created_by_id=g.api_user.id,
        )
    except IntegrationError as exc:
        db.session.rollback()
        return jsonify({"error": str(exc)}), 400

    db.session.commit()
    current_app.logger.info(
        "Created %s connection %s", connection.platform, connection.id
    )
    return jsonify({"connection": connection_service.connection_to_dict(connection)}), 201


@api_v1_bp.post("/integrations/connections/test")
@require_api_auth(roles=ADMIN_ONLY)
def test_connection():
    """Test credentials without saving them.

    Returns:
        200: {"success": bool, "message": str}
        400: Missing or invalid fields
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        ok, message = connection_service.test_connection_settings(
            data.get("platform") or "",
            data.get("access_token") or "",
            organization_url=data.get("organization_url"),
            account_email=data.get("account_email"),
            workspace_id=data.get("workspace_id"),
            confluence_space_key=data.get("confluence_space_key"),
        )
    except IntegrationConfigError as exc:
        return jsonify({"success": False, "error": str(exc)}), 400
    return jsonify({"success": ok, "message": message})


@api_v1_bp.patch("/integrations/connections/<int:connection_id>")
@require_api_auth(roles=ADMIN_ONLY)
def update_connection(connection_id: int):
    """Update a connection.

    Request body (all optional):
        name, sync_enabled, is_active, sync_frequency, confluence_space_key,
        account_email, workspace_id, access_token

    Returns:
        200: Updated connection
        400: Invalid field
        404: Connection not found
    """
    connection = _get_connection(connection_id)
    if connection is None:
        return jsonify({"error": "Connection not found"}), 404

    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        connection_service.update_connection(connection, **data)
    except IntegrationError as exc:
        db.session.rollback()
        return jsonify({"error": str(exc)}), 400
    db.session.commit()
    return jsonify({"connection": connection_service.connection_to_dict(connection)})


@api_v1_bp.delete("/integrations/connections/<int:connection_id>")
@require_api_auth(roles=ADMIN_ONLY)
def delete_connection(connection_id: int):
    """Delete a connection together with its mappings and synced data.

    Returns:
        204: Deleted
        404: Connection not found
    """
    if not connection_service.delete_connection(connection_id):
        return jsonify({"error": "Connection not found"}), 404
    db.session.commit()
    return ("", 204)


# Sync


@api_v1_bp.post("/integrations/sync")
@limiter.limit(lambda: current_app.config.get("SYNC_RATE_LIMIT", "6 per minute"))
@require_api_auth(roles=ADMIN_OR_MANAGER)
def trigger_sync():
    """Run a sync for one connection and return its result.

    Request body:
        connection_id (int): Connection to sync (required)
        sync_work_items (bool, optional): Default true
        sync_commits (bool, optional): Default true
        start_date (str, optional): YYYY-MM-DD lower bound
        project_ids (list[str], optional): Restrict to these projects or spaces

    Returns:
        200: Sync result
        400: Invalid request
        404: Connection not found
        409: A sync for this connection is already running
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body must be a JSON object"}), 400
    connection_id = data.get("connection_id")
    if not connection_id:
        return jsonify({"error": "Connection ID is required"}), 400
    connection = _get_connection(connection_id)
    if connection is None:
        return jsonify({"error": "Connection not found"}), 404

    try:
        start_date = parse_date(data.get("start_date"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    project_ids = data.get("project_ids")
    if project_ids is not None and not isinstance(project_ids, list):
        return jsonify({"error": "project_ids must be a list"}), 400

    options = SyncOptions(
        sync_work_items=_flag(data.get("sync_work_items")),
        sync_commits=_flag(data.get("sync_commits")),
        start_date=start_date,
        project_ids=[str(p) for p in project_ids] if project_ids else None,
    )
    try:
        result = IntegrationSyncService().sync_connection(
            connection.id, options, raise_if_running=True
        )
    except SyncInProgressError as exc:
        return jsonify({"error": str(exc)}), 409
    return jsonify(result.to_dict())


@api_v1_bp.get("/integrations/sync/status")
@require_api_auth(roles=ADMIN_OR_MANAGER)
def sync_status():
    """Sync status of every active connection plus the background scheduler.

    Returns:
        200: Connection sync states and scheduler status
    """
    connections = (
        IntegrationConnection.query.filter(IntegrationConnection.is_active.is_(True))
        .order_by(IntegrationConnection.id)
        .all()
    )
    return jsonify({
        "connections": [
            {
                "id": c.id,
                "name": c.name,
                "platform": c.platform,
                "last_sync_at": c.last_sync_at.isoformat() if c.last_sync_at else None,
                "last_sync_status": c.last_sync_status,
                "last_sync_error": c.last_sync_error,
                "sync_enabled": c.sync_enabled,
                "sync_frequency": c.sync_frequency,
                "sync_in_progress": c.sync_in_progress,
            }
            for c in connections
        ],
        "scheduler": get_scheduler_status(),
    })


@api_v1_bp.get("/integrations/connections/<int:connection_id>/sync-history")
@require_api_auth(roles=ADMIN_OR_MANAGER)
def sync_history(connection_id: int):
    """Recent sync runs of a connection, newest first.

    Query params:
        limit (int, optional): Maximum rows (default 20, max 100)

    Returns:
        200: Sync history rows
        404: Connection not found
    """
    if _get_connection(connection_id) is None:
        return jsonify({"error": "Connection not found"}), 404
    limit = min(max(request.args.get("limit", 20, type=int), 1), 100)
    rows = (
        SyncHistory.query.filter_by(connection_id=connection_id)
        .order_by(SyncHistory.created_at.desc(), SyncHistory.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify({"history": [row.to_dict() for row in rows]})


# Identity mappings


@api_v1_bp.get("/integrations/user-mappings")
@require_api_auth(roles=ADMIN_ONLY)
def list_user_mappings():
    """External users seen on a connection merged with their mappings.

    Query params:
        connection_id (int): Connection (required)

    Returns:
        200: Users with their mapped employee, if any
        400: Missing connection id
        404: Connection not found
    """
    connection_id = request.args.get("connection_id", type=int)
    if not connection_id:
        return jsonify({"error": "Connection ID required"}), 400
    if _get_connection(connection_id) is None:
        return jsonify({"error": "Connection not found"}), 404
    return jsonify({"users": discover_external_users(connection_id)})


@api_v1_bp.post("/integrations/user-mappings")
@require_api_auth(roles=ADMIN_ONLY)
def save_user_mappings():
    """Replace a connection's mappings.

    Request body:
        connection_id (int): Connection (required)
        mappings (list): Objects with external_id, external_username,
            external_email, employee_id and optional employee_email

    Returns:
        200: Saved mappings
        400: Invalid request
        404: Connection not found
    """
    data = _json_body()
    if data is None:
        return jsonify({"error": "Request body must be a JSON object"}), 400
    connection_id = data.get("connection_id")
    mappings = data.get("mappings")
    if not connection_id or not isinstance(mappings, list):
        return jsonify({"error": "Invalid request"}), 400
    connection = _get_connection(connection_id)
    if connection is None:
        return jsonify({"error": "Connection not found"}), 404

    try:
        saved = replace_mappings(connection.id, mappings)
    except IdentityMappingError as exc:
        db.session.rollback()
        return jsonify({"error": str(exc)}), 400
    db.session.commit()
    return jsonify({"success": True, "mappings": [m.to_dict() for m in saved]})


# Unified work data


def _linked_commits(items: List[WorkItem]) -> Dict[tuple, List[Dict[str, Any]]]:
    """Most recent commits referencing each work item, keyed by
    ``(connection_id, external_id)``."""
    wanted = {(item.connection_id, item.external_id) for item in items}
    connection_ids = {item.connection_id for item in items}
    linked: Dict[tuple, List[Dict[str, Any]]] = defaultdict(list)
    if not connection_ids:
        return linked
    commits = (
        DeveloperCommit.query.filter(DeveloperCommit.connection_id.in_(connection_ids))
        .order_by(DeveloperCommit.commit_date.desc())
        .all()
    )
    for commit in commits:
        for ref in commit.linked_work_items or []:
            key = (commit.connection_id, str(ref))
            if key in wanted and len(linked[key]) < LINKED_COMMIT_LIMIT:
                linked[key].append(commit.to_dict())
    return linked


@api_v1_bp.get("/integrations/work-items")
@require_api_auth()
def list_work_items():
    """List synced work items.

    Employees only see items assigned to them. Admins and managers may filter
    by employee.

    Query params:
        employee_id, platform, status, connection_id (optional filters)
        start_date, end_date (YYYY-MM-DD, on created date)
        include_stale (bool): Include items no longer returned by the platform

    Returns:
        200: Up to 100 work items, most recently modified first
        400: Invalid date
    """
    user = g.api_user
    query = WorkItem.query

    employee_id = request.args.get("employee_id", type=int)
    if user.role == ROLE_EMPLOYEE:
        if user.employee_id is None:
            return jsonify({"work_items": [], "count": 0})
        query = query.filter(WorkItem.assigned_to_id == user.employee_id)
    elif employee_id:
        query = query.filter(WorkItem.assigned_to_id == employee_id)

    platform = request.args.get("platform")
    if platform:
        query = query.filter(WorkItem.platform == platform.upper())
    status = request.args.get("status")
    if status:
        query = query.filter(WorkItem.status == status)
    connection_id = request.args.get("connection_id", type=int)
    if connection_id:
        query = query.filter(WorkItem.connection_id == connection_id)

    try:
        start_date = parse_date(request.args.get("start_date"))
        end_date = parse_date(request.args.get("end_date"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    if start_date:
        query = query.filter(WorkItem.created_date >= start_date)
    if end_date:
        query = query.filter(WorkItem.created_date <= end_date)

    if not _flag(request.args.get("include_stale"), default=False):
        query = query.filter(WorkItem.is_stale.is_(False))

    items = (
        query.order_by(WorkItem.modified_date.desc(), WorkItem.id.desc())
        .limit(WORK_ITEM_LIMIT)
        .all()
    )
    linked = _linked_commits(items)
    payload = []
    for item in items:
        data = item.to_dict()
        data["connection_name"] = item.connection.name if item.connection else None
        data["commits"] = linked.get((item.connection_id, item.external_id), [])
        payload.append(data)
    return jsonify({"work_items": payload, "count": len(payload)})


@api_v1_bp.get("/integrations/azure-devops/project")
@require_api_auth(roles=ADMIN_OR_MANAGER)
def azure_devops_project():
    """Live details of one Azure DevOps project plus its stored work items.

    Query params:
        connection_id (int): Azure DevOps connection (required)
        project_name (str): Project name (required)

    Returns:
        200: Repositories with recent commits and active pull requests,
            pipelines, recent builds and stored work items
        400: Missing parameters
        404: Not an Azure DevOps connection
        502: Azure DevOps request failed
    """
    connection_id = request.args.get("connection_id", type=int)
    project_name = (request.args.get("project_name") or "").strip()
    if not connection_id or not project_name:
        return jsonify({"error": "Connection ID and project name are required"}), 400
    connection = _get_connection(connection_id)
    if connection is None or connection.platform != PLATFORM_AZURE_DEVOPS:
        return jsonify({"error": "Invalid Azure DevOps connection"}), 404

    try:
        client = connection_service.build_client(connection)
    except (IntegrationError, ValueError) as exc:
        return jsonify({"error": str(exc)}), 400
    try:
        repositories = []
        for repo in client.get_repositories(project_name):
            repositories.append({
                **repo,
                "commits": client.get_commits(project_name, repo["id"], top=10),
                "pull_requests": client.get_pull_requests(
                    project_name, repo["id"], status="active", top=10
                ),
            })
        pipelines = client.get_pipelines(project_name)
        builds = client.get_builds(project_name, top=20)
    except IntegrationError as exc:
        current_app.logger.warning(
            "Azure DevOps project lookup failed for connection=%s: %s",
            connection_id,
            exc,
        )
        return jsonify({"error": "Failed to fetch project details", "details": str(exc)}), 502
    finally:
        client.close()

    work_items = (
        WorkItem.query.filter_by(connection_id=connection_id, project_name=project_name)
        .order_by(WorkItem.modified_date.desc())
        .limit(50)
        .all()
    )
    return jsonify({
        "project_name": project_name,
        "repositories": repositories,
        "pipelines": pipelines,
        "builds": builds,
        "work_items": [item.to_dict() for item in work_items],
    })


def _page_node_to_dict(node: PageNode) -> Dict[str, Any]:
    data = dict(node.page)
    data.pop("parentId", None)
    data["children"] = [_page_node_to_dict(child) for child in node.children]
    return data


@api_v1_bp.get("/integrations/confluence/pages")
@require_api_auth()
def confluence_pages():
    """Stored Confluence pages as a tree.

    Query params:
        connection_id (int): Confluence connection (required)
        space_key (str, optional): Restrict to one space
        include_stale (bool): Include pages no longer returned by Confluence

    Returns:
        200: Root pages with nested children
        400: Missing connection id
        404: Not a Confluence connection
    """
    connection_id = request.args.get("connection_id", type=int)
    if not connection_id:
        return jsonify({"error": "Connection ID required"}), 400
    connection = _get_connection(connection_id)
    if connection is None or connection.platform != PLATFORM_CONFLUENCE:
        return jsonify({"error": "Invalid Confluence connection"}), 404

    query = ConfluencePage.query.filter_by(connection_id=connection_id)
    space_key = request.args.get("space_key")
    if space_key:
        query = query.filter(ConfluencePage.space_key == space_key)
    if not _flag(request.args.get("include_stale"), default=False):
        query = query.filter(ConfluencePage.is_stale.is_(False))
    pages = query.order_by(ConfluencePage.position, ConfluencePage.id).all()

    flat = [
        {**page.to_dict(), "id": page.external_id, "parentId": page.parent_id}
        for page in pages
    ]
    roots = build_page_hierarchy(flat)
    return jsonify({
        "pages": [_page_node_to_dict(node) for node in roots],
        "count": len(pages),
    })
