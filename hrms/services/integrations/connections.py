"""Connection lifecycle: validate, test, create, update, delete, serialize."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from flask import current_app

from ...extensions import db
from ...models import (
    PLATFORM_ASANA,
    PLATFORM_AZURE_DEVOPS,
    PLATFORM_CONFLUENCE,
    PLATFORMS,
    ConfluencePage,
    DeveloperCommit,
    IntegrationConnection,
    WorkItem,
)
from . import IntegrationConfigError
from .asana import AsanaClient
from .azure_devops import AzureDevOpsClient
from .confluence import ConfluenceClient
from .crypto import mask_token
from .utils import normalize_base_url


@dataclass(slots=True)
class ConnectionSettings:
    platform: str
    access_token: str
    organization_url: Optional[str] = None
    workspace_id: Optional[str] = None
    confluence_space_key: Optional[str] = None
    account_email: Optional[str] = None

    @classmethod
    def from_connection(cls, connection: IntegrationConnection) -> "ConnectionSettings":
        return cls(
            platform=connection.platform,
            access_token=connection.access_token,
            organization_url=connection.organization_url,
            workspace_id=connection.workspace_id,
            confluence_space_key=connection.confluence_space_key,
            account_email=connection.confluence_email,
        )


def validate_connection_config(
    platform: Optional[str],
    *,
    has_token: bool,
    organization_url: Optional[str] = None,
    workspace_id: Optional[str] = None,
    account_email: Optional[str] = None,
    require_workspace: bool = True,
) -> None:
    """Raise ``IntegrationConfigError`` when a required field is missing."""
    if platform == PLATFORM_AZURE_DEVOPS:
        if not organization_url or not has_token:
            raise IntegrationConfigError("Missing Azure DevOps configuration")
    elif platform == PLATFORM_ASANA:
        if not has_token or (require_workspace and not workspace_id):
            raise IntegrationConfigError("Missing Asana configuration")
    elif platform == PLATFORM_CONFLUENCE:
        if not organization_url or not has_token:
            raise IntegrationConfigError("Missing Confluence configuration")
        if not account_email:
            raise IntegrationConfigError(
                "Email required for Confluence authentication - "
                "please reconfigure your connection"
            )
    else:
        raise IntegrationConfigError(f"Unknown platform: {platform}")


def validate_connection(connection: IntegrationConnection) -> None:
    validate_connection_config(
        connection.platform,
        has_token=bool(connection.access_token_encrypted),
        organization_url=connection.organization_url,
        workspace_id=connection.workspace_id,
        account_email=connection.confluence_email,
    )


def _build_azure_devops(settings: ConnectionSettings) -> AzureDevOpsClient:
    return AzureDevOpsClient(settings.organization_url or "", settings.access_token)


def _build_asana(settings: ConnectionSettings) -> AsanaClient:
    return AsanaClient(settings.access_token)


def _build_confluence(settings: ConnectionSettings) -> ConfluenceClient:
    return ConfluenceClient(
        settings.organization_url or "",
        settings.account_email or "",
        settings.access_token,
        space_key=settings.confluence_space_key,
    )


ClientBuilder = Callable[[ConnectionSettings], Any]

CLIENT_BUILDERS: Dict[str, ClientBuilder] = {
    PLATFORM_AZURE_DEVOPS: _build_azure_devops,
    PLATFORM_ASANA: _build_asana,
    PLATFORM_CONFLUENCE: _build_confluence,
}


def build_client_for(settings: ConnectionSettings) -> Any:
    builder = CLIENT_BUILDERS.get(settings.platform)
    if builder is None:
        raise IntegrationConfigError(f"Unknown platform: {settings.platform}")
    return builder(settings)


def build_client(connection: IntegrationConnection) -> Any:
    """Construct the platform client for a stored connection."""
    return build_client_for(ConnectionSettings.from_connection(connection))


_TEST_FAILURES = {
    PLATFORM_AZURE_DEVOPS: "Invalid credentials or organization URL",
    PLATFORM_ASANA: "Invalid access token",
    PLATFORM_CONFLUENCE: "Invalid credentials or organization URL",
}


def test_connection_settings(
    platform: str,
    access_token: str,
    organization_url: Optional[str] = None,
    account_email: Optional[str] = None,
    *,
    workspace_id: Optional[str] = None,
    confluence_space_key: Optional[str] = None,
) -> Tuple[bool, str]:
    """Check credentials against the live platform without saving anything."""
    return _test_settings(
        ConnectionSettings(
            platform=(platform or "").strip().upper(),
            access_token=access_token,
            organization_url=organization_url,
            workspace_id=workspace_id,
            confluence_space_key=confluence_space_key,
            account_email=(account_email or "").strip() or None,
        )
    )


def _test_settings(settings: ConnectionSettings) -> Tuple[bool, str]:
    if settings.platform not in PLATFORMS:
        raise IntegrationConfigError("Invalid platform")
    if not settings.access_token:
        raise IntegrationConfigError("Access token is required")
    if settings.platform == PLATFORM_AZURE_DEVOPS and not settings.organization_url:
        raise IntegrationConfigError("Organization URL is required for Azure DevOps")
    if settings.platform == PLATFORM_CONFLUENCE:
        if not settings.organization_url:
            raise IntegrationConfigError("Site URL is required for Confluence")
        if not settings.account_email:
            raise IntegrationConfigError("Email is required for Confluence")
    validate_connection_config(
        settings.platform,
        has_token=bool(settings.access_token),
        organization_url=settings.organization_url,
        workspace_id=settings.workspace_id,
        account_email=settings.account_email,
        require_workspace=False,
    )
    try:
        client = build_client_for(settings)
    except ValueError as exc:
        raise IntegrationConfigError(str(exc)) from exc
    try:
        if client.test_connection():
            return True, "Connection successful"
    finally:
        client.close()
    return False, _TEST_FAILURES.get(settings.platform, "Connection test failed")


def create_connection(
    *,
    platform: str,
    name: str,
    access_token: str,
    organization_url: Optional[str] = None,
    organization_name: Optional[str] = None,
    workspace_id: Optional[str] = None,
    confluence_space_key: Optional[str] = None,
    account_email: Optional[str] = None,
    sync_frequency: Optional[int] = None,
    created_by_id: Optional[int] = None,
) -> IntegrationConnection:
    """Test the credentials, then persist a new connection.

    Asana connections without a workspace pick the first workspace the token
    can see.
    """
    platform = (platform or "").strip().upper()
    name = (name or "").strip()
    if platform not in PLATFORMS:
        raise IntegrationConfigError("Invalid platform")
    if not name or not access_token:
        raise IntegrationConfigError("Missing required fields")
    if organization_url:
        try:
            organization_url = normalize_base_url(organization_url)
        except ValueError as exc:
            raise IntegrationConfigError(str(exc)) from exc

    settings = ConnectionSettings(
        platform=platform,
        access_token=access_token,
        organization_url=organization_url,
        workspace_id=workspace_id,
        confluence_space_key=confluence_space_key,
        account_email=(account_email or "").strip() or None,
    )
    ok, message = _test_settings(settings)
    if not ok:
        raise IntegrationConfigError(
            f"Connection test failed. Please check your credentials. ({message})"
        )

    if platform == PLATFORM_ASANA and not workspace_id:
        client = build_client_for(settings)
        try:
            workspaces = client.get_workspaces()
        finally:
            client.close()
        if not workspaces:
            raise IntegrationConfigError("No Asana workspace is visible to this token")
        workspace_id = workspaces[0].get("gid")
        current_app.logger.info("Selected Asana workspace %s", workspace_id)

    connection = IntegrationConnection(
        platform=platform,
        name=name,
        auth_type="PAT",
        organization_url=organization_url,
        organization_name=organization_name,
        workspace_id=workspace_id,
        confluence_space_key=confluence_space_key or None,
        account_email=settings.account_email,
        sync_frequency=sync_frequency or 60,
        created_by_id=created_by_id,
        is_active=True,
        sync_enabled=True,
    )
    connection.access_token = access_token
    db.session.add(connection)
    db.session.flush()
    return connection


_UPDATABLE_FIELDS = {
    "name",
    "sync_enabled",
    "is_active",
    "sync_frequency",
    "confluence_space_key",
    "account_email",
    "workspace_id",
}


def update_connection(
    connection: IntegrationConnection, **changes: Any
) -> IntegrationConnection:
    unknown = set(changes) - _UPDATABLE_FIELDS - {"access_token"}
    if unknown:
        raise IntegrationConfigError(
            f"Unsupported field(s): {', '.join(sorted(unknown))}"
        )
    for key, value in changes.items():
        if key == "access_token":
            if not value:
                raise IntegrationConfigError("Access token must not be empty")
            connection.access_token = value
        elif key == "sync_frequency":
            try:
                frequency = int(value)
            except (TypeError, ValueError) as exc:
                raise IntegrationConfigError(
                    "sync_frequency must be an integer"
                ) from exc
            if frequency < 1:
                raise IntegrationConfigError("sync_frequency must be at least 1")
            connection.sync_frequency = frequency
        elif key in {"sync_enabled", "is_active"}:
            setattr(connection, key, bool(value))
        elif key == "name":
            connection.name = (value or "").strip()
        else:
            setattr(connection, key, value or None)
    if not connection.name:
        raise IntegrationConfigError("Name must not be empty")
    db.session.flush()
    return connection


def delete_connection(connection_id: int) -> bool:
    """Hard-delete a connection; mappings and synced rows cascade."""
    connection = db.session.get(IntegrationConnection, connection_id)
    if connection is None:
        return False
    db.session.delete(connection)
    db.session.flush()
    current_app.logger.info("Deleted integration connection %s", connection_id)
    return True


def connection_to_dict(connection: IntegrationConnection) -> Dict[str, Any]:
    def _count(model) -> int:
        return model.query.filter_by(connection_id=connection.id).count()

    return {
        "id": connection.id,
        "platform": connection.platform,
        "name": connection.name,
        "auth_type": connection.auth_type,
        "access_token": mask_token("set" if connection.access_token_encrypted else None),
        "organization_url": connection.organization_url,
        "organization_name": connection.organization_name,
        "workspace_id": connection.workspace_id,
        "confluence_space_key": connection.confluence_space_key,
        "account_email": connection.account_email,
        "sync_enabled": connection.sync_enabled,
        "is_active": connection.is_active,
        "sync_frequency": connection.sync_frequency,
        "sync_in_progress": connection.sync_in_progress,
        "last_sync_at": (
            connection.last_sync_at.isoformat() if connection.last_sync_at else None
        ),
        "last_sync_status": connection.last_sync_status,
        "last_sync_error": connection.last_sync_error,
        "user_mappings": [m.to_dict() for m in connection.user_mappings],
        "counts": {
            "work_items": _count(WorkItem),
            "commits": _count(DeveloperCommit),
            "confluence_pages": _count(ConfluencePage),
        },
        "created_at": (
            connection.created_at.isoformat() if connection.created_at else None
        ),
    }
