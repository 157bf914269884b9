from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Optional

import bcrypt
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .extensions import BaseModel, db, login_manager
from .security import ROLE_ADMIN, ROLE_EMPLOYEE, LoginUser

PLATFORM_AZURE_DEVOPS = "AZURE_DEVOPS"
PLATFORM_ASANA = "ASANA"
PLATFORM_CONFLUENCE = "CONFLUENCE"
PLATFORMS = (PLATFORM_AZURE_DEVOPS, PLATFORM_ASANA, PLATFORM_CONFLUENCE)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Employee(BaseModel, TimestampMixin):
    """Employee directory entry; the target of identity mappings."""

    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class User(BaseModel, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(32), default=ROLE_EMPLOYEE, nullable=False
    )  # ADMIN, MANAGER, EMPLOYEE
    employee_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"), nullable=True
    )

    employee: Mapped[Optional["Employee"]] = relationship("Employee")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class IntegrationConnection(BaseModel, TimestampMixin):
    """One configured link to an external project-management platform."""

    __tablename__ = "integration_connections"

    id: Mapped[int] = mapped_column(primary_key=True)
    platform: Mapped[str] = mapped_column(
        String(32), nullable=False, index=True
    )  # AZURE_DEVOPS, ASANA, CONFLUENCE
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    auth_type: Mapped[str] = mapped_column(String(32), default="PAT", nullable=False)
    access_token_encrypted: Mapped[bytes] = mapped_column(
        db.LargeBinary, nullable=False
    )
    organization_url: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True
    )
    organization_name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    workspace_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    confluence_space_key: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    account_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_frequency: Mapped[int] = mapped_column(
        Integer, default=60, nullable=False
    )  # minutes
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_sync_status: Mapped[Optional[str]] = mapped_column(
        String(16), nullable=True
    )
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sync_in_progress: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, server_default=db.false()
    )
    sync_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    created_by_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_by: Mapped[Optional["User"]] = relationship("User")
    user_mappings: Mapped[list["IntegrationUserMapping"]] = relationship(
        "IntegrationUserMapping",
        back_populates="connection",
        cascade="all, delete-orphan",
    )
    work_items: Mapped[list["WorkItem"]] = relationship(
        "WorkItem", back_populates="connection", cascade="all, delete-orphan"
    )
    commits: Mapped[list["DeveloperCommit"]] = relationship(
        "DeveloperCommit", back_populates="connection", cascade="all, delete-orphan"
    )
    pages: Mapped[list["ConfluencePage"]] = relationship(
        "ConfluencePage", back_populates="connection", cascade="all, delete-orphan"
    )
    sync_history: Mapped[list["SyncHistory"]] = relationship(
        "SyncHistory", back_populates="connection", cascade="all, delete-orphan"
    )

    @property
    def access_token(self) -> str:
        from .services.integrations.crypto import decrypt_token

        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value: str) -> None:
        from .services.integrations.crypto import encrypt_token

        self.access_token_encrypted = encrypt_token(value)

    @property
    def confluence_email(self) -> Optional[str]:
        """Account email for Confluence basic auth.

        Older connections stored the email in ``organization_name``; it is still
        honoured when the dedicated column is empty.
        """
        if self.account_email:
            return self.account_email
        candidate = (self.organization_name or "").strip()
        return candidate if "@" in candidate else None

    def __repr__(self) -> str:
        return f"<IntegrationConnection id={self.id} platform={self.platform}>"


class IntegrationUserMapping(BaseModel, TimestampMixin):
    """Binds an external platform identity to an internal employee."""

    __tablename__ = "integration_user_mappings"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_email", name="uq_integration_mapping_email"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("integration_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_username: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    # Stored lower-cased; the join key for identity resolution.
    external_email: Mapped[str] = mapped_column(String(255), nullable=False)
    employee_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"), nullable=True
    )
    employee_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    connection: Mapped["IntegrationConnection"] = relationship(
        "IntegrationConnection", back_populates="user_mappings"
    )
    employee: Mapped[Optional["Employee"]] = relationship("Employee")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "external_id": self.external_id,
            "external_username": self.external_username,
            "external_email": self.external_email,
            "employee_id": self.employee_id,
            "employee_email": self.employee_email,
        }


class WorkItem(BaseModel, TimestampMixin):
    """A remote task, ticket or work item in the unified shape."""

    __tablename__ = "work_items"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_id", name="uq_work_item_external_id"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("integration_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    work_item_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Platform-native vocabulary, not normalized across platforms.
    status: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_to_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("employees.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    assigned_to_name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    assigned_to_email: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    created_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    modified_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    project_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    project_external_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    section_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    section_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    area_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    iteration_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    story_points: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    tags: Mapped[list[str]] = mapped_column(db.JSON, default=list, nullable=False)
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        db.JSON, nullable=True
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    is_stale: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, server_default=db.false()
    )
    stale_since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    connection: Mapped["IntegrationConnection"] = relationship(
        "IntegrationConnection", back_populates="work_items"
    )
    assignee: Mapped[Optional["Employee"]] = relationship("Employee")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "external_id": self.external_id,
            "external_url": self.external_url,
            "platform": self.platform,
            "title": self.title,
            "description": self.description,
            "work_item_type": self.work_item_type,
            "status": self.status,
            "priority": self.priority,
            "assigned_to_id": self.assigned_to_id,
            "assigned_to": self.assigned_to,
            "assigned_to_name": self.assigned_to_name,
            "assigned_to_email": self.assigned_to_email,
            "created_date": _isoformat(self.created_date),
            "modified_date": _isoformat(self.modified_date),
            "completed_date": _isoformat(self.completed_date),
            "due_date": _isoformat(self.due_date),
            "project_name": self.project_name,
            "section_name": self.section_name,
            "area_path": self.area_path,
            "iteration_path": self.iteration_path,
            "story_points": self.story_points,
            "tags": self.tags or [],
            "last_synced_at": _isoformat(self.last_synced_at),
            "is_stale": self.is_stale,
        }


class DeveloperCommit(BaseModel, TimestampMixin):
    """A VCS commit attributed to a mapped employee (Azure DevOps only)."""

    __tablename__ = "developer_commits"
    __table_args__ = (
        UniqueConstraint("connection_id", "commit_hash", name="uq_commit_hash"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("integration_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    repository_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    files_changed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lines_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lines_deleted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    author_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    author_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    committer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    committer_email: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    linked_work_items: Mapped[list[str]] = mapped_column(
        db.JSON, default=list, nullable=False
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    connection: Mapped["IntegrationConnection"] = relationship(
        "IntegrationConnection", back_populates="commits"
    )
    employee: Mapped["Employee"] = relationship("Employee")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "commit_hash": self.commit_hash,
            "message": self.message,
            "url": self.url,
            "repository_name": self.repository_name,
            "employee_id": self.employee_id,
            "files_changed": self.files_changed,
            "lines_added": self.lines_added,
            "lines_deleted": self.lines_deleted,
            "commit_date": _isoformat(self.commit_date),
            "author_name": self.author_name,
            "author_email": self.author_email,
            "linked_work_items": self.linked_work_items or [],
        }


class ConfluencePage(BaseModel, TimestampMixin):
    """A Confluence page; ``parent_id`` holds the parent's external id."""

    __tablename__ = "confluence_pages"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_id", name="uq_confluence_page_external_id"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("integration_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    page_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    space_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    space_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    space_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    author_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        db.JSON, nullable=True
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    is_stale: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, server_default=db.false()
    )
    stale_since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    connection: Mapped["IntegrationConnection"] = relationship(
        "IntegrationConnection", back_populates="pages"
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "title": self.title,
            "status": self.status,
            "space_key": self.space_key,
            "space_name": self.space_name,
            "parent_id": self.parent_id,
            "position": self.position,
            "author_name": self.author_name,
            "version": self.version,
            "updated_date": _isoformat(self.updated_date),
            "is_stale": self.is_stale,
        }


class SyncHistory(BaseModel):
    """One row per orchestrated sync run of a connection."""

    __tablename__ = "integration_sync_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("integration_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # SUCCESS, PARTIAL, FAILED
    work_items_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commits_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_synced: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False, index=True
    )

    connection: Mapped["IntegrationConnection"] = relationship(
        "IntegrationConnection", back_populates="sync_history"
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "status": self.status,
            "work_items_synced": self.work_items_synced,
            "commits_synced": self.commits_synced,
            "pages_synced": self.pages_synced,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "created_at": _isoformat(self.created_at),
        }


class APIKey(BaseModel, TimestampMixin):
    """API keys for programmatic access to the HRMS API."""

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship("User")

    KEY_PREFIX = "hrms_"

    @classmethod
    def generate_key(cls) -> tuple[str, str, str]:
        """Generate a new API key.

        Returns:
            tuple: (full_key, key_hash, key_prefix). Only the hash is stored;
            the full key is shown to the user once.
        """
        full_key = f"{cls.KEY_PREFIX}{secrets.token_hex(32)}"
        key_prefix = full_key[:11]  # "hrms_" + first 6 hex chars
        key_hash = bcrypt.hashpw(full_key.encode("utf-8"), bcrypt.gensalt()).decode(
            "utf-8"
        )
        return full_key, key_hash, key_prefix

    def verify_key(self, key: str) -> bool:
        try:
            return bcrypt.checkpw(key.encode("utf-8"), self.key_hash.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        current = now or datetime.utcnow()
        return not (self.expires_at and current > self.expires_at)


@login_manager.user_loader
def load_user(user_id: str) -> Optional[LoginUser]:
    user = db.session.get(User, int(user_id))
    return LoginUser(user) if user else None
