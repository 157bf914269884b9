"""Third-party integration sync: Azure DevOps, Asana and Confluence.

The orchestrator (``sync.IntegrationSyncService``) drives a platform client
through container discovery, object listing, translation and upsert into the
unified ``WorkItem`` / ``DeveloperCommit`` / ``ConfluencePage`` tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

SYNC_STATUS_SUCCESS = "SUCCESS"
SYNC_STATUS_PARTIAL = "PARTIAL"
SYNC_STATUS_FAILED = "FAILED"


class IntegrationError(Exception):
    """Base exception for integration failures."""


class IntegrationAPIError(IntegrationError):
    """Raised when a platform API call fails or returns a non-2xx response."""

    def __init__(
        self,
        platform: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        self.platform = platform
        self.status_code = status_code
        self.message = message
        if status_code is not None:
            super().__init__(f"{platform} API error ({status_code}): {message}")
        else:
            super().__init__(f"{platform} API error: {message}")


class IntegrationConfigError(IntegrationError):
    """Raised when a connection lacks a field its platform requires."""


class TranslationError(IntegrationError):
    """Raised when a remote record cannot be translated into the unified shape."""


class TokenEncryptionError(IntegrationError):
    """Raised when an access token cannot be encrypted or decrypted."""


class SyncDeadlineExceeded(IntegrationError):
    """Raised inside a sync run once its wall-clock budget is spent."""


class SyncInProgressError(IntegrationError):
    """Raised when another run already holds the connection's sync lock."""


@dataclass(slots=True)
class SyncOptions:
    sync_work_items: bool = True
    sync_commits: bool = True
    start_date: Optional[date] = None
    # Allow-list of project ids (Azure DevOps / Asana) or space keys (Confluence).
    project_ids: Optional[List[str]] = None
    deadline_seconds: Optional[float] = None

    def allows(self, *identifiers: Optional[str]) -> bool:
        if not self.project_ids:
            return True
        allowed = {str(value) for value in self.project_ids}
        return any(value is not None and str(value) in allowed for value in identifiers)


@dataclass(slots=True)
class SyncResult:
    success: bool = False
    work_items_synced: int = 0
    commits_synced: int = 0
    pages_synced: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: int = 0

    @property
    def progress(self) -> int:
        return self.work_items_synced + self.commits_synced + (self.pages_synced or 0)

    @property
    def status(self) -> str:
        if not self.errors:
            return SYNC_STATUS_SUCCESS
        if self.progress > 0:
            return SYNC_STATUS_PARTIAL
        return SYNC_STATUS_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "work_items_synced": self.work_items_synced,
            "commits_synced": self.commits_synced,
            "pages_synced": self.pages_synced,
            "errors": list(self.errors),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
        }


__all__ = [
    "SYNC_STATUS_FAILED",
    "SYNC_STATUS_PARTIAL",
    "SYNC_STATUS_SUCCESS",
    "IntegrationAPIError",
    "IntegrationConfigError",
    "IntegrationError",
    "SyncDeadlineExceeded",
    "SyncInProgressError",
    "SyncOptions",
    "SyncResult",
    "TokenEncryptionError",
    "TranslationError",
]
