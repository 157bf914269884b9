"""Sync orchestrator for integration connections.

``sync_connection`` is the single entry point callers use. Nothing escapes it
as an exception under normal operation: connectivity, configuration,
per-container and per-record failures are collected into ``SyncResult.errors``
and the outcome is written back onto the connection row.
"""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy import or_, update

from ...extensions import db
from ...models import (
    PLATFORM_ASANA,
    PLATFORM_AZURE_DEVOPS,
    PLATFORM_CONFLUENCE,
    IntegrationConnection,
    SyncHistory,
)
from . import (
    IntegrationConfigError,
    SyncDeadlineExceeded,
    SyncInProgressError,
    SyncOptions,
    SyncResult,
    TranslationError,
)
from .confluence import iter_page_tree
from .connections import build_client, validate_connection
from .identity import IdentityResolver
from .store import (
    mark_stale_pages,
    mark_stale_work_items,
    upsert_commit,
    upsert_confluence_page,
    upsert_work_item,
)
from .translate import (
    translate_asana_task,
    translate_azure_commit,
    translate_azure_work_item,
    translate_confluence_page,
)
from .utils import utcnow

CONNECTION_NOT_FOUND = "Connection not found"
CONNECTION_INACTIVE = "Connection is not active or sync is disabled"
SYNC_ALREADY_RUNNING = "Sync already in progress"

_CONNECT_FAILURES = {
    PLATFORM_AZURE_DEVOPS: "Failed to connect to Azure DevOps",
    PLATFORM_ASANA: "Failed to connect to Asana",
    PLATFORM_CONFLUENCE: "Failed to connect to Confluence - check credentials and URL",
}

ClientFactory = Callable[[IntegrationConnection], Any]


def _describe(exc: Exception) -> str:
    return str(exc) or f"Unknown error: {type(exc).__name__}"


class _Run:
    """Mutable state for one sync run."""

    def __init__(
        self,
        connection: IntegrationConnection,
        options: SyncOptions,
        result: SyncResult,
        budget: Optional[float],
        deadline: Optional[float],
        clock: Callable[[], float],
    ) -> None:
        self.connection = connection
        self.options = options
        self.result = result
        self.budget = budget
        self.deadline = deadline
        self.clock = clock
        self.resolver = IdentityResolver(connection.id)
        self.now = utcnow()

    def check_deadline(self) -> None:
        if self.deadline is not None and self.clock() > self.deadline:
            raise SyncDeadlineExceeded(
                f"Sync deadline of {int(self.budget or 0)} seconds exceeded"
            )


class IntegrationSyncService:
    """Drives a platform client through discovery, listing and upsert.

    ``client_factory`` receives the connection and returns a platform client;
    tests substitute fakes here instead of patching HTTP.
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_factory = client_factory or build_client
        self.clock = clock

    def sync_connection(
        self,
        connection_id: int,
        options: Optional[SyncOptions] = None,
        *,
        raise_if_running: bool = False,
    ) -> SyncResult:
        options = options or SyncOptions()
        started = self.clock()
        result = SyncResult(start_time=datetime.now(timezone.utc))

        connection = db.session.get(IntegrationConnection, connection_id)
        if connection is None:
            result.errors.append(CONNECTION_NOT_FOUND)
            return self._finish(result, started)
        if not connection.is_active or not connection.sync_enabled:
            result.errors.append(CONNECTION_INACTIVE)
            return self._finish(result, started)

        if not self._acquire_lock(connection.id):
            if raise_if_running:
                raise SyncInProgressError(SYNC_ALREADY_RUNNING)
            result.errors.append(SYNC_ALREADY_RUNNING)
            return self._finish(result, started)
        db.session.refresh(connection)

        budget = options.deadline_seconds
        if budget is None:
            budget = current_app.config.get("INTEGRATION_SYNC_DEADLINE")
        deadline = started + float(budget) if budget else None

        current_app.logger.info(
            "Starting sync for connection=%s platform=%s",
            connection.id,
            connection.platform,
        )
        try:
            run = _Run(connection, options, result, budget, deadline, self.clock)
            self._run_platform(run)
        except SyncDeadlineExceeded as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Sync for connection=%s stopped: %s", connection_id, exc
            )
            result.errors.append(str(exc))
        except Exception as exc:  # noqa: BLE001
            db.session.rollback()
            current_app.logger.exception(
                "Sync failed for connection=%s", connection_id
            )
            result.errors.append(_describe(exc))

        self._finish(result, started)
        self._write_back(connection_id, result)
        current_app.logger.info(
            "Sync finished for connection=%s status=%s work_items=%d commits=%d "
            "pages=%s errors=%d",
            connection_id,
            result.status,
            result.work_items_synced,
            result.commits_synced,
            result.pages_synced,
            len(result.errors),
        )
        return result

    # Locking and bookkeeping

    def _acquire_lock(self, connection_id: int) -> bool:
        """Atomically set ``sync_in_progress``; stale flags are taken over."""
        now = utcnow()
        lock_timeout = int(
            current_app.config.get("INTEGRATION_SYNC_LOCK_TIMEOUT") or 3600
        )
        stale_before = now - timedelta(seconds=lock_timeout)
        statement = (
            update(IntegrationConnection)
            .where(IntegrationConnection.id == connection_id)
            .where(
                or_(
                    IntegrationConnection.sync_in_progress.is_(False),
                    IntegrationConnection.sync_started_at.is_(None),
                    IntegrationConnection.sync_started_at < stale_before,
                )
            )
            .values(sync_in_progress=True, sync_started_at=now)
            .execution_options(synchronize_session=False)
        )
        outcome = db.session.execute(statement)
        db.session.commit()
        return outcome.rowcount == 1

    def _finish(self, result: SyncResult, started: float) -> SyncResult:
        result.end_time = datetime.now(timezone.utc)
        result.duration_ms = int(max(self.clock() - started, 0) * 1000)
        result.success = not result.errors
        return result

    def _write_back(self, connection_id: int, result: SyncResult) -> None:
        connection = db.session.get(IntegrationConnection, connection_id)
        if connection is None:
            return
        connection.last_sync_at = utcnow()
        connection.last_sync_status = result.status
        connection.last_sync_error = "; ".join(result.errors) or None
        connection.sync_in_progress = False
        connection.sync_started_at = None
        db.session.add(
            SyncHistory(
                connection_id=connection_id,
                status=result.status,
                work_items_synced=result.work_items_synced,
                commits_synced=result.commits_synced,
                pages_synced=result.pages_synced,
                duration_seconds=result.duration_ms / 1000.0,
                error_message=(connection.last_sync_error or "")[:1000] or None,
            )
        )
        db.session.commit()

    # Platform branches

    def _run_platform(self, run: _Run) -> None:
        connection = run.connection
        try:
            validate_connection(connection)
        except IntegrationConfigError as exc:
            run.result.errors.append(str(exc))
            return

        run.check_deadline()
        client = self.client_factory(connection)
        try:
            if not client.test_connection():
                run.result.errors.append(_CONNECT_FAILURES[connection.platform])
                return

            if connection.platform == PLATFORM_AZURE_DEVOPS:
                self._sync_azure_devops(run, client)
            elif connection.platform == PLATFORM_ASANA:
                self._sync_asana(run, client)
            else:
                self._sync_confluence(run, client)
        finally:
            client.close()

    def _sync_azure_devops(self, run: _Run, client: Any) -> None:
        options = run.options
        if not options.sync_work_items and not options.sync_commits:
            return

        run.check_deadline()
        try:
            projects = [
                project
                for project in client.get_projects()
                if options.allows(project.get("id"), project.get("name"))
            ]
        except SyncDeadlineExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            current_app.logger.warning(
                "Listing Azure DevOps projects failed for connection=%s: %s",
                run.connection.id,
                exc,
            )
            run.result.errors.append(
                f"Failed to list Azure DevOps projects: {_describe(exc)}"
            )
            return

        if options.sync_work_items:
            for project in projects:
                self._sync_azure_project_work_items(run, client, project)

        if options.sync_commits:
            mapped_users = run.resolver.mapped_users()
            if not mapped_users:
                current_app.logger.info(
                    "No mapped users for connection=%s; skipping commit sync",
                    run.connection.id,
                )
                return
            seen_hashes: set[str] = set()
            for project in projects:
                self._sync_azure_project_commits(
                    run, client, project, mapped_users, seen_hashes
                )

    def _sync_azure_project_work_items(
        self, run: _Run, client: Any, project: Dict[str, Any]
    ) -> None:
        connection_id = run.connection.id
        project_name = project.get("name") or ""
        run.check_deadline()
        try:
            records = client.get_work_items(
                project_name, start_date=run.options.start_date
            )
            seen: List[str] = []
            item_errors = 0
            for record in records:
                try:
                    fields = translate_azure_work_item(
                        record,
                        project_name,
                        run.resolver,
                        project_id=project.get("id"),
                    )
                except TranslationError as exc:
                    item_errors += 1
                    run.result.errors.append(
                        f"Skipped work item in project {project_name}: {exc}"
                    )
                    continue
                upsert_work_item(connection_id, fields, run.now)
                seen.append(fields["external_id"])

            if run.options.start_date is None and not item_errors:
                mark_stale_work_items(connection_id, project_name, seen, run.now)
            db.session.commit()
            run.result.work_items_synced += len(seen)
        except SyncDeadlineExceeded:
            db.session.rollback()
            raise
        except Exception as exc:  # noqa: BLE001
            db.session.rollback()
            current_app.logger.exception(
                "Work item sync failed for connection=%s project=%s",
                connection_id,
                project_name,
            )
            run.result.errors.append(
                f"Failed to sync work items for project {project_name}: "
                f"{_describe(exc)}"
            )

    def _sync_azure_project_commits(
        self,
        run: _Run,
        client: Any,
        project: Dict[str, Any],
        mapped_users: List[Any],
        seen_hashes: set[str],
    ) -> None:
        connection_id = run.connection.id
        project_name = project.get("name") or ""
        run.check_deadline()
        try:
            repositories = client.get_repositories(project_name)
        except SyncDeadlineExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            current_app.logger.warning(
                "Listing repositories failed for connection=%s project=%s: %s",
                connection_id,
                project_name,
                exc,
            )
            run.result.errors.append(
                f"Failed to list repositories for project {project_name}: "
                f"{_describe(exc)}"
            )
            return

        for repository in repositories:
            repo_name = repository.get("name") or str(repository.get("id"))
            try:
                synced = 0
                for mapping in mapped_users:
                    run.check_deadline()
                    records = client.get_commits(
                        project_name,
                        repository.get("id"),
                        author=mapping.external_email,
                        from_date=run.options.start_date,
                    )
                    for record in records:
                        try:
                            fields = translate_azure_commit(
                                record, mapping.employee_id, repo_name
                            )
                        except TranslationError as exc:
                            run.result.errors.append(
                                f"Skipped commit in repository {repo_name}: {exc}"
                            )
                            continue
                        upsert_commit(connection_id, fields, run.now)
                        if fields["commit_hash"] not in seen_hashes:
                            seen_hashes.add(fields["commit_hash"])
                            synced += 1
                db.session.commit()
                run.result.commits_synced += synced
            except SyncDeadlineExceeded:
                db.session.rollback()
                raise
            except Exception as exc:  # noqa: BLE001
                db.session.rollback()
                current_app.logger.exception(
                    "Commit sync failed for connection=%s repository=%s",
                    connection_id,
                    repo_name,
                )
                run.result.errors.append(
                    f"Failed to sync commits for repository {repo_name} "
                    f"in project {project_name}: {_describe(exc)}"
                )

    def _sync_asana(self, run: _Run, client: Any) -> None:
        options = run.options
        if not options.sync_work_items:
            return
        connection_id = run.connection.id

        run.check_deadline()
        try:
            projects = client.get_projects(run.connection.workspace_id, archived=False)
        except SyncDeadlineExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            run.result.errors.append(f"Failed to list Asana projects: {_describe(exc)}")
            return

        since: Optional[date] = options.start_date
        for project in projects:
            if not options.allows(project.get("gid"), project.get("name")):
                continue
            project_name = project.get("name") or ""
            run.check_deadline()
            try:
                tasks = client.get_tasks(
                    project.get("gid"), completed_since=since, modified_since=since
                )
                seen: List[str] = []
                item_errors = 0
                for task in tasks:
                    try:
                        fields = translate_asana_task(task, project, run.resolver)
                    except TranslationError as exc:
                        item_errors += 1
                        run.result.errors.append(
                            f"Skipped task in project {project_name}: {exc}"
                        )
                        continue
                    upsert_work_item(connection_id, fields, run.now)
                    seen.append(fields["external_id"])

                if since is None and not item_errors:
                    mark_stale_work_items(connection_id, project_name, seen, run.now)
                db.session.commit()
                run.result.work_items_synced += len(seen)
            except SyncDeadlineExceeded:
                db.session.rollback()
                raise
            except Exception as exc:  # noqa: BLE001
                db.session.rollback()
                current_app.logger.exception(
                    "Task sync failed for connection=%s project=%s",
                    connection_id,
                    project_name,
                )
                run.result.errors.append(
                    f"Failed to sync tasks for project {project_name}: "
                    f"{_describe(exc)}"
                )

    def _sync_confluence(self, run: _Run, client: Any) -> None:
        connection_id = run.connection.id
        run.result.pages_synced = 0

        run.check_deadline()
        try:
            spaces = client.get_spaces(run.connection.confluence_space_key)
        except SyncDeadlineExceeded:
            raise
        except Exception as exc:  # noqa: BLE001
            run.result.errors.append(
                f"Failed to list Confluence spaces: {_describe(exc)}"
            )
            return

        for space in spaces:
            if not run.options.allows(space.get("id"), space.get("key")):
                continue
            space_key = space.get("key") or str(space.get("id"))
            run.check_deadline()
            try:
                roots = client.get_page_hierarchy(space.get("id"))
                seen: List[str] = []
                item_errors = 0
                for node, parent_id in iter_page_tree(roots):
                    try:
                        fields = translate_confluence_page(node.page, space, parent_id)
                    except TranslationError as exc:
                        item_errors += 1
                        run.result.errors.append(
                            f"Skipped page in space {space_key}: {exc}"
                        )
                        continue
                    upsert_confluence_page(connection_id, fields, run.now)
                    seen.append(fields["external_id"])

                if not item_errors and space.get("id") is not None:
                    mark_stale_pages(connection_id, str(space["id"]), seen, run.now)
                db.session.commit()
                run.result.pages_synced += len(seen)
            except SyncDeadlineExceeded:
                db.session.rollback()
                raise
            except Exception as exc:  # noqa: BLE001
                db.session.rollback()
                current_app.logger.exception(
                    "Page sync failed for connection=%s space=%s",
                    connection_id,
                    space_key,
                )
                run.result.errors.append(
                    f"Failed to sync space {space_key}: {_describe(exc)}"
                )


def sync_connection(
    connection_id: int,
    options: Optional[SyncOptions] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> SyncResult:
    """Sync one connection with the default service configuration."""
    service = IntegrationSyncService(client_factory=client_factory)
    return service.sync_connection(connection_id, options)


def due_connections(now: Optional[datetime] = None) -> List[IntegrationConnection]:
    """Active, sync-enabled connections whose ``sync_frequency`` has elapsed."""
    current = now or utcnow()
    candidates = (
        IntegrationConnection.query.filter(
            IntegrationConnection.is_active.is_(True),
            IntegrationConnection.sync_enabled.is_(True),
        )
        .order_by(IntegrationConnection.id)
        .all()
    )
    due: List[IntegrationConnection] = []
    for connection in candidates:
        if connection.last_sync_at is None:
            due.append(connection)
            continue
        interval = timedelta(minutes=max(connection.sync_frequency or 0, 1))
        if connection.last_sync_at + interval <= current:
            due.append(connection)
    return due


def sync_due_connections(
    now: Optional[datetime] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> Dict[int, SyncResult]:
    """Sync every due connection sequentially; failures stay per connection."""
    service = IntegrationSyncService(client_factory=client_factory)
    results: Dict[int, SyncResult] = {}
    for connection in due_connections(now):
        results[connection.id] = service.sync_connection(connection.id)
    return results
