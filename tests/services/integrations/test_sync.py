from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import pytest
from cryptography.fernet import Fernet

from hrms import create_app, db
from hrms.config import Config
from hrms.models import (
    ConfluencePage,
    DeveloperCommit,
    Employee,
    IntegrationConnection,
    IntegrationUserMapping,
    SyncHistory,
    WorkItem,
)
from hrms.services.integrations import (
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PARTIAL,
    SYNC_STATUS_SUCCESS,
    IntegrationAPIError,
    SyncInProgressError,
    SyncOptions,
    SyncResult,
)
from hrms.services.integrations import connections
from hrms.services.integrations import sync as sync_module
from hrms.services.integrations.confluence import build_page_hierarchy
from hrms.services.integrations.sync import (
    CONNECTION_INACTIVE,
    CONNECTION_NOT_FOUND,
    SYNC_ALREADY_RUNNING,
    IntegrationSyncService,
    due_connections,
    sync_due_connections,
)
from hrms.services.integrations.utils import utcnow


@pytest.fixture
def app(tmp_path):
    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'sync.db'}"
        INTEGRATION_TOKEN_KEY = Fernet.generate_key().decode()
        RATELIMIT_ENABLED = False

    app = create_app(TestConfig, instance_path=tmp_path / "instance")
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()


def _azure_item(item_id: int, title: str, email: Optional[str] = None) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "System.Title": title,
        "System.State": "Active",
        "System.WorkItemType": "Task",
    }
    if email:
        fields["System.AssignedTo"] = {
            "id": f"guid-{email}",
            "displayName": email.split("@")[0],
            "uniqueName": email,
        }
    return {"id": item_id, "fields": fields}


class FakeAzureClient:
    def __init__(self, projects=None, work_items=None, repositories=None, commits=None):
        self.projects = projects if projects is not None else [{"id": "p1", "name": "Proj"}]
        self.work_items = work_items or {}
        self.repositories = repositories or {}
        self.commits = commits or {}
        self.calls: List[tuple] = []
        self.connected = True
        self.closed = False

    def test_connection(self) -> bool:
        self.calls.append(("test_connection",))
        return self.connected

    def get_projects(self):
        self.calls.append(("get_projects",))
        return self.projects

    def get_work_items(self, project_name, *, start_date=None):
        self.calls.append(("get_work_items", project_name, start_date))
        value = self.work_items.get(project_name, [])
        if isinstance(value, Exception):
            raise value
        return value

    def get_repositories(self, project_name):
        self.calls.append(("get_repositories", project_name))
        return self.repositories.get(project_name, [])

    def get_commits(self, project_name, repository_id, *, author=None, from_date=None):
        self.calls.append(("get_commits", project_name, repository_id, author, from_date))
        return self.commits.get((repository_id, author), [])

    def close(self):
        self.closed = True


class Factory:
    """Client factory that records every connection it builds a client for."""

    def __init__(self, client):
        self.client = client
        self.built: List[int] = []

    def __call__(self, connection):
        self.built.append(connection.id)
        return self.client


def _connection(platform="AZURE_DEVOPS", **overrides) -> IntegrationConnection:
    values = {
        "platform": platform,
        "name": f"{platform} connection",
        "organization_url": "https://dev.azure.com/acme",
    }
    values.update(overrides)
    conn = IntegrationConnection(**values)
    conn.access_token = "secret-token"
    db.session.add(conn)
    db.session.commit()
    return conn


def _map(connection, email, employee):
    db.session.add(
        IntegrationUserMapping(
            connection_id=connection.id, external_email=email, employee_id=employee.id
        )
    )
    db.session.commit()


@pytest.fixture
def employee(app):
    emp = Employee(email="dev@example.com", name="Dev")
    db.session.add(emp)
    db.session.commit()
    return emp


def test_azure_sync_stores_items_and_commits(app, employee):
    conn = _connection()
    _map(conn, "dev@example.com", employee)
    client = FakeAzureClient(
        work_items={
            "Proj": [
                _azure_item(1, "Login page", "Dev@Example.com"),
                _azure_item(2, "Unassigned"),
            ]
        },
        repositories={"Proj": [{"id": "r1", "name": "web"}]},
        commits={
            ("r1", "dev@example.com"): [
                {
                    "commitId": "abc",
                    "comment": "Fix login #1",
                    "author": {"name": "Dev", "email": "dev@example.com"},
                    "committer": {"date": "2024-01-01T00:00:00Z"},
                    "changeCounts": {"Add": 1, "Edit": 2},
                }
            ]
        },
    )
    factory = Factory(client)

    result = IntegrationSyncService(client_factory=factory).sync_connection(conn.id)

    assert result.errors == []
    assert result.success is True
    assert result.status == "SUCCESS"
    assert result.work_items_synced == 2
    assert result.commits_synced == 1
    assert result.pages_synced is None
    assert client.closed is True

    items = {w.external_id: w for w in WorkItem.query.all()}
    assert items["1"].assigned_to_id == employee.id
    assert items["2"].assigned_to_id is None
    commit = DeveloperCommit.query.one()
    assert commit.commit_hash == "abc"
    assert commit.employee_id == employee.id
    assert commit.linked_work_items == ["1"]
    assert commit.files_changed == 3

    db.session.refresh(conn)
    assert conn.last_sync_status == "SUCCESS"
    assert conn.last_sync_error is None
    assert conn.last_sync_at is not None
    assert conn.sync_in_progress is False
    history = SyncHistory.query.one()
    assert history.status == "SUCCESS"
    assert history.work_items_synced == 2
    assert history.commits_synced == 1


def test_sync_is_idempotent(app, employee):
    conn = _connection()
    _map(conn, "dev@example.com", employee)
    client = FakeAzureClient(
        work_items={"Proj": [_azure_item(1, "A"), _azure_item(2, "B")]},
        repositories={"Proj": [{"id": "r1", "name": "web"}]},
        commits={("r1", "dev@example.com"): [{"commitId": "abc", "comment": "x"}]},
    )
    service = IntegrationSyncService(client_factory=Factory(client))

    first = service.sync_connection(conn.id)
    client.work_items["Proj"][0]["fields"]["System.Title"] = "A renamed"
    second = service.sync_connection(conn.id)

    assert first.work_items_synced == second.work_items_synced == 2
    assert second.commits_synced == 1
    assert WorkItem.query.count() == 2
    assert DeveloperCommit.query.count() == 1
    assert WorkItem.query.filter_by(external_id="1").one().title == "A renamed"
    assert SyncHistory.query.count() == 2


def test_commit_seen_for_two_authors_counts_once(app, employee):
    other = Employee(email="pair@example.com", name="Pair")
    db.session.add(other)
    db.session.commit()
    conn = _connection()
    _map(conn, "dev@example.com", employee)
    _map(conn, "pair@example.com", other)
    shared = {"commitId": "same", "comment": "pairing"}
    client = FakeAzureClient(
        repositories={"Proj": [{"id": "r1", "name": "web"}]},
        commits={
            ("r1", "dev@example.com"): [shared],
            ("r1", "pair@example.com"): [shared],
        },
    )

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(conn.id)

    assert result.commits_synced == 1
    assert DeveloperCommit.query.count() == 1


def test_failing_project_does_not_stop_others(app):
    conn = _connection()
    client = FakeAzureClient(
        projects=[{"id": "p1", "name": "Broken"}, {"id": "p2", "name": "Good"}],
        work_items={
            "Broken": IntegrationAPIError("Azure DevOps", "server error", status_code=500),
            "Good": [_azure_item(5, "Works")],
        },
    )

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(
        conn.id, SyncOptions(sync_commits=False)
    )

    assert result.work_items_synced == 1
    assert len(result.errors) == 1
    assert "Failed to sync work items for project Broken" in result.errors[0]
    assert result.success is False
    assert result.status == "PARTIAL"
    assert WorkItem.query.one().external_id == "5"
    db.session.refresh(conn)
    assert conn.last_sync_status == "PARTIAL"
    assert "Broken" in conn.last_sync_error


def test_untranslatable_record_is_skipped(app):
    conn = _connection()
    client = FakeAzureClient(
        work_items={"Proj": [{"fields": {"System.Title": "no id"}}, _azure_item(3, "ok")]}
    )

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(
        conn.id, SyncOptions(sync_commits=False)
    )

    assert result.work_items_synced == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Skipped work item in project Proj")
    assert WorkItem.query.count() == 1


def test_vanished_items_are_marked_stale_on_full_pass(app):
    conn = _connection()
    client = FakeAzureClient(work_items={"Proj": [_azure_item(1, "A"), _azure_item(2, "B")]})
    service = IntegrationSyncService(client_factory=Factory(client))
    options = SyncOptions(sync_commits=False)

    service.sync_connection(conn.id, options)
    client.work_items["Proj"] = [_azure_item(1, "A")]
    service.sync_connection(conn.id, options)

    assert WorkItem.query.filter_by(external_id="1").one().is_stale is False
    gone = WorkItem.query.filter_by(external_id="2").one()
    assert gone.is_stale is True
    assert gone.stale_since is not None

    client.work_items["Proj"] = [_azure_item(1, "A"), _azure_item(2, "B")]
    service.sync_connection(conn.id, options)
    assert WorkItem.query.filter_by(external_id="2").one().is_stale is False


def test_start_date_pass_does_not_mark_stale(app):
    conn = _connection()
    client = FakeAzureClient(work_items={"Proj": [_azure_item(1, "A"), _azure_item(2, "B")]})
    service = IntegrationSyncService(client_factory=Factory(client))
    service.sync_connection(conn.id, SyncOptions(sync_commits=False))

    client.work_items["Proj"] = [_azure_item(1, "A")]
    since = date(2024, 1, 1)
    service.sync_connection(conn.id, SyncOptions(sync_commits=False, start_date=since))

    assert ("get_work_items", "Proj", since) in client.calls
    assert WorkItem.query.filter_by(is_stale=True).count() == 0


def test_project_filter_limits_containers(app):
    conn = _connection()
    client = FakeAzureClient(
        projects=[{"id": "p1", "name": "One"}, {"id": "p2", "name": "Two"}],
        work_items={"One": [_azure_item(1, "A")], "Two": [_azure_item(2, "B")]},
    )

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(
        conn.id, SyncOptions(sync_commits=False, project_ids=["p2"])
    )

    assert result.work_items_synced == 1
    assert [w.project_name for w in WorkItem.query.all()] == ["Two"]


def test_commits_skipped_without_mapped_users(app):
    conn = _connection()
    client = FakeAzureClient(repositories={"Proj": [{"id": "r1", "name": "web"}]})

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(
        conn.id, SyncOptions(sync_work_items=False)
    )

    assert result.success is True
    assert not any(call[0] == "get_repositories" for call in client.calls)


@pytest.mark.parametrize(
    "overrides",
    [{"is_active": False}, {"sync_enabled": False}],
)
def test_inactive_connection_makes_no_remote_calls(app, overrides):
    conn = _connection(**overrides)
    factory = Factory(FakeAzureClient())

    result = IntegrationSyncService(client_factory=factory).sync_connection(conn.id)

    assert result.errors == [CONNECTION_INACTIVE]
    assert result.success is False
    assert factory.built == []
    db.session.refresh(conn)
    assert conn.last_sync_at is None
    assert SyncHistory.query.count() == 0


def test_missing_connection_reports_error(app):
    factory = Factory(FakeAzureClient())
    result = IntegrationSyncService(client_factory=factory).sync_connection(12345)
    assert result.errors == [CONNECTION_NOT_FOUND]
    assert factory.built == []


def test_missing_configuration_is_reported(app):
    conn = _connection(organization_url=None)
    factory = Factory(FakeAzureClient())

    result = IntegrationSyncService(client_factory=factory).sync_connection(conn.id)

    assert result.errors == ["Missing Azure DevOps configuration"]
    assert factory.built == []
    db.session.refresh(conn)
    assert conn.last_sync_status == "FAILED"


def test_failed_connection_test_stops_sync(app):
    conn = _connection()
    client = FakeAzureClient()
    client.connected = False

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(conn.id)

    assert result.errors == ["Failed to connect to Azure DevOps"]
    assert client.calls == [("test_connection",)]
    assert client.closed is True


def test_running_sync_blocks_second_run(app):
    conn = _connection(sync_in_progress=True)
    conn.sync_started_at = utcnow()
    db.session.commit()
    factory = Factory(FakeAzureClient())
    service = IntegrationSyncService(client_factory=factory)

    result = service.sync_connection(conn.id)
    assert result.errors == [SYNC_ALREADY_RUNNING]
    assert factory.built == []

    with pytest.raises(SyncInProgressError):
        service.sync_connection(conn.id, raise_if_running=True)

    db.session.refresh(conn)
    assert conn.sync_in_progress is True
    assert conn.last_sync_status is None


def test_stale_lock_is_taken_over(app):
    conn = _connection(sync_in_progress=True)
    conn.sync_started_at = utcnow() - timedelta(hours=2)
    db.session.commit()

    result = IntegrationSyncService(
        client_factory=Factory(FakeAzureClient())
    ).sync_connection(conn.id, SyncOptions(sync_commits=False))

    assert result.success is True
    db.session.refresh(conn)
    assert conn.sync_in_progress is False
    assert conn.sync_started_at is None


def test_deadline_stops_the_run(app):
    conn = _connection()
    ticks = iter([0.0])
    factory = Factory(FakeAzureClient())

    def clock():
        return next(ticks, 1000.0)

    result = IntegrationSyncService(client_factory=factory, clock=clock).sync_connection(
        conn.id, SyncOptions(deadline_seconds=15)
    )

    assert result.errors == ["Sync deadline of 15 seconds exceeded"]
    assert result.status == "FAILED"
    assert factory.built == []
    db.session.refresh(conn)
    assert conn.sync_in_progress is False


class FakeAsanaClient:
    def __init__(self, projects, tasks):
        self.projects = projects
        self.tasks = tasks
        self.calls: List[tuple] = []

    def test_connection(self):
        return True

    def get_projects(self, workspace_gid, *, archived=None):
        self.calls.append(("get_projects", workspace_gid, archived))
        return self.projects

    def get_tasks(self, project_gid, *, completed_since=None, modified_since=None):
        self.calls.append(("get_tasks", project_gid, completed_since, modified_since))
        return self.tasks.get(project_gid, [])

    def close(self):
        pass


def test_asana_sync_stores_tasks(app, employee):
    conn = _connection("ASANA", organization_url=None, workspace_id="ws-1")
    _map(conn, "dev@example.com", employee)
    client = FakeAsanaClient(
        projects=[{"gid": "ap1", "name": "Board"}],
        tasks={
            "ap1": [
                {
                    "gid": "t1",
                    "name": "Design",
                    "assignee": {"gid": "u1", "name": "Dev", "email": "dev@example.com"},
                    "memberships": [
                        {"project": {"gid": "ap1"}, "section": {"gid": "s", "name": "Doing"}}
                    ],
                }
            ]
        },
    )
    since = date(2024, 2, 1)

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(
        conn.id, SyncOptions(start_date=since)
    )

    assert result.errors == []
    assert result.work_items_synced == 1
    assert result.commits_synced == 0
    assert client.calls[0] == ("get_projects", "ws-1", False)
    assert client.calls[1] == ("get_tasks", "ap1", since, since)
    task = WorkItem.query.one()
    assert task.platform == "ASANA"
    assert task.status == "Doing"
    assert task.assigned_to_id == employee.id


def test_malformed_task_is_skipped_without_losing_its_neighbours(app):
    conn = _connection("ASANA", organization_url=None, workspace_id="ws-1")
    client = FakeAsanaClient(
        projects=[{"gid": "ap1", "name": "Board"}],
        tasks={"ap1": [{"gid": "t1", "name": "Good"}, {"gid": "t2", "memberships": [None]}]},
    )

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(conn.id)

    assert result.work_items_synced == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Skipped task in project Board")
    assert result.status == "PARTIAL"
    assert [item.external_id for item in WorkItem.query.all()] == ["t1"]


class FakeConfluenceClient:
    def __init__(self, spaces, pages):
        self.spaces = spaces
        self.pages = pages

    def test_connection(self):
        return True

    def get_spaces(self, space_key=None):
        return self.spaces

    def get_page_hierarchy(self, space_id):
        return build_page_hierarchy(self.pages.get(space_id, []))

    def close(self):
        pass


def test_confluence_sync_keeps_hierarchy(app):
    conn = _connection(
        "CONFLUENCE",
        organization_url="https://acme.atlassian.net",
        account_email="me@example.com",
    )
    client = FakeConfluenceClient(
        spaces=[{"id": "s1", "key": "ENG", "name": "Engineering"}],
        pages={
            "s1": [
                {"id": "4", "parentId": "2", "title": "Grandchild"},
                {"id": "1", "title": "Root"},
                {"id": "2", "parentId": "1", "title": "Child"},
                {"id": "3", "parentId": "1", "title": "Sibling"},
            ]
        },
    )

    result = IntegrationSyncService(client_factory=Factory(client)).sync_connection(conn.id)

    assert result.errors == []
    assert result.pages_synced == 4
    assert result.work_items_synced == 0
    parents = {p.external_id: p.parent_id for p in ConfluencePage.query.all()}
    assert parents == {"1": None, "2": "1", "3": "1", "4": "2"}
    assert {p.space_key for p in ConfluencePage.query.all()} == {"ENG"}
    assert SyncHistory.query.one().pages_synced == 4


def test_confluence_without_email_is_a_config_error(app):
    conn = _connection("CONFLUENCE", organization_url="https://acme.atlassian.net")
    factory = Factory(FakeConfluenceClient([], {}))

    result = IntegrationSyncService(client_factory=factory).sync_connection(conn.id)

    assert "Email required for Confluence" in result.errors[0]
    assert factory.built == []


def test_legacy_confluence_email_in_organization_name(app):
    conn = _connection(
        "CONFLUENCE",
        organization_url="https://acme.atlassian.net",
        organization_name="legacy@example.com",
    )
    result = IntegrationSyncService(
        client_factory=Factory(FakeConfluenceClient([], {}))
    ).sync_connection(conn.id)
    assert result.errors == []
    assert result.pages_synced == 0


def test_due_connections_respects_frequency(app):
    now = utcnow()
    never = _connection(name="never")
    recent = _connection(name="recent", sync_frequency=60)
    recent.last_sync_at = now - timedelta(minutes=10)
    overdue = _connection(name="overdue", sync_frequency=30)
    overdue.last_sync_at = now - timedelta(minutes=31)
    _connection(name="disabled", sync_enabled=False)
    db.session.commit()

    assert [c.name for c in due_connections(now)] == ["never", "overdue"]


def test_sync_due_connections_runs_each_due_connection(app):
    first = _connection(name="a")
    second = _connection(name="b")
    factory = Factory(FakeAzureClient())

    results = sync_due_connections(client_factory=factory)

    assert set(results) == {first.id, second.id}
    assert sorted(factory.built) == sorted([first.id, second.id])


def test_module_sync_connection_uses_registered_builders(app, monkeypatch):
    conn = _connection()
    client = FakeAzureClient()
    built = []

    def fake_builder(settings):
        built.append(settings)
        return client

    monkeypatch.setitem(
        connections.CLIENT_BUILDERS, "AZURE_DEVOPS", fake_builder
    )

    result = sync_module.sync_connection(conn.id, SyncOptions(sync_commits=False))

    assert result.success is True
    assert built[0].access_token == "secret-token"
    assert built[0].organization_url == "https://dev.azure.com/acme"


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (SyncResult(work_items_synced=2), SYNC_STATUS_SUCCESS),
        (SyncResult(pages_synced=1, errors=["x"]), SYNC_STATUS_PARTIAL),
        (SyncResult(errors=["x"]), SYNC_STATUS_FAILED),
    ],
)
def test_sync_result_status(result, expected):
    assert result.status == expected
    assert result.to_dict()["status"] == expected
