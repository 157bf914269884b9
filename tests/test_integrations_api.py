from __future__ import annotations

from datetime import datetime

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
    User,
    WorkItem,
)
from hrms.security import ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_MANAGER, hash_password
from hrms.services.integrations import connections


@pytest.fixture
def test_app(tmp_path):
    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'integrations_api.db'}"
        INTEGRATION_TOKEN_KEY = Fernet.generate_key().decode()
        RATELIMIT_ENABLED = False

    app = create_app(TestConfig, instance_path=tmp_path / "instance")

    with app.app_context():
        db.create_all()
        dev = Employee(email="dev@example.com", name="Dev")
        other = Employee(email="other@example.com", name="Other")
        db.session.add_all([dev, other])
        db.session.flush()
        db.session.add_all(
            [
                User(
                    email="admin@example.com",
                    name="Admin",
                    password_hash=hash_password("pass123"),
                    role=ROLE_ADMIN,
                ),
                User(
                    email="manager@example.com",
                    name="Manager",
                    password_hash=hash_password("pass123"),
                    role=ROLE_MANAGER,
                ),
                User(
                    email="dev@example.com",
                    name="Dev",
                    password_hash=hash_password("pass123"),
                    role=ROLE_EMPLOYEE,
                    employee_id=dev.id,
                ),
            ]
        )
        db.session.commit()

    yield app


def login(client, email="admin@example.com"):
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": "pass123"})
    assert resp.status_code == 200
    return resp


class FakeClient:
    def __init__(self):
        self.ok = True
        self.projects = []
        self.closed = False

    def test_connection(self):
        return self.ok

    def get_projects(self):
        return self.projects

    def get_work_items(self, project_name, *, start_date=None):
        return []

    def get_repositories(self, project_name):
        return [{"id": "r1", "name": "web"}]

    def get_commits(self, project_name, repository_id, *, top=None, **kwargs):
        return [{"commitId": "abc", "comment": "hello"}]

    def get_pull_requests(self, project_name, repository_id, *, status=None, top=None):
        return [{"pullRequestId": 7, "status": status}]

    def get_pipelines(self, project_name):
        return [{"id": 1, "name": "ci"}]

    def get_builds(self, project_name, *, top=None):
        return [{"id": 99}]

    def close(self):
        self.closed = True


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient()
    for platform in ("AZURE_DEVOPS", "ASANA", "CONFLUENCE"):
        monkeypatch.setitem(connections.CLIENT_BUILDERS, platform, lambda settings: client)
    return client


def _add_connection(test_app, **overrides):
    values = {
        "platform": "AZURE_DEVOPS",
        "name": "Acme",
        "organization_url": "https://dev.azure.com/acme",
    }
    values.update(overrides)
    with test_app.app_context():
        conn = IntegrationConnection(**values)
        conn.access_token = "pat"
        db.session.add(conn)
        db.session.commit()
        return conn.id


def _employee_id(test_app, email):
    with test_app.app_context():
        return Employee.query.filter_by(email=email).one().id


def test_connections_require_auth_and_role(test_app):
    anonymous = test_app.test_client()
    assert anonymous.get("/api/v1/integrations/connections").status_code == 401

    employee = test_app.test_client()
    login(employee, "dev@example.com")
    resp = employee.get("/api/v1/integrations/connections")
    assert resp.status_code == 403
    assert "ADMIN" in resp.get_json()["message"]

    manager = test_app.test_client()
    login(manager, "manager@example.com")
    assert manager.get("/api/v1/integrations/connections").status_code == 200
    assert (
        manager.post("/api/v1/integrations/connections", json={}).status_code == 403
    )


def test_create_list_update_delete_connection(test_app, fake_client):
    client = test_app.test_client()
    login(client)

    created = client.post(
        "/api/v1/integrations/connections",
        json={
            "platform": "AZURE_DEVOPS",
            "name": "Acme",
            "access_token": "super-secret",
            "organization_url": "https://dev.azure.com/acme/",
        },
    )
    assert created.status_code == 201
    payload = created.get_json()["connection"]
    assert payload["access_token"] == "***"
    assert payload["organization_url"] == "https://dev.azure.com/acme"
    connection_id = payload["id"]

    listed = client.get("/api/v1/integrations/connections").get_json()
    assert listed["count"] == 1
    assert "super-secret" not in str(listed)

    patched = client.patch(
        f"/api/v1/integrations/connections/{connection_id}",
        json={"name": "Renamed", "sync_frequency": 15},
    )
    assert patched.status_code == 200
    assert patched.get_json()["connection"]["name"] == "Renamed"
    assert patched.get_json()["connection"]["sync_frequency"] == 15

    bad = client.patch(
        f"/api/v1/integrations/connections/{connection_id}", json={"platform": "ASANA"}
    )
    assert bad.status_code == 400
    assert client.patch("/api/v1/integrations/connections/999", json={}).status_code == 404

    assert client.delete(f"/api/v1/integrations/connections/{connection_id}").status_code == 204
    assert client.delete(f"/api/v1/integrations/connections/{connection_id}").status_code == 404


def test_create_connection_reports_failed_connection_test(test_app, fake_client):
    fake_client.ok = False
    client = test_app.test_client()
    login(client)

    resp = client.post(
        "/api/v1/integrations/connections",
        json={"platform": "ASANA", "name": "Board", "access_token": "bad"},
    )

    assert resp.status_code == 400
    assert "Invalid access token" in resp.get_json()["error"]
    with test_app.app_context():
        assert IntegrationConnection.query.count() == 0


def test_test_connection_endpoint(test_app, fake_client):
    client = test_app.test_client()
    login(client)

    ok = client.post(
        "/api/v1/integrations/connections/test",
        json={
            "platform": "CONFLUENCE",
            "access_token": "tok",
            "organization_url": "https://acme.atlassian.net",
            "account_email": "me@example.com",
        },
    )
    assert ok.get_json() == {"success": True, "message": "Connection successful"}

    missing = client.post(
        "/api/v1/integrations/connections/test",
        json={"platform": "CONFLUENCE", "access_token": "tok"},
    )
    assert missing.status_code == 400
    assert missing.get_json()["error"] == "Site URL is required for Confluence"


def test_sync_endpoint_validates_request(test_app, fake_client):
    client = test_app.test_client()
    login(client)

    assert client.post("/api/v1/integrations/sync", json={}).status_code == 400
    assert (
        client.post("/api/v1/integrations/sync", json={"connection_id": 999}).status_code
        == 404
    )
    connection_id = _add_connection(test_app)
    bad_date = client.post(
        "/api/v1/integrations/sync",
        json={"connection_id": connection_id, "start_date": "yesterday"},
    )
    assert bad_date.status_code == 400
    bad_projects = client.post(
        "/api/v1/integrations/sync",
        json={"connection_id": connection_id, "project_ids": "p1"},
    )
    assert bad_projects.status_code == 400


@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("post", "/api/v1/integrations/connections"),
        ("post", "/api/v1/integrations/connections/test"),
        ("patch", "/api/v1/integrations/connections/{id}"),
        ("post", "/api/v1/integrations/sync"),
        ("post", "/api/v1/integrations/user-mappings"),
    ],
)
def test_non_object_json_body_is_rejected(test_app, fake_client, method, path):
    connection_id = _add_connection(test_app)
    client = test_app.test_client()
    login(client)

    resp = getattr(client, method)(path.format(id=connection_id), json=["name", "x"])

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Request body must be a JSON object"
    with test_app.app_context():
        assert db.session.get(IntegrationConnection, connection_id).name == "Acme"


def test_sync_endpoint_runs_sync_and_records_history(test_app, fake_client):
    connection_id = _add_connection(test_app)
    client = test_app.test_client()
    login(client, "manager@example.com")

    resp = client.post(
        "/api/v1/integrations/sync",
        json={"connection_id": connection_id, "start_date": "2024-01-01"},
    )

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["status"] == "SUCCESS"
    assert fake_client.closed is True

    history = client.get(
        f"/api/v1/integrations/connections/{connection_id}/sync-history"
    ).get_json()["history"]
    assert len(history) == 1
    assert history[0]["status"] == "SUCCESS"

    status = client.get("/api/v1/integrations/sync/status").get_json()
    assert status["connections"][0]["last_sync_status"] == "SUCCESS"
    assert status["scheduler"]["running"] is False


def test_sync_endpoint_conflicts_while_running(test_app, fake_client):
    connection_id = _add_connection(test_app, sync_in_progress=True)
    with test_app.app_context():
        conn = db.session.get(IntegrationConnection, connection_id)
        conn.sync_started_at = datetime.utcnow()
        db.session.commit()
    client = test_app.test_client()
    login(client)

    resp = client.post("/api/v1/integrations/sync", json={"connection_id": connection_id})

    assert resp.status_code == 409
    assert resp.get_json()["error"] == "Sync already in progress"


def test_user_mappings_round_trip(test_app):
    connection_id = _add_connection(test_app)
    dev_id = _employee_id(test_app, "dev@example.com")
    with test_app.app_context():
        db.session.add(
            WorkItem(
                connection_id=connection_id,
                external_id="1",
                platform="AZURE_DEVOPS",
                title="Item",
                assigned_to="guid-1",
                assigned_to_name="Dev",
                assigned_to_email="dev@example.com",
                tags=[],
            )
        )
        db.session.commit()
    client = test_app.test_client()
    login(client)

    assert client.get("/api/v1/integrations/user-mappings").status_code == 400
    users = client.get(
        f"/api/v1/integrations/user-mappings?connection_id={connection_id}"
    ).get_json()["users"]
    assert users[0]["external_email"] == "dev@example.com"
    assert users[0]["employee_id"] is None

    saved = client.post(
        "/api/v1/integrations/user-mappings",
        json={
            "connection_id": connection_id,
            "mappings": [
                {
                    "external_id": "guid-1",
                    "external_username": "Dev",
                    "external_email": "dev@example.com",
                    "employee_id": dev_id,
                }
            ],
        },
    )
    assert saved.status_code == 200
    assert saved.get_json()["success"] is True

    with test_app.app_context():
        assert IntegrationUserMapping.query.count() == 1
        assert WorkItem.query.one().assigned_to_id == dev_id

    invalid = client.post(
        "/api/v1/integrations/user-mappings",
        json={"connection_id": connection_id, "mappings": "nope"},
    )
    assert invalid.status_code == 400


def test_work_items_are_scoped_for_employees(test_app):
    connection_id = _add_connection(test_app)
    dev_id = _employee_id(test_app, "dev@example.com")
    other_id = _employee_id(test_app, "other@example.com")
    with test_app.app_context():
        db.session.add_all(
            [
                WorkItem(
                    connection_id=connection_id,
                    external_id="1",
                    platform="AZURE_DEVOPS",
                    title="Mine",
                    assigned_to_id=dev_id,
                    modified_date=datetime(2024, 1, 2),
                    tags=[],
                ),
                WorkItem(
                    connection_id=connection_id,
                    external_id="2",
                    platform="AZURE_DEVOPS",
                    title="Theirs",
                    assigned_to_id=other_id,
                    modified_date=datetime(2024, 1, 3),
                    tags=[],
                ),
                WorkItem(
                    connection_id=connection_id,
                    external_id="3",
                    platform="AZURE_DEVOPS",
                    title="Gone",
                    assigned_to_id=dev_id,
                    is_stale=True,
                    tags=[],
                ),
                DeveloperCommit(
                    connection_id=connection_id,
                    employee_id=dev_id,
                    commit_hash="abc",
                    message="Fix #1",
                    linked_work_items=["1"],
                ),
            ]
        )
        db.session.commit()

    employee = test_app.test_client()
    login(employee, "dev@example.com")
    body = employee.get("/api/v1/integrations/work-items?employee_id=%d" % other_id).get_json()
    assert [item["title"] for item in body["work_items"]] == ["Mine"]
    assert body["work_items"][0]["connection_name"] == "Acme"
    assert [c["commit_hash"] for c in body["work_items"][0]["commits"]] == ["abc"]

    with_stale = employee.get("/api/v1/integrations/work-items?include_stale=true").get_json()
    assert {item["title"] for item in with_stale["work_items"]} == {"Mine", "Gone"}

    admin = test_app.test_client()
    login(admin)
    everything = admin.get("/api/v1/integrations/work-items").get_json()
    assert [item["title"] for item in everything["work_items"]] == ["Theirs", "Mine"]
    filtered = admin.get(f"/api/v1/integrations/work-items?employee_id={other_id}").get_json()
    assert [item["title"] for item in filtered["work_items"]] == ["Theirs"]
    assert admin.get("/api/v1/integrations/work-items?start_date=bad").status_code == 400


def test_confluence_pages_are_returned_as_tree(test_app):
    connection_id = _add_connection(
        test_app,
        platform="CONFLUENCE",
        organization_url="https://acme.atlassian.net",
        account_email="me@example.com",
    )
    with test_app.app_context():
        for external_id, parent_id, title in [
            ("2", "1", "Child"),
            ("1", None, "Root"),
            ("3", "missing", "Orphan"),
        ]:
            db.session.add(
                ConfluencePage(
                    connection_id=connection_id,
                    external_id=external_id,
                    parent_id=parent_id,
                    title=title,
                    space_key="ENG",
                )
            )
        db.session.commit()
    azure_id = _add_connection(test_app)
    client = test_app.test_client()
    login(client, "dev@example.com")

    body = client.get(
        f"/api/v1/integrations/confluence/pages?connection_id={connection_id}"
    ).get_json()

    assert body["count"] == 3
    roots = {page["title"]: page for page in body["pages"]}
    assert set(roots) == {"Root", "Orphan"}
    assert [child["title"] for child in roots["Root"]["children"]] == ["Child"]
    assert roots["Root"]["id"] == "1"
    assert (
        client.get(f"/api/v1/integrations/confluence/pages?connection_id={azure_id}").status_code
        == 404
    )


def test_azure_devops_project_details(test_app, fake_client):
    connection_id = _add_connection(test_app)
    client = test_app.test_client()
    login(client)

    assert client.get("/api/v1/integrations/azure-devops/project").status_code == 400
    body = client.get(
        f"/api/v1/integrations/azure-devops/project?connection_id={connection_id}"
        "&project_name=Proj"
    ).get_json()

    assert body["project_name"] == "Proj"
    repo = body["repositories"][0]
    assert repo["commits"][0]["commitId"] == "abc"
    assert repo["pull_requests"][0]["status"] == "active"
    assert body["pipelines"] == [{"id": 1, "name": "ci"}]
    assert body["builds"] == [{"id": 99}]
    assert fake_client.closed is True
