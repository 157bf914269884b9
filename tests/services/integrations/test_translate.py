from __future__ import annotations

from datetime import datetime

import pytest

from hrms.models import PLATFORM_ASANA, PLATFORM_AZURE_DEVOPS
from hrms.services.integrations import TranslationError
from hrms.services.integrations.translate import (
    translate_asana_task,
    translate_azure_commit,
    translate_azure_work_item,
    translate_confluence_page,
)


def _azure_record(**overrides):
    fields = {
        "System.Title": "Fix login",
        "System.WorkItemType": "Bug",
        "System.State": "Active",
        "System.AssignedTo": {
            "id": "user-guid",
            "displayName": "Dev One",
            "uniqueName": "Dev.One@Example.com",
        },
        "System.CreatedDate": "2024-01-02T10:00:00Z",
        "System.ChangedDate": "2024-01-03T12:30:00+02:00",
        "System.Tags": "backend; urgent",
        "Microsoft.VSTS.Common.Priority": 2,
        "Microsoft.VSTS.Scheduling.StoryPoints": "5",
    }
    fields.update(overrides)
    return {
        "id": 17,
        "fields": fields,
        "_links": {"html": {"href": "https://dev.azure.com/acme/_workitems/edit/17"}},
    }


def test_azure_work_item_resolves_assignee_by_lowercased_email():
    seen = []

    def resolve(email):
        seen.append(email)
        return 42

    fields = translate_azure_work_item(_azure_record(), "Proj", resolve, project_id="p1")

    assert seen == ["dev.one@example.com"]
    assert fields["external_id"] == "17"
    assert fields["platform"] == PLATFORM_AZURE_DEVOPS
    assert fields["assigned_to_id"] == 42
    assert fields["assigned_to"] == "user-guid"
    assert fields["assigned_to_email"] == "dev.one@example.com"
    assert fields["status"] == "Active"
    assert fields["priority"] == "2"
    assert fields["story_points"] == 5.0
    assert fields["tags"] == ["backend", "urgent"]
    assert fields["project_external_id"] == "p1"
    assert fields["external_url"].endswith("/edit/17")
    assert fields["created_date"] == datetime(2024, 1, 2, 10, 0)
    assert fields["modified_date"] == datetime(2024, 1, 3, 10, 30)


def test_azure_work_item_without_assignee_is_unmapped():
    record = _azure_record()
    del record["fields"]["System.AssignedTo"]
    fields = translate_azure_work_item(record, "Proj")
    assert fields["assigned_to_id"] is None
    assert fields["assigned_to_email"] is None


def test_azure_work_item_missing_id_raises():
    record = _azure_record()
    del record["id"]
    with pytest.raises(TranslationError):
        translate_azure_work_item(record, "Proj")


def test_azure_commit_links_work_items_and_counts_changes():
    record = {
        "commitId": "abc123",
        "comment": "Fix #17 and refs #3",
        "author": {"name": "Dev", "email": "dev@example.com", "date": "2024-02-01T08:00:00Z"},
        "committer": {"name": "CI", "email": "ci@example.com", "date": "2024-02-01T09:00:00Z"},
        "changeCounts": {"Add": 2, "Edit": 3, "Delete": 1},
        "remoteUrl": "https://dev.azure.com/acme/_git/repo/commit/abc123",
    }

    fields = translate_azure_commit(record, employee_id=7, repository_name="repo")

    assert fields["commit_hash"] == "abc123"
    assert fields["employee_id"] == 7
    assert fields["linked_work_items"] == ["17", "3"]
    assert fields["files_changed"] == 6
    assert fields["lines_added"] == 2
    assert fields["lines_deleted"] == 1
    assert fields["commit_date"] == datetime(2024, 2, 1, 9, 0)
    assert fields["author_date"] == datetime(2024, 2, 1, 8, 0)


def test_asana_task_uses_section_of_its_project():
    task = {
        "gid": "t1",
        "name": "Write docs",
        "notes": "details",
        "completed": False,
        "assignee": {"gid": "u1", "name": "Ann", "email": "ANN@example.com"},
        "memberships": [
            {"project": {"gid": "other"}, "section": {"gid": "s0", "name": "Backlog"}},
            {"project": {"gid": "p1"}, "section": {"gid": "s1", "name": "Doing"}},
        ],
        "tags": [{"name": "docs"}],
        "due_on": "2024-06-30",
        "permalink_url": "https://app.asana.com/0/p1/t1",
    }

    fields = translate_asana_task(task, {"gid": "p1", "name": "Board"}, lambda e: 9)

    assert fields["platform"] == PLATFORM_ASANA
    assert fields["external_id"] == "t1"
    assert fields["status"] == "Doing"
    assert fields["section_name"] == "Doing"
    assert fields["section_id"] == "s1"
    assert fields["assigned_to_id"] == 9
    assert fields["assigned_to_email"] == "ann@example.com"
    assert fields["project_name"] == "Board"
    assert fields["tags"] == ["docs"]
    assert fields["due_date"] == datetime(2024, 6, 30)


def test_confluence_page_prefers_walked_parent():
    page = {
        "id": "3",
        "parentId": "stale-remote-value",
        "title": "Runbook",
        "status": "current",
        "body": {"storage": {"value": "<p>hi</p>"}},
        "version": {"number": 4, "message": "edit", "createdAt": "2024-03-01T00:00:00Z"},
    }
    space = {"id": 9, "key": "ENG", "name": "Engineering"}

    fields = translate_confluence_page(page, space, parent_id="2")

    assert fields["parent_id"] == "2"
    assert fields["space_id"] == "9"
    assert fields["content"] == "<p>hi</p>"
    assert fields["version"] == 4
    assert "body" not in fields["raw_payload"]


def test_confluence_page_falls_back_to_record_parent():
    fields = translate_confluence_page({"id": "5", "parentId": 77}, {"id": "9"})
    assert fields["parent_id"] == "77"


@pytest.mark.parametrize(
    ("translate", "record"),
    [
        (
            lambda r: translate_azure_work_item(r, "Proj"),
            {"id": 1, "fields": {"System.Title": "x"}, "_links": "not-a-dict"},
        ),
        (
            lambda r: translate_azure_commit(r, 1, "web"),
            {"commitId": "abc", "author": ["not", "a", "dict"]},
        ),
        (
            lambda r: translate_asana_task(r, {"gid": "p1"}),
            {"gid": "t2", "memberships": [None]},
        ),
        (
            lambda r: translate_asana_task(r, {"gid": "p1"}),
            {"gid": "t3", "custom_fields": ["Priority"]},
        ),
        (
            lambda r: translate_confluence_page(r, {"id": "9"}),
            {"id": "5", "version": 3},
        ),
    ],
)
def test_malformed_nested_values_raise_translation_error(translate, record):
    with pytest.raises(TranslationError, match="Malformed"):
        translate(record)
