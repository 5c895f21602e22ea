"""Tests for issue status mapping, resolution and project history helpers."""

import pytest

from models import StatusEvent
from status_utils import (
    PROJECT_REMOVED_STATUS,
    extract_project_field_values,
    extract_project_status_entries,
    map_issue_project_status,
    match_project,
    merge_project_history,
    removal_entries,
    resolve_status,
    resolve_work_timestamps,
    snapshot_project_items,
    target_project_membership,
)


class TestMapIssueProjectStatus:
    @pytest.mark.parametrize("label, expected", [
        ("Todo", "todo"),
        ("To Do", "todo"),
        ("In Progress", "in_progress"),
        ("in-progress", "in_progress"),
        ("Doing", "in_progress"),
        ("Done", "done"),
        ("Completed", "done"),
        ("Pending review", "pending"),
        ("Waiting", "pending"),
        ("Cancelled", "canceled"),
        ("No Status", "no_status"),
        ("", "no_status"),
        (None, "no_status"),
        ("Icebox", "no_status"),
    ])
    def test_labels(self, label, expected):
        assert map_issue_project_status(label) == expected


class TestMatchProject:
    def test_case_and_whitespace_insensitive(self):
        assert match_project("  Team   Board ", "team board")

    def test_no_target(self):
        assert not match_project("Team Board", None)
        assert not match_project("Team Board", "  ")

    def test_different_title(self):
        assert not match_project("Roadmap", "Team Board")


class TestResolveStatus:
    def test_empty_history(self):
        resolution = resolve_status([])
        assert resolution.status == "no_status"
        assert resolution.source == "none"
        assert not resolution.locked

    def test_latest_activity_wins(self):
        resolution = resolve_status([
            {"status": "in_progress", "occurred_at": "2024-06-05T09:00:00Z"},
            {"status": "done", "occurred_at": "2024-06-10T09:00:00Z"},
        ])
        assert resolution.status == "done"
        assert resolution.source == "activity"
        assert not resolution.locked

    def test_board_overrides_newer_activity(self):
        resolution = resolve_status([
            {"status": "todo", "occurred_at": "2024-06-03T09:00:00Z", "source": "todo_project"},
            {"status": "in_progress", "occurred_at": "2024-06-05T09:00:00Z"},
        ])
        assert resolution.status == "todo"
        assert resolution.source == "todo_project"
        assert resolution.locked
        assert resolution.activity_status == "in_progress"

    def test_newer_activity_canceled_overrides_board(self):
        resolution = resolve_status([
            StatusEvent(status="in_progress", occurred_at="2024-06-03T09:00:00Z", source="todo_project"),
            StatusEvent(status="canceled", occurred_at="2024-06-07T09:00:00Z", source="activity"),
        ])
        assert resolution.status == "canceled"
        assert resolution.source == "activity"
        assert not resolution.locked

    def test_older_activity_canceled_does_not_override(self):
        resolution = resolve_status([
            StatusEvent(status="canceled", occurred_at="2024-06-01T09:00:00Z"),
            StatusEvent(status="in_progress", occurred_at="2024-06-03T09:00:00Z", source="todo_project"),
        ])
        assert resolution.status == "in_progress"
        assert resolution.locked

    def test_unordered_input(self):
        resolution = resolve_status([
            {"status": "done", "occurred_at": "2024-06-10T09:00:00Z"},
            {"status": "in_progress", "occurred_at": "2024-06-05T09:00:00Z"},
        ])
        assert resolution.status == "done"


class TestWorkTimestamps:
    def test_started_and_completed(self):
        resolution = resolve_status([
            {"status": "in_progress", "occurred_at": "2024-06-05T09:00:00Z"},
            {"status": "done", "occurred_at": "2024-06-10T09:00:00Z"},
        ])
        stamps = resolve_work_timestamps(resolution)
        assert stamps.started_at == "2024-06-05T09:00:00Z"
        assert stamps.completed_at == "2024-06-10T09:00:00Z"

    def test_reset_by_todo(self):
        resolution = resolve_status([
            {"status": "in_progress", "occurred_at": "2024-06-05T09:00:00Z"},
            {"status": "todo", "occurred_at": "2024-06-06T09:00:00Z"},
        ])
        stamps = resolve_work_timestamps(resolution)
        assert stamps.started_at is None
        assert stamps.completed_at is None

    def test_restart_clears_completion(self):
        resolution = resolve_status([
            {"status": "in_progress", "occurred_at": "2024-06-03T09:00:00Z"},
            {"status": "done", "occurred_at": "2024-06-04T09:00:00Z"},
            {"status": "in_progress", "occurred_at": "2024-06-05T09:00:00Z"},
        ])
        stamps = resolve_work_timestamps(resolution)
        assert stamps.started_at == "2024-06-05T09:00:00Z"
        assert stamps.completed_at is None

    def test_done_without_start(self):
        resolution = resolve_status([{"status": "done", "occurred_at": "2024-06-04T09:00:00Z"}])
        assert resolve_work_timestamps(resolution).completed_at is None


class TestProjectHistory:
    def test_entries_filtered_and_deduplicated(self):
        raw = {"projectStatusHistory": [
            {"projectTitle": "Team Board", "status": "Todo", "occurredAt": "2024-06-03T09:00:00Z"},
            {"projectTitle": "Team Board", "status": "In Progress", "occurredAt": "2024-06-03T09:00:00Z"},
            {"projectTitle": "Roadmap", "status": "Done", "occurredAt": "2024-06-04T09:00:00Z"},
            {"projectTitle": "team board", "status": PROJECT_REMOVED_STATUS, "occurredAt": "2024-06-05T09:00:00Z"},
            {"projectTitle": "Team Board", "status": "", "occurredAt": "2024-06-06T09:00:00Z"},
        ]}
        entries = extract_project_status_entries(raw, "Team Board")
        assert entries == [{"status": "In Progress", "occurredAt": "2024-06-03T09:00:00Z"}]

    def test_membership(self):
        raw = {"projectItems": [{"projectTitle": "Team Board"}]}
        assert target_project_membership(raw, "team board")
        assert not target_project_membership(raw, "Roadmap")
        assert not target_project_membership(None, "Team Board")

    def test_snapshot_items_prefer_status_timestamp(self):
        entries = snapshot_project_items([
            {"id": "PVTI_1", "projectTitle": "Team Board", "status": "Todo",
             "statusUpdatedAt": "2024-06-03T09:00:00Z", "updatedAt": "2024-06-04T09:00:00Z"},
            {"id": "PVTI_2", "projectTitle": "Roadmap", "status": None},
        ], "2024-06-10T00:00:00Z")
        assert entries[0]["occurredAt"] == "2024-06-03T09:00:00Z"
        assert entries[1]["occurredAt"] == "2024-06-10T00:00:00Z"
        assert entries[1]["status"] == ""

    def test_removal_entries(self):
        previous = [
            {"projectItemId": "PVTI_1", "projectTitle": "Team Board", "status": "Todo",
             "occurredAt": "2024-06-03T09:00:00Z"},
            {"projectItemId": "PVTI_2", "projectTitle": "Roadmap", "status": "Done",
             "occurredAt": "2024-06-03T09:00:00Z"},
        ]
        removals = removal_entries(previous, [{"id": "PVTI_2", "projectTitle": "Roadmap"}], "2024-06-08T00:00:00Z")
        assert removals == [{
            "projectItemId": "PVTI_1", "projectTitle": "Team Board",
            "status": PROJECT_REMOVED_STATUS, "occurredAt": "2024-06-08T00:00:00Z",
        }]

    def test_removal_not_repeated(self):
        previous = [
            {"projectItemId": "PVTI_1", "projectTitle": "Team Board", "status": "Todo",
             "occurredAt": "2024-06-03T09:00:00Z"},
            {"projectItemId": "PVTI_1", "projectTitle": "Team Board", "status": PROJECT_REMOVED_STATUS,
             "occurredAt": "2024-06-08T00:00:00Z"},
        ]
        assert removal_entries(previous, [], "2024-06-09T00:00:00Z") == []

    def test_merge_deduplicates(self):
        entry = {"projectItemId": "PVTI_1", "status": "Todo", "occurredAt": "2024-06-03T09:00:00Z"}
        later = {"projectItemId": "PVTI_1", "status": "Done", "occurredAt": "2024-06-05T09:00:00Z"}
        merged = merge_project_history([entry], [dict(entry), later])
        assert merged == [entry, later]

    def test_field_values(self):
        raw = {"projectItems": [
            {"projectTitle": "Roadmap", "fields": {"priority": "P0"}},
            {"projectTitle": "Team Board", "updatedAt": "2024-06-03T09:00:00Z",
             "fields": {"priority": " P1 ", "weight": "", "startDate": "2024-06-10"}},
        ]}
        values = extract_project_field_values(raw, "Team Board")
        assert values["priority"] == "P1"
        assert values["weight"] is None
        assert values["startDate"] == "2024-06-10"
        assert values["updatedAt"] == "2024-06-03T09:00:00Z"
