"""Tests for the activity snapshot materializer."""

import json

import pytest

import database as db
import project_field_store
import snapshot


async def item(item_id: str) -> dict | None:
    conn = await db.get_db()
    try:
        row = await (await conn.execute("SELECT * FROM activity_items WHERE id = ?", (item_id,))).fetchone()
        return dict(row) if row else None
    finally:
        await conn.close()


async def execute(sql: str, params: tuple = ()) -> None:
    conn = await db.get_db()
    try:
        await conn.execute(sql, params)
        await conn.commit()
    finally:
        await conn.close()


@pytest.fixture
async def workspace(seed):
    await seed.repo()
    await seed.user("U_a", "alice")
    await seed.user("U_b", "bob")
    await seed.issue("I_1", 1, author_id="U_a", body="@bob please look", data={"assigneeIds": ["U_b"]})
    await seed.comment("C_1", issue_id="I_1", author_id="U_b", body="@Alice done", created_at="2024-06-04T09:00:00Z")
    await seed.reaction("RE_1", "C_1", "U_a", "2024-06-04T10:00:00Z")
    await seed.pull_request("PR_1", 2, author_id="U_a", created_at="2024-06-05T09:00:00Z",
                            merged_at="2024-06-10T10:00:00Z")
    await seed.link("PR_1", "I_1")
    await seed.review("RV_1", "PR_1", "U_b", "APPROVED", "2024-06-06T09:00:00Z")
    await seed.status("I_1", "in_progress", "2024-06-05T09:00:00Z")
    await seed.status("I_1", "done", "2024-06-10T10:00:00Z")


class TestDerivedColumns:
    async def test_issue_row(self, workspace):
        result = await snapshot.refresh_activity_items_snapshot(target_project="")
        assert result["mode"] == "full"
        assert result["processed"] == 2

        row = await item("I_1")
        assert row["item_type"] == "issue"
        assert row["status"] == "open"
        assert row["repository_name_with_owner"] == "acme/widgets"
        assert json.loads(row["assignee_ids"]) == ["U_b"]
        assert json.loads(row["mentioned_ids"]) == ["U_a", "U_b"]
        assert json.loads(row["commenter_ids"]) == ["U_b"]
        assert json.loads(row["reactor_ids"]) == ["U_a"]
        assert json.loads(row["linked_pull_request_ids"]) == ["PR_1"]
        assert row["comment_count"] == 1
        assert row["reaction_count"] == 1
        assert row["issue_project_status"] == "done"
        assert row["issue_project_status_source"] == "activity"
        assert row["issue_project_status_locked"] == 0
        assert row["started_at"] == "2024-06-05T09:00:00Z"
        assert row["completed_at"] == "2024-06-10T10:00:00Z"

    async def test_pull_request_row(self, workspace):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        row = await item("PR_1")
        assert row["item_type"] == "pull_request"
        assert row["status"] == "merged"
        assert row["is_merged"] == 1
        assert json.loads(row["reviewer_ids"]) == ["U_b"]
        assert json.loads(row["linked_issue_ids"]) == ["I_1"]
        assert row["issue_project_status"] is None
        assert row["issue_project_status_source"] == "none"
        assert row["github_merged_at"] == "2024-06-10T10:00:00Z"

    async def test_issue_without_history(self, seed):
        await seed.repo()
        await seed.issue("I_1", 1, state="CLOSED", closed_at="2024-06-04T09:00:00Z")
        await snapshot.refresh_activity_items_snapshot(target_project="")
        row = await item("I_1")
        assert row["status"] == "closed"
        assert row["issue_project_status"] == "no_status"
        assert row["issue_project_status_source"] == "none"
        assert row["started_at"] is None

    async def test_discussion_row(self, seed):
        await seed.repo()
        await seed.issue("D_1", 1, discussion=True)
        await snapshot.refresh_activity_items_snapshot(target_project="")
        row = await item("D_1")
        assert row["item_type"] == "discussion"
        assert row["issue_project_status"] is None

    async def test_board_status_locks(self, seed):
        await seed.repo()
        await seed.issue("I_1", 1)
        await seed.status("I_1", "in_progress", "2024-06-03T09:00:00Z")
        await seed.status("I_1", "pending", "2024-06-04T09:00:00Z", source="todo_project")
        await snapshot.refresh_activity_items_snapshot(target_project="")
        row = await item("I_1")
        assert row["issue_project_status"] == "pending"
        assert row["issue_project_status_source"] == "todo_project"
        assert row["issue_project_status_locked"] == 1
        assert row["issue_todo_project_status"] == "pending"
        assert row["issue_activity_status"] == "in_progress"

    async def test_project_fields_layered_with_overrides(self, seed):
        await seed.repo()
        await seed.issue("I_1", 1, data={"projectItems": [{
            "projectTitle": "Team Board", "updatedAt": "2024-06-03T09:00:00Z",
            "fields": {"priority": "P1", "weight": "Light"},
        }]})
        await project_field_store.apply_project_field_overrides("I_1", {"priority": "P0"})

        await snapshot.refresh_activity_items_snapshot(target_project="Team Board")

        row = await item("I_1")
        assert row["project_priority"] == "P0"
        assert row["project_weight"] == "Light"
        assert row["project_start_date"] is None


class TestBaseRows:
    @pytest.fixture
    async def two_repos(self, seed):
        await seed.repo()
        await seed.repo("R_2", "gadgets")
        await seed.issue("I_2", 1, repo_id="R_2")
        await seed.pull_request("PR_1", 2)
        await seed.issue("I_1", 3)

    async def test_issues_and_prs_ordered_by_id(self, two_repos):
        conn = await db.get_db()
        try:
            rows = await snapshot._load_base_rows(conn, None)
        finally:
            await conn.close()
        assert [(r["id"], r["source_table"]) for r in rows] == [
            ("I_1", "issue"), ("I_2", "issue"), ("PR_1", "pull_request"),
        ]
        assert rows[1]["repository_name_with_owner"] == "acme/gadgets"
        assert rows[2]["repository_name"] == "widgets"

    async def test_targeted_ids(self, two_repos):
        conn = await db.get_db()
        try:
            rows = await snapshot._load_base_rows(conn, ["PR_1", "I_2"])
        finally:
            await conn.close()
        assert [r["id"] for r in rows] == ["I_2", "PR_1"]

    async def test_refresh_over_joined_rows(self, two_repos):
        full = await snapshot.refresh_activity_items_snapshot(target_project="")
        targeted = await snapshot.refresh_activity_items_snapshot(ids=["I_2", "PR_1"], target_project="")
        assert full["processed"] == 3
        assert targeted["processed"] == 2
        assert (await item("I_2"))["repository_name"] == "gadgets"


class TestRefreshSemantics:
    async def test_idempotent(self, workspace):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        first = await item("I_1")
        await snapshot.refresh_activity_items_snapshot(target_project="")
        second = await item("I_1")
        for column in snapshot.DERIVED_COLUMNS:
            assert first[column] == second[column], column

    async def test_preserves_inserted_at_and_attention(self, workspace):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        await execute(
            "UPDATE activity_items SET snapshot_inserted_at = ?, attention_idle_pr = 1 WHERE id = ?",
            ("2000-01-01T00:00:00Z", "PR_1"),
        )
        await execute("UPDATE pull_requests SET title = ? WHERE id = ?", ("Renamed", "PR_1"))

        await snapshot.refresh_activity_items_snapshot(target_project="")

        row = await item("PR_1")
        assert row["title"] == "Renamed"
        assert row["snapshot_inserted_at"] == "2000-01-01T00:00:00Z"
        assert row["attention_idle_pr"] == 1

    async def test_targeted_refresh_and_delete(self, workspace, seed):
        await seed.issue("I_2", 3)
        await snapshot.refresh_activity_items_snapshot(target_project="")
        await execute("DELETE FROM issues WHERE id = ?", ("I_2",))
        await execute("UPDATE issues SET title = ? WHERE id = ?", ("Retitled", "I_1"))
        await execute("UPDATE pull_requests SET title = ? WHERE id = ?", ("Untouched", "PR_1"))

        result = await snapshot.refresh_activity_items_snapshot(ids=["I_1", " I_2 "], target_project="")

        assert result["mode"] == "targeted"
        assert result["processed"] == 1
        assert result["deleted"] == 1
        assert (await item("I_1"))["title"] == "Retitled"
        assert await item("I_2") is None
        assert (await item("PR_1"))["title"] == "PR 2"

    async def test_targeted_with_no_ids(self):
        result = await snapshot.refresh_activity_items_snapshot(ids=["", "  "])
        assert result["processed"] == 0
        assert result["generated_at"] is None

    async def test_full_refresh_drops_vanished_rows(self, workspace):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        await execute("DELETE FROM pull_requests WHERE id = ?", ("PR_1",))
        result = await snapshot.refresh_activity_items_snapshot(target_project="")
        assert result["deleted"] == 1
        assert await item("PR_1") is None

    async def test_truncate_resets_preserved_columns(self, workspace):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        await execute("UPDATE activity_items SET attention_idle_pr = 1 WHERE id = ?", ("PR_1",))
        await snapshot.refresh_activity_items_snapshot(truncate=True, target_project="")
        assert (await item("PR_1"))["attention_idle_pr"] == 0

    async def test_cache_state_recorded(self, workspace):
        await snapshot.refresh_activity_items_snapshot(target_project="", run_id=None)
        state = await snapshot.get_snapshot_state()
        assert state["item_count"] == 2
        assert state["metadata"]["status"] == "success"


class TestMentionExtraction:
    def test_logins_lowercased(self):
        assert snapshot.extract_mentioned_logins("cc @Alice and @bob-smith, not email@") == {"alice", "bob-smith"}

    def test_empty(self):
        assert snapshot.extract_mentioned_logins(None) == set()
