"""Tests for database helpers: upserts, watermarks, runs, config and reset."""

import asyncio

import pytest

import database as db


async def count(table: str) -> int:
    conn = await db.get_db()
    try:
        return (await (await conn.execute(f"SELECT COUNT(*) FROM {table}")).fetchone())[0]
    finally:
        await conn.close()


class TestUpserts:
    async def test_issue_upsert_updates_in_place(self, seed):
        await seed.repo()
        await seed.issue("I_1", 1, title="First")
        await seed.issue("I_1", 1, title="Second", state="CLOSED", closed_at="2024-06-04T09:00:00+02:00")

        conn = await db.get_db()
        try:
            row = await (await conn.execute("SELECT * FROM issues WHERE id = 'I_1'")).fetchone()
        finally:
            await conn.close()
        assert row["title"] == "Second"
        assert row["github_closed_at"] == "2024-06-04T07:00:00Z"
        assert await count("issues") == 1

    async def test_user_upsert_keeps_known_name(self):
        async with db.transaction() as conn:
            await db.upsert_user(conn, {"id": "U_1", "login": "alice", "name": "Alice", "kind": "user"})
        async with db.transaction() as conn:
            await db.upsert_user(conn, {"id": "U_1", "login": "alice2", "kind": "user"})
        users = await db.get_users(["U_1", None, "U_missing"])
        assert users == {"U_1": {"id": "U_1", "login": "alice2", "name": "Alice", "avatar_url": None}}

    async def test_replace_pull_request_issues(self, seed):
        await seed.repo()
        await seed.pull_request("PR_1", 1)
        async with db.transaction() as conn:
            await db.replace_pull_request_issues(conn, "PR_1", [{"issue_id": "I_1"}, {"issue_id": "I_2"}])
        async with db.transaction() as conn:
            await db.replace_pull_request_issues(conn, "PR_1", [{"issue_id": "I_2", "issue_number": 2}])

        conn = await db.get_db()
        try:
            rows = await (await conn.execute("SELECT issue_id, issue_number FROM pull_request_issues")).fetchall()
        finally:
            await conn.close()
        assert [tuple(r) for r in rows] == [("I_2", 2)]

    async def test_pull_request_delete_cascades(self, seed):
        await seed.repo()
        await seed.user("U_b", "bob")
        await seed.pull_request("PR_1", 1)
        await seed.review("RV_1", "PR_1", "U_b", "APPROVED", "2024-06-04T09:00:00Z")
        await seed.review_request("RR_1", "PR_1", "U_b", "2024-06-03T10:00:00Z")
        await seed.link("PR_1", "I_1")

        async with db.transaction() as conn:
            await conn.execute("DELETE FROM pull_requests WHERE id = 'PR_1'")

        assert await count("reviews") == 0
        assert await count("review_requests") == 0
        assert await count("pull_request_issues") == 0

    async def test_rerequest_clears_removal(self, seed):
        await seed.repo()
        await seed.user("U_b", "bob")
        await seed.pull_request("PR_1", 1)
        await seed.review_request("RR_1", "PR_1", "U_b", "2024-06-03T10:00:00Z")
        async with db.transaction() as conn:
            assert await db.mark_review_request_removed(conn, "PR_1", "U_b", "2024-06-04T10:00:00Z") == 1
            # a removal older than the request does not close it
            assert await db.mark_review_request_removed(conn, "PR_1", "U_b", "2024-06-01T10:00:00Z") == 0
        await seed.review_request("RR_1", "PR_1", "U_b", "2024-06-05T10:00:00Z")

        conn = await db.get_db()
        try:
            row = await (await conn.execute("SELECT removed_at, requested_at FROM review_requests")).fetchone()
        finally:
            await conn.close()
        assert row["removed_at"] is None
        assert row["requested_at"] == "2024-06-05T10:00:00Z"


class TestReconciliation:
    async def test_delete_missing_comments_cascades(self, seed):
        await seed.repo()
        await seed.issue("I_1", 1)
        await seed.comment("C_1", issue_id="I_1", author_id=None, body="keep", created_at="2024-06-03T09:00:00Z")
        await seed.comment("C_2", issue_id="I_1", author_id=None, body="gone", created_at="2024-06-03T10:00:00Z")
        await seed.reaction("RE_1", "C_2", "U_a", "2024-06-03T11:00:00Z")

        async with db.transaction() as conn:
            removed = await db.delete_missing_comments(conn, ["C_1"], issue_id="I_1")

        assert removed == ["C_2"]
        assert await count("comments") == 1
        assert await count("reactions") == 0

    async def test_delete_missing_comments_needs_one_scope(self):
        async with db.transaction() as conn:
            with pytest.raises(ValueError):
                await db.delete_missing_comments(conn, [])

    async def test_delete_missing_reactions(self, seed):
        await seed.reaction("RE_1", "I_1", "U_a", "2024-06-03T11:00:00Z", subject_type="Issue")
        await seed.reaction("RE_2", "I_1", "U_b", "2024-06-03T11:00:00Z", subject_type="Issue")
        async with db.transaction() as conn:
            assert await db.delete_missing_reactions(conn, "I_1", ["RE_2"]) == ["RE_1"]


class TestTransactions:
    async def test_rollback_on_error(self, seed):
        await seed.repo()
        with pytest.raises(RuntimeError):
            async with db.transaction() as conn:
                await conn.execute("DELETE FROM repositories")
                raise RuntimeError("boom")
        assert await count("repositories") == 1

    async def test_advisory_lock_serializes(self):
        order = []

        async def worker(name: str):
            async with db.advisory_lock(42, owner=name):
                order.append(f"{name}:in")
                await asyncio.sleep(0.01)
                order.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a:in", "a:out", "b:in", "b:out"], ["b:in", "b:out", "a:in", "a:out"])
        assert await count("advisory_locks") == 0


class TestLeases:
    async def test_exclusive_until_released(self):
        assert await db.acquire_lease("sync", "a", 3600)
        assert not await db.acquire_lease("sync", "b", 3600)
        assert await db.acquire_lease("sync", "a", 3600)

        assert not await db.release_lease("sync", "b")
        assert await db.release_lease("sync", "a")
        assert await db.acquire_lease("sync", "b", 3600)

    async def test_expired_lease_taken_over(self):
        assert await db.acquire_lease("sync", "a", -1)
        assert await db.acquire_lease("sync", "b", 3600)
        assert (await db.get_lease("sync"))["owner"] == "b"

    async def test_force_release(self):
        await db.acquire_lease("sync", "a", 3600)
        assert await db.release_lease("sync")
        assert await db.get_lease("sync") is None


class TestSyncState:
    async def test_watermark_never_moves_back(self):
        await db.update_sync_state("issues", None, "2024-06-05T00:00:00Z")
        state = await db.update_sync_state("issues", "c2", "2024-06-01T00:00:00Z")
        assert state["last_item_timestamp"] == "2024-06-05T00:00:00Z"
        assert state["last_cursor"] == "c2"

    async def test_missing(self):
        assert await db.get_sync_state("comments") is None


class TestSyncRuns:
    async def test_lifecycle(self):
        run = await db.create_sync_run("manual", "full", None, None, "2024-06-03T09:00:00Z", scope=["R_1"])
        assert run["status"] == "running"
        await db.update_sync_run(run["id"], status="success", summary={"counts": {"issues": 2}})

        runs = await db.list_sync_runs()
        assert runs[0]["status"] == "success"
        assert runs[0]["summary"] == {"counts": {"issues": 2}}
        assert runs[0]["scope"] == ["R_1"]

    async def test_logs_filtered_by_run(self):
        first = await db.create_sync_run("manual", "full", None, None, "2024-06-03T09:00:00Z")
        second = await db.create_sync_run("manual", "full", None, None, "2024-06-03T10:00:00Z")
        log_id = await db.record_sync_log("issues", "running", first["id"])
        await db.record_sync_log("issues", "running", second["id"])
        await db.update_sync_log(log_id, "success", "Upserted 3 issues.")

        logs = await db.list_sync_logs(run_id=first["id"])
        assert len(logs) == 1
        assert logs[0]["status"] == "success"
        assert logs[0]["message"] == "Upserted 3 issues."

    async def test_fail_running(self):
        run = await db.create_sync_run("manual", "full", None, None, "2024-06-03T09:00:00Z")
        await db.record_sync_log("issues", "running", run["id"])
        result = await db.fail_running_sync_runs("stuck")
        assert result == {"runs": 1, "logs": 1}
        assert (await db.list_sync_runs())[0]["error"] == "stuck"


class TestSyncConfig:
    async def test_defaults(self):
        config = await db.get_sync_config()
        assert config["excluded_repository_ids"] == []
        assert config["holidays"] == []
        assert not config["auto_sync_enabled"]

    async def test_json_fields(self):
        config = await db.update_sync_config(excluded_user_ids=["U_1"], auto_sync_enabled=True)
        assert config["excluded_user_ids"] == ["U_1"]
        assert config["auto_sync_enabled"]


class TestReset:
    async def test_reset_keeps_config_and_logs(self, seed):
        await seed.repo()
        await seed.issue("I_1", 1)
        await db.update_sync_config(org_name="acme", last_successful_sync_at="2024-06-03T00:00:00Z")
        await db.create_sync_run("manual", "full", None, None, "2024-06-03T09:00:00Z")

        await db.reset_data()

        assert await count("issues") == 0
        assert await count("repositories") == 0
        assert await count("sync_runs") == 1
        config = await db.get_sync_config()
        assert config["org_name"] == "acme"
        assert config["last_successful_sync_at"] is None

    async def test_reset_drops_logs(self):
        await db.create_sync_run("manual", "full", None, None, "2024-06-03T09:00:00Z")
        await db.reset_data(preserve_logs=False)
        assert await count("sync_runs") == 0


class TestJson:
    def test_loads_default(self):
        assert db.loads(None, []) == []
        assert db.loads("not json", {}) == {}
        assert db.loads('["a"]') == ["a"]

    def test_dumps_stable(self):
        assert db.dumps({"b": 1, "a": 2}) == '{"a":2,"b":1}'
