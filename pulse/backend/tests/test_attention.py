"""Tests for the attention engine buckets, filters, rankings and flags."""

from datetime import datetime, timezone

import pytest

import attention
import database as db
import mention_store
import snapshot
from models import AttentionThresholds


def at(day: int, hour: int = 10, month: int = 6) -> datetime:
    return datetime(2024, month, day, hour, tzinfo=timezone.utc)


async def insights(now: datetime, **kwargs) -> dict:
    await snapshot.refresh_activity_items_snapshot(target_project="")
    return await attention.get_attention_insights(now=now, **kwargs)


def ids(bucket: list[dict]) -> list[str]:
    return [entry["id"] for entry in bucket]


@pytest.fixture
async def team(seed):
    await seed.repo()
    await seed.user("U_a", "alice")
    await seed.user("U_b", "bob")
    await seed.user("U_c", "carol")


@pytest.fixture
async def requested_pr(team, seed):
    """Alice's PR, opened Monday 09:00, review requested from Bob an hour later."""
    await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")
    await seed.review_request("RR_1", "PR_1", "U_b", "2024-06-03T10:00:00Z")


@pytest.fixture
async def mention(team, seed):
    """Alice asks Bob something on Monday in an older issue."""
    await seed.issue("I_1", 1, author_id="U_c", created_at="2024-05-27T09:00:00Z")
    await seed.comment("C_1", issue_id="I_1", author_id="U_a", body="@bob can you check?",
                       created_at="2024-06-03T09:00:00Z")


class TestPullRequestBuckets:
    async def test_reviewer_unassigned(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")

        result = await insights(at(6, 9))

        assert ids(result["reviewer_unassigned_prs"]) == ["PR_1"]
        assert result["reviewer_unassigned_prs"][0]["waiting_days"] == 3
        assert result["reviewer_unassigned_prs"][0]["author"]["login"] == "alice"
        assert result["stale_open_prs"] == []

    async def test_reviewer_unassigned_below_threshold(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")
        result = await insights(at(4, 9))
        assert result["reviewer_unassigned_prs"] == []

    async def test_closed_pr_ignored(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-05-01T09:00:00Z",
                                state="CLOSED", closed_at="2024-05-02T09:00:00Z")
        result = await insights(at(14))
        assert result["counts"]["stale_open_prs"] == 0
        assert result["counts"]["reviewer_unassigned_prs"] == 0

    async def test_review_stalled_and_stuck(self, requested_pr):
        result = await insights(at(12))

        stalled = result["review_stalled_prs"]
        assert ids(stalled) == ["PR_1"]
        assert stalled[0]["waiting_days"] == 7
        assert stalled[0]["last_reviewer_activity_at"] is None
        assert [r["login"] for r in stalled[0]["reviewers"]] == ["bob"]

        stuck = result["stuck_review_requests"]
        assert len(stuck) == 1
        assert stuck[0]["reviewer"]["id"] == "U_b"
        assert stuck[0]["pull_request"]["id"] == "PR_1"
        assert stuck[0]["waiting_days"] == 7
        assert result["reviewer_unassigned_prs"] == []

    async def test_reviewer_response_clears_stuck_request(self, requested_pr, seed):
        await seed.reaction("RE_1", "PR_1", "U_b", "2024-06-11T09:00:00Z", subject_type="PullRequest")

        result = await insights(at(12))

        assert result["stuck_review_requests"] == []
        assert result["review_stalled_prs"] == []

    async def test_removed_request_not_stuck(self, requested_pr):
        conn = await db.get_db()
        try:
            await db.mark_review_request_removed(conn, "PR_1", "U_b", "2024-06-04T09:00:00Z")
            await conn.commit()
        finally:
            await conn.close()

        result = await insights(at(12))

        assert result["stuck_review_requests"] == []
        assert ids(result["reviewer_unassigned_prs"]) == ["PR_1"]

    async def test_merge_delayed(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")
        await seed.review("RV_1", "PR_1", "U_b", "APPROVED", "2024-06-04T09:00:00Z")

        result = await insights(at(12))

        delayed = result["merge_delayed_prs"]
        assert ids(delayed) == ["PR_1"]
        assert delayed[0]["approved_at"] == "2024-06-04T09:00:00Z"
        assert delayed[0]["waiting_days"] == 6

    async def test_changes_requested_blocks_merge_delay(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")
        await seed.review("RV_1", "PR_1", "U_b", "APPROVED", "2024-06-04T09:00:00Z")
        await seed.review("RV_2", "PR_1", "U_c", "CHANGES_REQUESTED", "2024-06-05T09:00:00Z")

        result = await insights(at(12))
        assert result["merge_delayed_prs"] == []

    async def test_self_approval_ignored(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")
        await seed.review("RV_1", "PR_1", "U_a", "APPROVED", "2024-06-04T09:00:00Z")

        result = await insights(at(12))
        assert result["merge_delayed_prs"] == []
        assert ids(result["reviewer_unassigned_prs"]) == ["PR_1"]

    async def test_stale_and_idle(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-05-01T09:00:00Z")

        result = await insights(at(14))

        assert ids(result["stale_open_prs"]) == ["PR_1"]
        assert ids(result["idle_open_prs"]) == ["PR_1"]
        assert result["stale_open_prs"][0]["age_days"] >= 20

    async def test_recent_update_is_not_idle(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-05-01T09:00:00Z",
                                updated_at="2024-06-13T09:00:00Z")
        result = await insights(at(14))
        assert ids(result["stale_open_prs"]) == ["PR_1"]
        assert result["idle_open_prs"] == []

    async def test_custom_thresholds(self, team, seed):
        await seed.pull_request("PR_1", 1, author_id="U_a", created_at="2024-06-03T09:00:00Z")
        result = await insights(at(6, 9), thresholds=AttentionThresholds(stale_pr_days=3))
        assert ids(result["stale_open_prs"]) == ["PR_1"]
        assert result["thresholds"]["stale_pr_days"] == 3


class TestIssueBuckets:
    async def test_backlog(self, team, seed):
        await seed.issue("I_1", 1, author_id="U_a", created_at="2024-03-01T09:00:00Z")
        await seed.issue("I_2", 2, author_id="U_a", created_at="2024-06-10T09:00:00Z")
        await seed.issue("I_3", 3, author_id="U_a", created_at="2024-03-01T09:00:00Z",
                         state="CLOSED", closed_at="2024-03-02T09:00:00Z")

        result = await insights(at(14))

        assert ids(result["backlog_issues"]) == ["I_1"]
        assert result["backlog_issues"][0]["issue_project_status"] == "no_status"

    async def test_stalled_in_progress(self, team, seed):
        await seed.issue("I_1", 1, author_id="U_a", created_at="2024-03-01T09:00:00Z")
        await seed.status("I_1", "in_progress", "2024-04-01T09:00:00Z")
        await seed.issue("I_2", 2, author_id="U_a", created_at="2024-03-01T09:00:00Z")
        await seed.status("I_2", "in_progress", "2024-06-10T09:00:00Z")

        result = await insights(at(14))

        assert ids(result["stalled_in_progress_issues"]) == ["I_1"]
        assert result["stalled_in_progress_issues"][0]["started_at"] == "2024-04-01T09:00:00Z"
        # started work is never backlog
        assert result["backlog_issues"] == []


class TestMentions:
    async def test_unanswered(self, mention):
        result = await insights(at(14))

        mentions = result["unanswered_mentions"]
        assert len(mentions) == 1
        assert mentions[0]["comment_id"] == "C_1"
        assert mentions[0]["target"]["login"] == "bob"
        assert mentions[0]["container"]["id"] == "I_1"
        assert mentions[0]["waiting_days"] == 9
        assert mentions[0]["classification"]["effective_requires_response"] is None

    async def test_too_recent(self, mention):
        result = await insights(at(5))
        assert result["unanswered_mentions"] == []

    async def test_answered_by_reply(self, mention, seed):
        await seed.comment("C_2", issue_id="I_1", author_id="U_b", body="on it", created_at="2024-06-04T09:00:00Z")
        result = await insights(at(14))
        assert result["unanswered_mentions"] == []

    async def test_answered_by_reaction(self, mention, seed):
        await seed.reaction("RE_1", "C_1", "U_b", "2024-06-04T09:00:00Z")
        result = await insights(at(14))
        assert result["unanswered_mentions"] == []

    async def test_reply_before_mention_does_not_count(self, mention, seed):
        await seed.comment("C_0", issue_id="I_1", author_id="U_b", body="earlier", created_at="2024-06-01T09:00:00Z")
        result = await insights(at(14))
        assert len(result["unanswered_mentions"]) == 1

    async def test_self_mention_ignored(self, team, seed):
        await seed.issue("I_1", 1, author_id="U_c", created_at="2024-05-27T09:00:00Z")
        await seed.comment("C_1", issue_id="I_1", author_id="U_a", body="note to @alice",
                           created_at="2024-06-03T09:00:00Z")
        result = await insights(at(14))
        assert result["unanswered_mentions"] == []

    async def test_suppressed_manually(self, mention):
        await mention_store.set_mention_override("C_1", "U_b", "suppress")
        result = await insights(at(14))
        assert result["unanswered_mentions"] == []

    async def test_classifier_verdict_and_manual_staleness(self, mention):
        await mention_store.upsert_classification(
            "C_1", "U_b", body_hash="h", requires_response=False, model="sonnet",
            evaluated_at="2024-06-05T00:00:00Z",
        )
        assert (await insights(at(14)))["unanswered_mentions"] == []

        # A newer manual decision wins over the classifier
        await mention_store.set_mention_override("C_1", "U_b", "force")
        forced = (await insights(at(14)))["unanswered_mentions"]
        assert len(forced) == 1
        assert forced[0]["classification"]["manual_requires_response"] is True

        # A re-evaluation after the manual decision supersedes it
        await mention_store.upsert_classification(
            "C_1", "U_b", body_hash="h", requires_response=False, model="sonnet",
            evaluated_at="2099-01-01T00:00:00Z",
        )
        assert (await insights(at(14)))["unanswered_mentions"] == []


class TestScopeAndExclusions:
    async def test_excluded_repository(self, requested_pr):
        await db.update_sync_config(excluded_repository_ids=["R_1"])
        result = await insights(at(12))
        assert all(count == 0 for count in result["counts"].values())

    async def test_excluded_author(self, requested_pr):
        await db.update_sync_config(excluded_user_ids=["U_a"])
        result = await insights(at(12))
        assert result["review_stalled_prs"] == []
        assert result["stuck_review_requests"] == []

    async def test_excluded_reviewer(self, requested_pr):
        await db.update_sync_config(excluded_user_ids=["U_b"])
        result = await insights(at(12))
        assert result["stuck_review_requests"] == []
        assert ids(result["reviewer_unassigned_prs"]) == ["PR_1"]

    async def test_holidays_shorten_waits(self, requested_pr):
        await db.update_sync_config(holidays=["2024-06-10", "2024-06-11"])
        result = await insights(at(12))
        assert result["stuck_review_requests"][0]["waiting_days"] == 5

    async def test_repository_filter(self, requested_pr):
        result = await insights(at(12), repository_ids=["R_other"])
        assert result["counts"]["stuck_review_requests"] == 0
        assert result["counts"]["review_stalled_prs"] == 0

    async def test_user_filter(self, requested_pr, mention):
        result = await insights(at(14), user_ids=["U_b"])
        assert result["counts"]["stuck_review_requests"] == 1
        assert result["counts"]["unanswered_mentions"] == 1

        result = await insights(at(14), user_ids=["U_c"])
        assert result["counts"]["stuck_review_requests"] == 0


class TestRankingsAndFlags:
    async def test_rankings(self, requested_pr, mention):
        result = await insights(at(14))
        rankings = result["rankings"]
        assert rankings["reviewers_by_stuck_requests"] == [
            {"user": {"id": "U_b", "login": "bob", "name": None, "avatar_url": None}, "count": 1},
        ]
        assert rankings["users_by_unanswered_mentions"][0]["user"]["id"] == "U_b"
        waits = rankings["reviewers_by_average_wait"]
        assert waits[0]["user"]["id"] == "U_b"
        assert waits[0]["requests"] == 1

    async def test_refresh_flags(self, requested_pr, mention):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        result = await attention.refresh_attention_flags(now=at(14))

        assert result["flags"]["attention_review_request_pending"] == 1
        assert result["flags"]["attention_unanswered_mention"] == 1

        conn = await db.get_db()
        try:
            rows = await (await conn.execute(
                """SELECT id, attention_review_request_pending, attention_unanswered_mention,
                          attention_review_stalled_pr FROM activity_items ORDER BY id"""
            )).fetchall()
        finally:
            await conn.close()
        flags = {r["id"]: dict(r) for r in rows}
        assert flags["PR_1"]["attention_review_request_pending"] == 1
        assert flags["PR_1"]["attention_review_stalled_pr"] == 1
        assert flags["I_1"]["attention_unanswered_mention"] == 1
        assert flags["I_1"]["attention_review_request_pending"] == 0

    async def test_flags_cleared_when_resolved(self, requested_pr, seed):
        await snapshot.refresh_activity_items_snapshot(target_project="")
        await attention.refresh_attention_flags(now=at(12))
        await seed.review("RV_1", "PR_1", "U_b", "COMMENTED", "2024-06-12T09:00:00Z")

        result = await attention.refresh_attention_flags(now=at(12))
        assert result["flags"]["attention_review_request_pending"] == 0


class TestExcerpt:
    def test_collapses_whitespace(self):
        assert attention.extract_comment_excerpt("  hello\n\n world ") == "hello world"

    def test_truncates(self):
        excerpt = attention.extract_comment_excerpt("x" * 500)
        assert len(excerpt) == attention.EXCERPT_CHARS
        assert excerpt.endswith("...")

    def test_empty(self):
        assert attention.extract_comment_excerpt("   ") is None
