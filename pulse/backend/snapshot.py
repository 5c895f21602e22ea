"""Activity snapshot: one denormalized ``activity_items`` row per issue, PR or discussion.

The projection is re-runnable. Full mode rebuilds every row (optionally after
truncating); targeted mode recomputes only the given ids and drops ids that
no longer exist in the source tables. ``snapshot_inserted_at`` and the
``attention_*`` flags survive an upsert; everything else is overwritten.
"""

import logging
import re

import aiosqlite

import database as db
import project_field_store
from config import settings
from status_utils import (
    extract_project_field_values, project_history, resolve_status, resolve_work_timestamps,
)
from timestamps import now_iso, to_iso

logger = logging.getLogger(__name__)

SNAPSHOT_CACHE_KEY = "activity-snapshot"
SNAPSHOT_LOCK_ID = 4422100313370043

MENTION_PATTERN = re.compile(r"@([A-Za-z0-9_-]+)")

# Derived columns, in insert order. Audit columns and attention flags are handled separately.
DERIVED_COLUMNS = (
    "item_type", "number", "title", "state", "status", "url",
    "repository_id", "repository_name", "repository_name_with_owner",
    "author_id", "assignee_ids", "reviewer_ids", "mentioned_ids", "commenter_ids", "reactor_ids",
    "linked_pull_request_ids", "linked_issue_ids", "comment_count", "reaction_count",
    "issue_project_status", "issue_project_status_source", "issue_project_status_locked",
    "issue_todo_project_status", "issue_activity_status",
    "project_priority", "project_weight", "project_initiation_options", "project_start_date",
    "started_at", "completed_at", "is_merged",
    "github_created_at", "github_updated_at", "github_closed_at", "github_merged_at",
    "raw_data", "project_history",
)


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


def _id_filter(column: str, ids: list[str] | None) -> tuple[str, list]:
    if ids is None:
        return "", []
    return f" AND {column} IN ({_placeholders(ids)})", list(ids)


def extract_mentioned_logins(text: str | None) -> set[str]:
    return {m.lower() for m in MENTION_PATTERN.findall(text or "")}


# --------------- Source reads ---------------

async def _load_base_rows(conn: aiosqlite.Connection, ids: list[str] | None) -> list[dict]:
    issue_filter, issue_params = _id_filter("i.id", ids)
    pr_filter, pr_params = _id_filter("pr.id", ids)
    rows = await (await conn.execute(
        f"""SELECT i.id AS id, 'issue' AS source_table, i.number, i.title, i.state, i.body, i.author_id,
                   i.repository_id, repo.name AS repository_name,
                   repo.name_with_owner AS repository_name_with_owner,
                   0 AS merged, i.github_created_at, i.github_updated_at, i.github_closed_at,
                   NULL AS github_merged_at, i.data
            FROM issues i
            LEFT JOIN repositories repo ON repo.id = i.repository_id
            WHERE 1=1{issue_filter}
            UNION ALL
            SELECT pr.id AS id, 'pull_request' AS source_table, pr.number, pr.title, pr.state, pr.body, pr.author_id,
                   pr.repository_id, repo.name AS repository_name,
                   repo.name_with_owner AS repository_name_with_owner,
                   pr.merged, pr.github_created_at, pr.github_updated_at, pr.github_closed_at,
                   pr.github_merged_at, pr.data
            FROM pull_requests pr
            LEFT JOIN repositories repo ON repo.id = pr.repository_id
            WHERE 1=1{pr_filter}
            ORDER BY id""",
        issue_params + pr_params,
    )).fetchall()
    return [dict(r) for r in rows]


async def _load_comments(conn: aiosqlite.Connection, ids: list[str] | None) -> dict[str, list[dict]]:
    issue_filter, issue_params = _id_filter("issue_id", ids)
    pr_filter, pr_params = _id_filter("pull_request_id", ids)
    rows = await (await conn.execute(
        f"""SELECT id, COALESCE(issue_id, pull_request_id) AS container_id, author_id, body
            FROM comments
            WHERE (issue_id IS NOT NULL{issue_filter}) OR (pull_request_id IS NOT NULL{pr_filter})
            ORDER BY id""",
        issue_params + pr_params,
    )).fetchall()
    by_container: dict[str, list[dict]] = {}
    for r in rows:
        by_container.setdefault(r["container_id"], []).append(dict(r))
    return by_container


async def _load_reactions(conn: aiosqlite.Connection, subject_ids: list[str]) -> dict[str, list[dict]]:
    if not subject_ids:
        return {}
    by_subject: dict[str, list[dict]] = {}
    # SQLite caps bound parameters; chunk the lookup
    for start in range(0, len(subject_ids), 500):
        chunk = subject_ids[start:start + 500]
        rows = await (await conn.execute(
            f"SELECT id, subject_id, user_id FROM reactions WHERE subject_id IN ({_placeholders(chunk)})",
            chunk,
        )).fetchall()
        for r in rows:
            by_subject.setdefault(r["subject_id"], []).append(dict(r))
    return by_subject


async def _load_reviewers(conn: aiosqlite.Connection, ids: list[str] | None) -> dict[str, set[str]]:
    review_filter, review_params = _id_filter("pull_request_id", ids)
    rows = await (await conn.execute(
        f"""SELECT pull_request_id, author_id AS reviewer_id FROM reviews
            WHERE author_id IS NOT NULL{review_filter}
            UNION
            SELECT pull_request_id, reviewer_id FROM review_requests
            WHERE reviewer_id IS NOT NULL AND removed_at IS NULL{review_filter}""",
        review_params + review_params,
    )).fetchall()
    reviewers: dict[str, set[str]] = {}
    for r in rows:
        reviewers.setdefault(r["pull_request_id"], set()).add(r["reviewer_id"])
    return reviewers


async def _load_links(conn: aiosqlite.Connection) -> tuple[dict[str, set[str]], dict[str, set[str]]]:
    rows = await (await conn.execute("SELECT pull_request_id, issue_id FROM pull_request_issues")).fetchall()
    prs_by_issue: dict[str, set[str]] = {}
    issues_by_pr: dict[str, set[str]] = {}
    for r in rows:
        prs_by_issue.setdefault(r["issue_id"], set()).add(r["pull_request_id"])
        issues_by_pr.setdefault(r["pull_request_id"], set()).add(r["issue_id"])
    return prs_by_issue, issues_by_pr


async def _load_status_history(conn: aiosqlite.Connection, ids: list[str] | None) -> dict[str, list[dict]]:
    history_filter, params = _id_filter("issue_id", ids)
    rows = await (await conn.execute(
        f"""SELECT issue_id, status, occurred_at, source FROM activity_issue_status_history
            WHERE 1=1{history_filter}
            ORDER BY issue_id, occurred_at, id""",
        params,
    )).fetchall()
    history: dict[str, list[dict]] = {}
    for r in rows:
        history.setdefault(r["issue_id"], []).append(
            {"status": r["status"], "occurred_at": r["occurred_at"], "source": r["source"]}
        )
    return history


async def _load_login_index(conn: aiosqlite.Connection) -> dict[str, str]:
    rows = await (await conn.execute("SELECT id, login FROM users WHERE login IS NOT NULL")).fetchall()
    return {r["login"].lower(): r["id"] for r in rows}


# --------------- Row building ---------------

def _item_type(base: dict, raw: dict) -> str:
    if base["source_table"] == "pull_request":
        return "pull_request"
    return "discussion" if raw.get("__typename") == "Discussion" else "issue"


def _item_status(item_type: str, base: dict) -> str:
    if item_type == "pull_request" and base["merged"]:
        return "merged"
    state = (base["state"] or "").lower()
    return "closed" if state == "closed" or (state != "open" and base["github_closed_at"]) else "open"


def build_activity_row(
    base: dict,
    *,
    comments: list[dict],
    reactions: dict[str, list[dict]],
    reviewer_ids: set[str],
    linked_pull_request_ids: set[str],
    linked_issue_ids: set[str],
    status_events: list[dict],
    overrides: dict | None,
    login_index: dict[str, str],
    target_project: str | None,
) -> dict:
    """Compute every derived column for one work item. Pure and deterministic."""
    raw = db.loads(base["data"], {}) or {}
    item_type = _item_type(base, raw)

    mentioned_logins = extract_mentioned_logins(base["body"])
    commenter_ids: set[str] = set()
    reactor_ids: set[str] = set()
    item_reactions = reactions.get(base["id"], [])
    reaction_count = len(item_reactions)
    reactor_ids.update(r["user_id"] for r in item_reactions if r["user_id"])
    for comment in comments:
        if comment["author_id"]:
            commenter_ids.add(comment["author_id"])
        mentioned_logins |= extract_mentioned_logins(comment["body"])
        comment_reactions = reactions.get(comment["id"], [])
        reaction_count += len(comment_reactions)
        reactor_ids.update(r["user_id"] for r in comment_reactions if r["user_id"])
    mentioned_ids = {login_index[login] for login in mentioned_logins if login in login_index}

    row = {
        "id": base["id"],
        "item_type": item_type,
        "number": base["number"],
        "title": base["title"],
        "state": base["state"],
        "status": _item_status(item_type, base),
        "url": raw.get("url"),
        "repository_id": base["repository_id"],
        "repository_name": base["repository_name"],
        "repository_name_with_owner": base["repository_name_with_owner"],
        "author_id": base["author_id"],
        "assignee_ids": db.dumps(sorted(set(raw.get("assigneeIds") or []))),
        "reviewer_ids": db.dumps(sorted(reviewer_ids)),
        "mentioned_ids": db.dumps(sorted(mentioned_ids)),
        "commenter_ids": db.dumps(sorted(commenter_ids)),
        "reactor_ids": db.dumps(sorted(reactor_ids)),
        "linked_pull_request_ids": db.dumps(sorted(linked_pull_request_ids)),
        "linked_issue_ids": db.dumps(sorted(linked_issue_ids)),
        "comment_count": len(comments),
        "reaction_count": reaction_count,
        "issue_project_status": None,
        "issue_project_status_source": "none",
        "issue_project_status_locked": 0,
        "issue_todo_project_status": None,
        "issue_activity_status": None,
        "project_priority": None,
        "project_weight": None,
        "project_initiation_options": None,
        "project_start_date": None,
        "started_at": None,
        "completed_at": None,
        "is_merged": 1 if base["merged"] else 0,
        "github_created_at": to_iso(base["github_created_at"]),
        "github_updated_at": to_iso(base["github_updated_at"]),
        "github_closed_at": to_iso(base["github_closed_at"]),
        "github_merged_at": to_iso(base["github_merged_at"]),
        "raw_data": db.dumps(raw),
        "project_history": db.dumps(project_history(raw)),
    }

    if item_type == "issue":
        resolution = resolve_status(status_events)
        work = resolve_work_timestamps(resolution)
        fields = project_field_store.resolve_project_field_values(
            extract_project_field_values(raw, target_project), overrides,
        )
        row.update({
            "issue_project_status": resolution.status,
            "issue_project_status_source": resolution.source,
            "issue_project_status_locked": 1 if resolution.locked else 0,
            "issue_todo_project_status": resolution.todo_status,
            "issue_activity_status": resolution.activity_status,
            "project_priority": fields["priority"],
            "project_weight": fields["weight"],
            "project_initiation_options": fields["initiationOptions"],
            "project_start_date": fields["startDate"],
            "started_at": work.started_at,
            "completed_at": work.completed_at,
        })
    return row


async def _upsert_rows(conn: aiosqlite.Connection, rows: list[dict], stamp: str) -> None:
    columns = ("id",) + DERIVED_COLUMNS + ("snapshot_inserted_at", "snapshot_updated_at")
    assignments = ", ".join(f"{c} = excluded.{c}" for c in DERIVED_COLUMNS + ("snapshot_updated_at",))
    sql = (
        f"INSERT INTO activity_items ({', '.join(columns)}) VALUES ({_placeholders(list(columns))}) "
        f"ON CONFLICT(id) DO UPDATE SET {assignments}"
    )
    for row in rows:
        await conn.execute(sql, [row[c] for c in ("id",) + DERIVED_COLUMNS] + [stamp, stamp])


# --------------- Refresh ---------------

async def refresh_activity_items_snapshot(
    *, truncate: bool = False, ids: list[str] | None = None,
    target_project: str | None = None, run_id: int | None = None,
) -> dict:
    """Recompute activity items, fully or for ``ids`` only."""
    target = target_project if target_project is not None else settings.TODO_PROJECT_NAME
    targeted = ids is not None
    if targeted:
        ids = sorted({i.strip() for i in ids if i and i.strip()})
        if not ids:
            return {"mode": "targeted", "processed": 0, "deleted": 0, "generated_at": None}

    async with db.advisory_lock(SNAPSHOT_LOCK_ID, owner="activity-snapshot") as conn:
        if truncate and not targeted:
            await conn.execute("DELETE FROM activity_items")

        base_rows = await _load_base_rows(conn, ids)
        comments = await _load_comments(conn, ids)
        subject_ids = [b["id"] for b in base_rows] + [c["id"] for cs in comments.values() for c in cs]
        reactions = await _load_reactions(conn, subject_ids)
        reviewers = await _load_reviewers(conn, ids)
        prs_by_issue, issues_by_pr = await _load_links(conn)
        history = await _load_status_history(conn, ids)
        overrides = await project_field_store.read_overrides(conn, ids)
        login_index = await _load_login_index(conn)

        rows = [
            build_activity_row(
                base,
                comments=comments.get(base["id"], []),
                reactions=reactions,
                reviewer_ids=reviewers.get(base["id"], set()),
                linked_pull_request_ids=prs_by_issue.get(base["id"], set()),
                linked_issue_ids=issues_by_pr.get(base["id"], set()),
                status_events=history.get(base["id"], []),
                overrides=overrides.get(base["id"]),
                login_index=login_index,
                target_project=target,
            )
            for base in base_rows
        ]
        generated_at = now_iso()
        await _upsert_rows(conn, rows, generated_at)

        live_ids = {row["id"] for row in rows}
        if targeted:
            vanished = [i for i in ids if i not in live_ids]
        else:
            existing = await (await conn.execute("SELECT id FROM activity_items")).fetchall()
            vanished = [r["id"] for r in existing if r["id"] not in live_ids]
        for item_id in vanished:
            await conn.execute("DELETE FROM activity_items WHERE id = ?", (item_id,))

        if not targeted:
            await db.write_cache_state(
                conn, SNAPSHOT_CACHE_KEY, generated_at=generated_at, sync_run_id=run_id,
                item_count=len(rows), metadata={"status": "success", "truncate": truncate},
            )

    mode = "targeted" if targeted else "full"
    logger.info(f"Activity snapshot ({mode}) refreshed {len(rows)} items, removed {len(vanished)}")
    return {"mode": mode, "processed": len(rows), "deleted": len(vanished), "generated_at": generated_at}


async def get_snapshot_state() -> dict | None:
    return await db.get_cache_state(SNAPSHOT_CACHE_KEY)
