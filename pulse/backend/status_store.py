"""Append-only issue status history."""

import logging

import aiosqlite

import database as db
from status_utils import ISSUE_STATUSES, map_issue_project_status
from timestamps import to_iso

logger = logging.getLogger(__name__)


async def record_status(
    conn: aiosqlite.Connection, issue_id: str, status: str, occurred_at: str, source: str = "activity",
) -> bool:
    """Append an event; returns False when the identical event already exists."""
    if status not in ISSUE_STATUSES:
        raise ValueError(f"Unknown issue status: {status}")
    cursor = await conn.execute(
        """INSERT OR IGNORE INTO activity_issue_status_history (issue_id, status, occurred_at, source)
           VALUES (?, ?, ?, ?)""",
        (issue_id, status, to_iso(occurred_at), source),
    )
    return cursor.rowcount > 0


async def clear_activity_statuses(conn: aiosqlite.Connection, issue_id: str) -> int:
    cursor = await conn.execute(
        "DELETE FROM activity_issue_status_history WHERE issue_id = ? AND source = 'activity'",
        (issue_id,),
    )
    return cursor.rowcount


async def has_todo_project_events(conn: aiosqlite.Connection, issue_id: str) -> bool:
    row = await (await conn.execute(
        "SELECT 1 FROM activity_issue_status_history WHERE issue_id = ? AND source = 'todo_project' LIMIT 1",
        (issue_id,),
    )).fetchone()
    return row is not None


async def sync_todo_project_events(conn: aiosqlite.Connection, issue_id: str, entries: list[dict]) -> int:
    """Mirror target-board history entries into status history.

    The first time an issue shows up on the board its inferred activity
    events are dropped; from then on the board is authoritative.
    """
    if not entries:
        return 0
    if not await has_todo_project_events(conn, issue_id):
        cleared = await clear_activity_statuses(conn, issue_id)
        if cleared:
            logger.info(f"Issue {issue_id} joined the project board; cleared {cleared} inferred statuses")

    inserted = 0
    for entry in entries:
        if await record_status(conn, issue_id, map_issue_project_status(entry["status"]),
                               entry["occurredAt"], source="todo_project"):
            inserted += 1
    return inserted


async def list_status_history(issue_ids: list[str] | None = None) -> dict[str, list[dict]]:
    """Map issue id to its events ordered oldest first."""
    conn = await db.get_db()
    try:
        query = "SELECT issue_id, status, occurred_at, source FROM activity_issue_status_history"
        params: list = []
        if issue_ids is not None:
            if not issue_ids:
                return {}
            query += f" WHERE issue_id IN ({', '.join('?' for _ in issue_ids)})"
            params.extend(issue_ids)
        query += " ORDER BY issue_id, occurred_at, id"
        rows = await (await conn.execute(query, params)).fetchall()
        history: dict[str, list[dict]] = {}
        for r in rows:
            history.setdefault(r["issue_id"], []).append(
                {"status": r["status"], "occurred_at": r["occurred_at"], "source": r["source"]}
            )
        return history
    finally:
        await conn.close()


async def get_status_history(issue_id: str) -> list[dict]:
    return (await list_status_history([issue_id])).get(issue_id, [])
