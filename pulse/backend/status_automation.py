"""Status automation: infers in-progress, done and canceled issue statuses.

The job runs in one transaction under a fixed advisory lock and is skipped
when the cached run state already records a success for the current sync
generation (``sync_config.last_successful_sync_at``).
"""

import logging

import aiosqlite

import database as db
import status_store
from config import settings
from status_utils import PROJECT_REMOVED_STATUS, match_project, project_history, target_project_membership
from timestamps import now_iso, to_iso

logger = logging.getLogger(__name__)

AUTOMATION_CACHE_KEY = "issue-status-automation"
AUTOMATION_LOCK_ID = 4422100313370042


async def _latest_activity_status(conn: aiosqlite.Connection, issue_id: str, at: str) -> str | None:
    row = await (await conn.execute(
        """SELECT status FROM activity_issue_status_history
           WHERE issue_id = ? AND source = 'activity' AND occurred_at <= ?
           ORDER BY occurred_at DESC, id DESC LIMIT 1""",
        (issue_id, at),
    )).fetchone()
    return row["status"] if row else None


async def insert_in_progress_events(conn: aiosqlite.Connection) -> int:
    """Issues with a linked PR move to in_progress when the first PR was opened."""
    rows = await (await conn.execute(
        """SELECT pri.issue_id, MIN(pr.github_created_at) AS started_at
           FROM pull_request_issues pri
           JOIN pull_requests pr ON pr.id = pri.pull_request_id
           JOIN issues i ON i.id = pri.issue_id
           WHERE pr.github_created_at IS NOT NULL
             AND NOT EXISTS (
               SELECT 1 FROM activity_issue_status_history h
               WHERE h.issue_id = pri.issue_id AND h.source = 'todo_project'
             )
           GROUP BY pri.issue_id"""
    )).fetchall()
    inserted = 0
    for row in rows:
        if await _latest_activity_status(conn, row["issue_id"], row["started_at"]) == "in_progress":
            continue
        if await status_store.record_status(conn, row["issue_id"], "in_progress", row["started_at"]):
            inserted += 1
    return inserted


async def insert_done_events(conn: aiosqlite.Connection) -> int:
    """Closed issues with a merged linked PR are done at max(closedAt, latest mergedAt)."""
    rows = await (await conn.execute(
        """SELECT i.id AS issue_id, i.github_closed_at AS closed_at, MAX(pr.github_merged_at) AS merged_at
           FROM issues i
           JOIN pull_request_issues pri ON pri.issue_id = i.id
           JOIN pull_requests pr ON pr.id = pri.pull_request_id
           WHERE UPPER(COALESCE(i.state, '')) = 'CLOSED'
             AND i.github_closed_at IS NOT NULL
             AND pr.merged = 1
             AND pr.github_merged_at IS NOT NULL
             AND NOT EXISTS (
               SELECT 1 FROM activity_issue_status_history h
               WHERE h.issue_id = i.id AND h.source = 'todo_project'
             )
           GROUP BY i.id, i.github_closed_at"""
    )).fetchall()
    inserted = 0
    for row in rows:
        done_at = max(row["closed_at"], row["merged_at"])
        if await _latest_activity_status(conn, row["issue_id"], done_at) == "done":
            continue
        if await status_store.record_status(conn, row["issue_id"], "done", done_at):
            inserted += 1
    return inserted


def _removal_time(raw: dict, target_project: str, after: str) -> str | None:
    removals = [
        to_iso(entry.get("occurredAt"))
        for entry in project_history(raw)
        if entry.get("status") == PROJECT_REMOVED_STATUS and match_project(entry.get("projectTitle"), target_project)
    ]
    removals = [r for r in removals if r and r >= after]
    return min(removals) if removals else None


async def insert_canceled_events(conn: aiosqlite.Connection, target_project: str | None) -> int:
    """Board says in_progress but the issue is no longer on the board: canceled."""
    if not target_project:
        return 0
    rows = await (await conn.execute(
        """SELECT h.issue_id, h.occurred_at, i.data
           FROM activity_issue_status_history h
           JOIN issues i ON i.id = h.issue_id
           WHERE h.source = 'todo_project'
             AND h.status = 'in_progress'
             AND h.id = (
               SELECT h2.id FROM activity_issue_status_history h2
               WHERE h2.issue_id = h.issue_id
               ORDER BY h2.occurred_at DESC, h2.id DESC LIMIT 1
             )"""
    )).fetchall()
    inserted = 0
    for row in rows:
        raw = db.loads(row["data"], {})
        if target_project_membership(raw, target_project):
            continue
        canceled_at = _removal_time(raw, target_project, row["occurred_at"]) or now_iso()
        if await status_store.record_status(conn, row["issue_id"], "canceled", canceled_at):
            inserted += 1
    return inserted


async def ensure_issue_status_automation(
    *, run_id: int | None = None, trigger: str = "manual", force: bool = False,
    target_project: str | None = None,
) -> dict:
    """Run the automation pass unless it already succeeded for this sync generation."""
    config = await db.get_sync_config()
    last_sync = config.get("last_successful_sync_at")
    target = target_project if target_project is not None else settings.TODO_PROJECT_NAME
    result = {
        "processed": False, "run_id": run_id, "trigger": trigger,
        "inserted_in_progress": 0, "inserted_done": 0, "inserted_canceled": 0,
    }

    try:
        async with db.advisory_lock(AUTOMATION_LOCK_ID, owner=f"status-automation:{trigger}") as conn:
            state = await db.read_cache_state(conn, AUTOMATION_CACHE_KEY)
            metadata = state["metadata"] if state else {}
            if (
                not force
                and metadata.get("status") == "success"
                and metadata.get("last_successful_sync_at") == last_sync
            ):
                logger.info(f"Status automation already applied for sync generation {last_sync}")
                return {**result, "skipped": True}

            started_at = now_iso()
            await db.write_cache_state(
                conn, AUTOMATION_CACHE_KEY, generated_at=started_at, sync_run_id=run_id, item_count=0,
                metadata={"status": "running", "last_successful_sync_at": last_sync,
                          "run_id": run_id, "trigger": trigger},
            )
            result["inserted_in_progress"] = await insert_in_progress_events(conn)
            result["inserted_done"] = await insert_done_events(conn)
            result["inserted_canceled"] = await insert_canceled_events(conn, target)
            total = result["inserted_in_progress"] + result["inserted_done"] + result["inserted_canceled"]
            await db.write_cache_state(
                conn, AUTOMATION_CACHE_KEY, generated_at=now_iso(), sync_run_id=run_id, item_count=total,
                metadata={
                    "status": "success", "last_successful_sync_at": last_sync, "run_id": run_id,
                    "trigger": trigger, "inserted_in_progress": result["inserted_in_progress"],
                    "inserted_done": result["inserted_done"],
                    "inserted_canceled": result["inserted_canceled"],
                },
            )
    except Exception as e:
        logger.exception(f"Status automation failed (trigger={trigger})")
        try:
            async with db.transaction() as conn:
                await db.write_cache_state(
                    conn, AUTOMATION_CACHE_KEY, generated_at=now_iso(), sync_run_id=run_id, item_count=0,
                    metadata={"status": "failed", "last_successful_sync_at": last_sync, "run_id": run_id,
                              "trigger": trigger, "error": str(e) or e.__class__.__name__},
                )
        except Exception:
            logger.exception("Could not record status automation failure")
        raise

    result["processed"] = True
    logger.info(
        f"Status automation inserted {result['inserted_in_progress']} in_progress, "
        f"{result['inserted_done']} done, {result['inserted_canceled']} canceled events"
    )
    return result


async def get_automation_state() -> dict | None:
    return await db.get_cache_state(AUTOMATION_CACHE_KEY)
