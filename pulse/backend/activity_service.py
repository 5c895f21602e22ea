"""Read and mutation surface over the activity snapshot."""

import logging
import math

import aiosqlite

import database as db
import project_field_store
import snapshot
import status_store
from config import settings
from models import ActivityFilters, PageInfo
from project_field_store import (
    InvalidProjectFieldError, PROJECT_FIELDS, comparison_key, resolve_project_field_values, sanitize_value,
)
from status_utils import MANUAL_STATUSES, extract_project_field_values, resolve_status
from timestamps import now_iso

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 25
MAX_PER_PAGE = 100

ATTENTION_FILTERS = (
    "unanswered_mention", "review_request_pending", "stale_open_pr", "idle_pr", "reviewer_unassigned_pr",
    "review_stalled_pr", "merge_delayed_pr", "backlog_issue", "stalled_issue",
)

JSON_LIST_COLUMNS = (
    "assignee_ids", "reviewer_ids", "mentioned_ids", "commenter_ids", "reactor_ids",
    "linked_pull_request_ids", "linked_issue_ids",
)

# API field name -> activity_items column
PROJECT_FIELD_COLUMNS = {
    "priority": "project_priority",
    "weight": "project_weight",
    "initiationOptions": "project_initiation_options",
    "startDate": "project_start_date",
}


class ActivityItemNotFoundError(LookupError):
    pass


class InvalidStatusError(ValueError):
    pass


class StatusLockedError(Exception):
    """The issue's status is owned by the project board."""

    def __init__(self, message: str, todo_status: str | None = None):
        super().__init__(message)
        self.todo_status = todo_status


class StatusConflictError(Exception):
    """The caller's expected status is stale; ``current`` is the authoritative item."""

    def __init__(self, message: str, current: dict | None = None):
        super().__init__(message)
        self.current = current


class ProjectFieldConflictError(Exception):
    def __init__(self, message: str, field: str, current: dict | None = None):
        super().__init__(message)
        self.field = field
        self.current = current


# --------------- Serialization ---------------

def _decode_item(row: aiosqlite.Row | dict, users: dict[str, dict], *, include_raw: bool = False) -> dict:
    record = dict(row)
    for column in JSON_LIST_COLUMNS:
        record[column] = db.loads(record.get(column), [])
    raw_data = db.loads(record.pop("raw_data", None), {})
    history = db.loads(record.pop("project_history", None), [])
    record["is_merged"] = bool(record.get("is_merged"))
    record["issue_project_status_locked"] = bool(record.get("issue_project_status_locked"))
    record["attention"] = {name: bool(record.pop(f"attention_{name}", 0)) for name in ATTENTION_FILTERS}
    record["author"] = users.get(record.get("author_id")) if record.get("author_id") else None
    record["assignees"] = [users[u] for u in record["assignee_ids"] if u in users]
    record["reviewers"] = [users[u] for u in record["reviewer_ids"] if u in users]
    if include_raw:
        record["raw_data"] = raw_data
        record["project_history"] = history
    return record


def _people_ids(rows: list[dict]) -> list[str]:
    ids = []
    for row in rows:
        ids.append(row.get("author_id"))
        ids.extend(db.loads(row.get("assignee_ids"), []))
        ids.extend(db.loads(row.get("reviewer_ids"), []))
    return ids


# --------------- Listing ---------------

def _build_where(filters: ActivityFilters) -> tuple[str, list]:
    clauses, params = [], []

    def _in(column: str, values: list) -> None:
        clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
        params.extend(values)

    if filters.item_types:
        _in("item_type", filters.item_types)
    if filters.repository_ids:
        _in("repository_id", filters.repository_ids)
    if filters.statuses:
        _in("status", filters.statuses)
    if filters.issue_statuses:
        clauses.append(
            f"item_type = 'issue' AND COALESCE(issue_project_status, 'no_status') "
            f"IN ({', '.join('?' for _ in filters.issue_statuses)})"
        )
        params.extend(filters.issue_statuses)
    if filters.user_ids:
        marks = ", ".join("?" for _ in filters.user_ids)
        people = [f"author_id IN ({marks})"] + [
            f"EXISTS (SELECT 1 FROM json_each({c}) WHERE json_each.value IN ({marks}))"
            for c in ("assignee_ids", "reviewer_ids", "mentioned_ids", "commenter_ids")
        ]
        clauses.append("(" + " OR ".join(people) + ")")
        params.extend(list(filters.user_ids) * len(people))
    if filters.attention:
        unknown = [a for a in filters.attention if a not in ATTENTION_FILTERS]
        if unknown:
            raise ValueError(f"Unknown attention filter: {', '.join(unknown)}")
        clauses.append("(" + " OR ".join(f"attention_{a} = 1" for a in filters.attention) + ")")
    if filters.search and filters.search.strip():
        term = filters.search.strip()
        search = ["title LIKE ?", "repository_name_with_owner LIKE ?"]
        params.extend([f"%{term}%", f"%{term}%"])
        if term.lstrip("#").isdigit():
            search.append("number = ?")
            params.append(int(term.lstrip("#")))
        clauses.append("(" + " OR ".join(search) + ")")
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


async def list_activity_items(
    filters: ActivityFilters | None = None, page: int = 1, per_page: int = DEFAULT_PER_PAGE,
) -> dict:
    """Paged activity items, newest update first."""
    filters = filters or ActivityFilters()
    page = max(page, 1)
    per_page = min(max(per_page, 1), MAX_PER_PAGE)
    where, params = _build_where(filters)

    conn = await db.get_db()
    try:
        total = (await (await conn.execute(f"SELECT COUNT(*) FROM activity_items{where}", params)).fetchone())[0]
        rows = await (await conn.execute(
            f"""SELECT * FROM activity_items{where}
                ORDER BY github_updated_at DESC, id
                LIMIT ? OFFSET ?""",
            params + [per_page, (page - 1) * per_page],
        )).fetchall()
        rows = [dict(r) for r in rows]
    finally:
        await conn.close()

    state = await snapshot.get_snapshot_state()
    users = await db.get_users(_people_ids(rows))
    return {
        "items": [_decode_item(r, users) for r in rows],
        "page_info": PageInfo(
            page=page,
            per_page=per_page,
            total_count=total,
            total_pages=math.ceil(total / per_page) if total else 0,
        ).model_dump(),
        "generated_at": state["generated_at"] if state else None,
    }


# --------------- Detail ---------------

async def _fetch_item_row(conn: aiosqlite.Connection, item_id: str) -> dict | None:
    row = await (await conn.execute("SELECT * FROM activity_items WHERE id = ?", (item_id,))).fetchone()
    return dict(row) if row else None


async def get_activity_item(item_id: str) -> dict | None:
    conn = await db.get_db()
    try:
        row = await _fetch_item_row(conn, item_id)
    finally:
        await conn.close()
    if row is None:
        return None
    users = await db.get_users(_people_ids([row]))
    return _decode_item(row, users)


async def get_activity_item_detail(item_id: str) -> dict | None:
    """Item plus comments, reactions, linked items and status history."""
    conn = await db.get_db()
    try:
        row = await _fetch_item_row(conn, item_id)
        if row is None:
            return None
        comments = [dict(r) for r in await (await conn.execute(
            """SELECT id, author_id, review_id, body, github_created_at, github_updated_at, data
               FROM comments WHERE issue_id = ? OR pull_request_id = ?
               ORDER BY github_created_at, id""",
            (item_id, item_id),
        )).fetchall()]
        subject_ids = [item_id] + [c["id"] for c in comments]
        reactions = [dict(r) for r in await (await conn.execute(
            f"""SELECT id, subject_type, subject_id, user_id, content, github_created_at FROM reactions
                WHERE subject_id IN ({', '.join('?' for _ in subject_ids)})
                ORDER BY github_created_at, id""",
            subject_ids,
        )).fetchall()]
        linked_ids = db.loads(row["linked_pull_request_ids"], []) + db.loads(row["linked_issue_ids"], [])
        linked_rows = []
        if linked_ids:
            linked_rows = [dict(r) for r in await (await conn.execute(
                f"""SELECT id, item_type, number, title, status, url, repository_name_with_owner,
                           issue_project_status, is_merged
                    FROM activity_items WHERE id IN ({', '.join('?' for _ in linked_ids)})
                    ORDER BY item_type, number""",
                linked_ids,
            )).fetchall()]
    finally:
        await conn.close()

    user_ids = _people_ids([row]) + [c["author_id"] for c in comments] + [r["user_id"] for r in reactions]
    users = await db.get_users(user_ids)
    item = _decode_item(row, users, include_raw=True)

    reactions_by_subject: dict[str, list[dict]] = {}
    for reaction in reactions:
        reaction["user"] = users.get(reaction["user_id"])
        reactions_by_subject.setdefault(reaction["subject_id"], []).append(reaction)
    for comment in comments:
        data = db.loads(comment.pop("data"), {}) or {}
        comment["url"] = data.get("url")
        comment["author"] = users.get(comment["author_id"])
        comment["reactions"] = reactions_by_subject.get(comment["id"], [])
    for linked in linked_rows:
        linked["is_merged"] = bool(linked["is_merged"])

    detail = {
        "item": item,
        "comments": comments,
        "reactions": reactions_by_subject.get(item_id, []),
        "linked_pull_requests": [r for r in linked_rows if r["item_type"] == "pull_request"],
        "linked_issues": [r for r in linked_rows if r["item_type"] != "pull_request"],
        "status_history": [],
        "project_field_overrides": None,
    }
    if item["item_type"] == "issue":
        detail["status_history"] = await status_store.get_status_history(item_id)
        detail["project_field_overrides"] = await project_field_store.get_project_field_overrides(item_id)
    return detail


# --------------- Status mutation ---------------

async def _require_issue(item_id: str) -> None:
    if await db.find_node_kind(item_id) != "issue":
        raise ActivityItemNotFoundError(f"Issue {item_id} not found")


async def _current_item(item_id: str) -> dict:
    item = await get_activity_item(item_id)
    if item is None:
        await snapshot.refresh_activity_items_snapshot(ids=[item_id])
        item = await get_activity_item(item_id)
    if item is None:
        raise ActivityItemNotFoundError(f"Activity item {item_id} not found")
    return item


async def update_issue_status(item_id: str, status: str, expected_status: str | None = None) -> dict:
    """Set (or with ``no_status`` clear) the manual status of an issue.

    Rejected when the board owns the status, or when ``expected_status`` no
    longer matches; in both cases nothing is written.
    """
    if status not in MANUAL_STATUSES:
        raise InvalidStatusError(f"Invalid status: {status}")
    await _require_issue(item_id)

    async with db.transaction() as conn:
        rows = await (await conn.execute(
            """SELECT status, occurred_at, source FROM activity_issue_status_history
               WHERE issue_id = ? ORDER BY occurred_at, id""",
            (item_id,),
        )).fetchall()
        resolution = resolve_status([dict(r) for r in rows])
        if resolution.locked:
            raise StatusLockedError("Status managed by the to-do list project.", resolution.todo_status)
        if expected_status is not None and expected_status != resolution.status:
            raise StatusConflictError(
                f"Expected status {expected_status} but found {resolution.status}",
                {"id": item_id, "status": resolution.status, "source": resolution.source},
            )
        if status == "no_status":
            await status_store.clear_activity_statuses(conn, item_id)
        else:
            await status_store.record_status(conn, item_id, status, now_iso())

    await snapshot.refresh_activity_items_snapshot(ids=[item_id])
    item = await _current_item(item_id)
    if item["issue_project_status_locked"]:
        await project_field_store.clear_project_field_overrides(item_id)
        await snapshot.refresh_activity_items_snapshot(ids=[item_id])
        item = await _current_item(item_id)
    logger.info(f"Issue {item_id} status set to {status}")
    return item


# --------------- Project field overrides ---------------

def _expected_value(expected: dict, field: str) -> tuple[bool, object]:
    if field not in expected:
        return False, None
    value = expected[field]
    if isinstance(value, dict):
        return ("value" in value), value.get("value")
    return True, value


async def _locked_project_values(conn: aiosqlite.Connection, item_id: str) -> tuple[dict, bool, str | None]:
    """Effective project field values and board lock, read on ``conn``."""
    row = await (await conn.execute("SELECT data FROM issues WHERE id = ?", (item_id,))).fetchone()
    raw = db.loads(row["data"], {}) if row else {}
    overrides = (await project_field_store.read_overrides(conn, [item_id])).get(item_id)
    values = resolve_project_field_values(
        extract_project_field_values(raw or {}, settings.TODO_PROJECT_NAME), overrides,
    )
    history = await (await conn.execute(
        """SELECT status, occurred_at, source FROM activity_issue_status_history
           WHERE issue_id = ? ORDER BY occurred_at, id""",
        (item_id,),
    )).fetchall()
    resolution = resolve_status([dict(r) for r in history])
    return values, resolution.locked, resolution.todo_status


async def update_project_field_override(
    item_id: str, updates: dict[str, object], expected: dict | None = None,
) -> dict:
    """Override todo-project fields of an issue, guarded by ``expected`` values.

    The check against ``expected`` and the write share one immediate
    transaction, so a concurrent edit either lands first and is seen, or waits.
    """
    await _require_issue(item_id)
    unknown = [f for f in updates if f not in PROJECT_FIELDS]
    if unknown:
        raise InvalidProjectFieldError(f"Unknown project field: {', '.join(unknown)}")
    if not updates:
        raise InvalidProjectFieldError("No project field updates provided.")
    sanitized = {field: sanitize_value(field, value) for field, value in updates.items()}
    loaded = await _current_item(item_id)

    expected = expected or {}
    async with db.transaction() as conn:
        values, locked, todo_status = await _locked_project_values(conn, item_id)
        current = {**loaded, **{PROJECT_FIELD_COLUMNS[f]: v for f, v in values.items()}}
        if locked and any(f != "weight" for f in sanitized):
            raise StatusLockedError("Project fields managed by the to-do list project.", todo_status)

        changes = {}
        for field, value in sanitized.items():
            current_key = comparison_key(field, values[field])
            if current_key == comparison_key(field, value):
                continue
            provided, expected_value = _expected_value(expected, field)
            if provided and comparison_key(field, expected_value) != current_key:
                raise ProjectFieldConflictError(f"{field} changed since it was loaded", field, current)
            changes[field] = value
        if changes:
            await project_field_store.write_overrides(conn, item_id, changes)

    if not changes:
        return current
    await snapshot.refresh_activity_items_snapshot(ids=[item_id])
    logger.info(f"Issue {item_id} project fields overridden: {sorted(changes)}")
    return await _current_item(item_id)
