"""Manual overrides for todo-project fields (priority, weight, initiation, start date)."""

import logging
from datetime import date

import aiosqlite

import database as db
from timestamps import now_iso, to_iso

logger = logging.getLogger(__name__)

# API field name -> column prefix
PROJECT_FIELDS = {
    "priority": "priority",
    "weight": "weight",
    "initiationOptions": "initiation",
    "startDate": "start_date",
}

PRIORITY_VALUES = {"P0", "P1", "P2"}
WEIGHT_VALUES = {"Heavy", "Medium", "Light"}
INITIATION_VALUES = {"Open to Start", "Requires Approval"}


class InvalidProjectFieldError(ValueError):
    pass


def normalize_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def sanitize_value(field: str, value: object) -> str | None:
    """Validate and canonicalize a user-supplied field value."""
    if field not in PROJECT_FIELDS:
        raise InvalidProjectFieldError(f"Unknown project field: {field}")
    if value is not None and not isinstance(value, str):
        raise InvalidProjectFieldError(f"{field} must be a string or null")
    text = normalize_text(value)
    if text is None:
        return None
    if field == "priority":
        if text.upper() not in PRIORITY_VALUES:
            raise InvalidProjectFieldError(f"Invalid priority: {text}")
        return text.upper()
    if field == "weight":
        formatted = text[:1].upper() + text[1:].lower()
        if formatted not in WEIGHT_VALUES:
            raise InvalidProjectFieldError(f"Invalid weight: {text}")
        return formatted
    if field == "initiationOptions":
        if text not in INITIATION_VALUES:
            raise InvalidProjectFieldError(f"Invalid initiation option: {text}")
        return text
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        raise InvalidProjectFieldError(f"Invalid start date: {text}") from None


def comparison_key(field: str, value: object) -> str | None:
    """Loose form used to compare current/expected/next values."""
    text = normalize_text(value)
    if text is None:
        return None
    if field == "startDate":
        try:
            return date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            return text
    if field == "priority":
        return text.upper()
    if field == "weight":
        return text.lower()
    return text


def _decode(row: aiosqlite.Row | None) -> dict | None:
    if row is None:
        return None
    record = dict(row)
    return {
        "issue_id": record["issue_id"],
        "updated_at": record["updated_at"],
        **{
            field: {"value": record[f"{prefix}_value"], "updated_at": record[f"{prefix}_updated_at"]}
            for field, prefix in PROJECT_FIELDS.items()
        },
    }


async def read_overrides(conn: aiosqlite.Connection, issue_ids: list[str] | None = None) -> dict[str, dict]:
    query = "SELECT * FROM activity_issue_project_overrides"
    params: list = []
    if issue_ids is not None:
        if not issue_ids:
            return {}
        query += f" WHERE issue_id IN ({', '.join('?' for _ in issue_ids)})"
        params.extend(issue_ids)
    rows = await (await conn.execute(query, params)).fetchall()
    return {r["issue_id"]: _decode(r) for r in rows}


async def get_project_field_overrides(issue_id: str) -> dict | None:
    conn = await db.get_db()
    try:
        return (await read_overrides(conn, [issue_id])).get(issue_id)
    finally:
        await conn.close()


async def write_overrides(
    conn: aiosqlite.Connection, issue_id: str, updates: dict[str, str | None],
) -> dict | None:
    """Merge updates into the override row on an open transaction.

    Unchanged input returns the existing row; a row whose fields all become
    null is deleted.
    """
    existing = (await read_overrides(conn, [issue_id])).get(issue_id)
    now = now_iso()
    next_values: dict[str, dict] = {
        field: dict(existing[field]) if existing else {"value": None, "updated_at": None}
        for field in PROJECT_FIELDS
    }
    changed = False
    for field, value in updates.items():
        if field not in PROJECT_FIELDS:
            raise InvalidProjectFieldError(f"Unknown project field: {field}")
        normalized = normalize_text(value)
        if normalized == next_values[field]["value"]:
            continue
        next_values[field] = {"value": normalized, "updated_at": now if normalized is not None else None}
        changed = True

    if not changed:
        return existing

    if all(entry["value"] is None for entry in next_values.values()):
        await conn.execute("DELETE FROM activity_issue_project_overrides WHERE issue_id = ?", (issue_id,))
        return None
    columns = []
    values: list = [issue_id]
    for field, prefix in PROJECT_FIELDS.items():
        columns.extend([f"{prefix}_value", f"{prefix}_updated_at"])
        values.extend([next_values[field]["value"], next_values[field]["updated_at"]])
    values.append(now)
    assignments = ", ".join(f"{c} = excluded.{c}" for c in columns + ["updated_at"])
    await conn.execute(
        f"""INSERT INTO activity_issue_project_overrides (issue_id, {', '.join(columns)}, updated_at)
            VALUES ({', '.join('?' for _ in values)})
            ON CONFLICT(issue_id) DO UPDATE SET {assignments}""",
        values,
    )
    return (await read_overrides(conn, [issue_id])).get(issue_id)


async def apply_project_field_overrides(issue_id: str, updates: dict[str, str | None]) -> dict | None:
    async with db.transaction() as conn:
        return await write_overrides(conn, issue_id, updates)


async def clear_project_field_overrides(issue_id: str) -> None:
    conn = await db.get_db()
    try:
        await conn.execute("DELETE FROM activity_issue_project_overrides WHERE issue_id = ?", (issue_id,))
        await conn.commit()
    finally:
        await conn.close()


def resolve_project_field_values(project_values: dict, overrides: dict | None) -> dict[str, str | None]:
    """Effective field values: an override wins unless the board value is newer."""
    board_updated_at = to_iso(project_values.get("updatedAt"))
    resolved = {}
    for field in PROJECT_FIELDS:
        board_value = project_values.get(field)
        override = (overrides or {}).get(field) or {}
        override_at = override.get("updated_at")
        if override.get("value") is not None and (
            board_value is None or board_updated_at is None or (override_at and override_at >= board_updated_at)
        ):
            resolved[field] = override["value"]
        else:
            resolved[field] = board_value
    return resolved
