"""Issue status mapping, resolution and project-board history helpers."""

import re

from models import StatusEvent, StatusResolution, WorkTimestamps
from timestamps import parse_timestamp, to_iso

ISSUE_STATUSES = ("no_status", "todo", "in_progress", "done", "pending", "canceled")
LOCKED_STATUSES = frozenset({"in_progress", "done", "pending"})
MANUAL_STATUSES = ("no_status", "todo", "in_progress", "done", "pending")

PROJECT_REMOVED_STATUS = "__PROJECT_REMOVED__"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_project_name(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = " ".join(value.split()).lower()
    return normalized or None


def match_project(project_title: object, target: str | None) -> bool:
    """Case- and whitespace-insensitive comparison against the target board title."""
    target_key = normalize_project_name(target)
    if not target_key:
        return False
    return normalize_project_name(project_title) == target_key


def map_issue_project_status(value: str | None) -> str:
    """Map a free-form project board column label onto an issue status."""
    normalized = _NON_ALNUM.sub("_", (value or "").strip().lower()).strip("_")

    if not normalized or normalized in ("no", "no_status"):
        return "no_status"
    if normalized in ("todo", "to_do"):
        return "todo"
    if "progress" in normalized or normalized == "doing":
        return "in_progress"
    if normalized in ("done", "completed", "complete", "finished", "closed"):
        return "done"
    if normalized.startswith("pending") or normalized == "waiting":
        return "pending"
    if normalized in ("canceled", "cancelled"):
        return "canceled"
    return "no_status"


def _sorted_events(events: list[StatusEvent | dict]) -> list[StatusEvent]:
    parsed = [e if isinstance(e, StatusEvent) else StatusEvent(**{
        "status": e["status"], "occurred_at": e["occurred_at"], "source": e.get("source", "activity"),
    }) for e in events]
    # stable sort keeps insertion order for identical timestamps
    return sorted(parsed, key=lambda e: parse_timestamp(e.occurred_at) or parse_timestamp("1970-01-01"))


def resolve_status(events: list[StatusEvent | dict]) -> StatusResolution:
    """Resolve an issue's current status from its history.

    Any todo_project event makes the board authoritative (locked). The only
    thing that outranks it is a newer activity ``canceled`` event, which the
    automation job writes when the issue has left the board.
    """
    ordered = _sorted_events(events)
    todo_events = [e for e in ordered if e.source == "todo_project"]
    activity_events = [e for e in ordered if e.source == "activity"]
    latest_todo = todo_events[-1] if todo_events else None
    latest_activity = activity_events[-1] if activity_events else None

    resolution = StatusResolution(
        todo_status=latest_todo.status if latest_todo else None,
        todo_status_at=latest_todo.occurred_at if latest_todo else None,
        activity_status=latest_activity.status if latest_activity else None,
        activity_status_at=latest_activity.occurred_at if latest_activity else None,
    )

    if latest_todo is None:
        if latest_activity is None:
            return resolution
        resolution.status = latest_activity.status
        resolution.source = "activity"
        resolution.timeline = activity_events
        return resolution

    if (
        latest_activity is not None
        and latest_activity.status == "canceled"
        and parse_timestamp(latest_activity.occurred_at) >= parse_timestamp(latest_todo.occurred_at)
    ):
        resolution.status = "canceled"
        resolution.source = "activity"
        resolution.timeline = todo_events + [latest_activity]
        return resolution

    resolution.status = latest_todo.status
    resolution.source = "todo_project"
    resolution.locked = True
    resolution.timeline = todo_events
    return resolution


def resolve_work_timestamps(resolution: StatusResolution) -> WorkTimestamps:
    """Walk the resolved timeline for when work started and finished."""
    started_at: str | None = None
    completed_at: str | None = None
    for event in resolution.timeline:
        if event.status == "in_progress":
            started_at = event.occurred_at
            completed_at = None
        elif event.status in ("done", "canceled"):
            if started_at and not completed_at:
                completed_at = event.occurred_at
        elif event.status in ("todo", "no_status"):
            started_at = None
            completed_at = None
    return WorkTimestamps(started_at=started_at, completed_at=completed_at)


# --------------- Project Board History ---------------

def project_history(raw: dict | None) -> list[dict]:
    if not isinstance(raw, dict):
        return []
    history = raw.get("projectStatusHistory")
    return [h for h in history if isinstance(h, dict)] if isinstance(history, list) else []


def extract_project_status_entries(raw: dict | None, target_project: str | None) -> list[dict]:
    """Target-project status entries from ``raw.projectStatusHistory``, oldest first.

    Entries are deduplicated by timestamp (the later record wins).
    """
    by_time: dict[str, dict] = {}
    for entry in project_history(raw):
        if not match_project(entry.get("projectTitle"), target_project):
            continue
        status = entry.get("status")
        occurred_at = to_iso(entry.get("occurredAt"))
        if not isinstance(status, str) or not status.strip() or occurred_at is None:
            continue
        if status == PROJECT_REMOVED_STATUS:
            continue
        by_time[occurred_at] = {"status": status.strip(), "occurredAt": occurred_at}
    return [by_time[key] for key in sorted(by_time)]


def target_project_membership(raw: dict | None, target_project: str | None) -> bool:
    """Whether the issue currently sits on the target board."""
    if not isinstance(raw, dict):
        return False
    for item in raw.get("projectItems") or []:
        if isinstance(item, dict) and match_project(item.get("projectTitle"), target_project):
            return True
    return False


def snapshot_project_items(project_items: list[dict], observed_at: str) -> list[dict]:
    """Turn the current project items of an issue into history entries."""
    entries = []
    for item in project_items:
        entries.append({
            "projectItemId": item.get("id"),
            "projectTitle": item.get("projectTitle"),
            "status": item.get("status") or "",
            "occurredAt": to_iso(item.get("statusUpdatedAt")) or to_iso(item.get("updatedAt")) or observed_at,
        })
    return entries


def removal_entries(previous: list[dict], current_items: list[dict], observed_at: str) -> list[dict]:
    """Entries marking projects the issue had before but no longer belongs to."""
    current_ids = {item.get("id") for item in current_items}
    current_titles = {normalize_project_name(item.get("projectTitle")) for item in current_items}
    latest_by_item: dict[str, dict] = {}
    for entry in previous:
        key = entry.get("projectItemId") or entry.get("projectTitle")
        if key is not None:
            latest_by_item[key] = entry

    removals = []
    for key, entry in latest_by_item.items():
        if entry.get("status") == PROJECT_REMOVED_STATUS:
            continue
        if entry.get("projectItemId") in current_ids:
            continue
        if normalize_project_name(entry.get("projectTitle")) in current_titles:
            continue
        removals.append({
            "projectItemId": entry.get("projectItemId"),
            "projectTitle": entry.get("projectTitle"),
            "status": PROJECT_REMOVED_STATUS,
            "occurredAt": observed_at,
        })
    return removals


def merge_project_history(existing: list[dict], incoming: list[dict]) -> list[dict]:
    """Union two histories, deduplicated by ``projectItemId|status|occurredAt``."""
    merged: dict[str, dict] = {}
    for entry in existing + incoming:
        key = f"{entry.get('projectItemId') or entry.get('projectTitle')}|{entry.get('status')}|{entry.get('occurredAt')}"
        merged[key] = entry
    return sorted(merged.values(), key=lambda e: (to_iso(e.get("occurredAt")) or "", e.get("status") or ""))


def extract_project_field_values(raw: dict | None, target_project: str | None) -> dict:
    """Priority, weight, initiation options and start date from the target board item."""
    values = {"priority": None, "weight": None, "initiationOptions": None, "startDate": None, "updatedAt": None}
    if not isinstance(raw, dict):
        return values
    for item in raw.get("projectItems") or []:
        if not isinstance(item, dict) or not match_project(item.get("projectTitle"), target_project):
            continue
        fields = item.get("fields") or {}
        for key in ("priority", "weight", "initiationOptions", "startDate"):
            value = fields.get(key)
            if isinstance(value, str) and value.strip():
                values[key] = value.strip()
        values["updatedAt"] = to_iso(item.get("updatedAt"))
        break
    return values
