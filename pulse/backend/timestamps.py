"""UTC timestamp helpers.

Every timestamp persisted by the backend is normalized to second precision
``YYYY-MM-DDTHH:MM:SSZ`` so string comparison in SQL matches time order.
"""

from datetime import datetime, timezone


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 string or datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(value: object) -> str | None:
    parsed = parse_timestamp(value)
    return parsed.strftime("%Y-%m-%dT%H:%M:%SZ") if parsed else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def max_timestamp(current: str | None, candidate: object) -> str | None:
    """Return the later of two timestamps, ignoring unparseable values."""
    candidate_iso = to_iso(candidate)
    if candidate_iso is None:
        return current
    if current is None or candidate_iso > current:
        return candidate_iso
    return current
