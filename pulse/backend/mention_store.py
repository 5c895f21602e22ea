"""Per-mention response classifications: AI verdicts plus manual overrides."""

import hashlib
import logging

import aiosqlite

import database as db
from timestamps import now_iso, to_iso

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v1"

OVERRIDE_VALUES = {"suppress": False, "force": True, "clear": None}


class InvalidOverrideError(ValueError):
    pass


def classification_key(comment_id: str, mentioned_user_id: str) -> str:
    return f"{comment_id}::{mentioned_user_id}"


def hash_comment_body(body: str | None) -> str:
    return hashlib.sha256((body or "").encode("utf-8")).hexdigest()


def _decode(row: aiosqlite.Row) -> dict:
    record = dict(row)
    for key in ("requires_response", "manual_requires_response"):
        if record[key] is not None:
            record[key] = bool(record[key])
    record["raw_response"] = db.loads(record.get("raw_response"))
    return record


def effective_requires_response(record: dict | None) -> bool | None:
    """Whether the mention needs an answer; None means undecided.

    A manual decision counts only while it is at least as recent as the
    classifier's last evaluation. A later re-evaluation supersedes it.
    """
    if not record:
        return None
    manual = record.get("manual_requires_response")
    manual_at = to_iso(record.get("manual_requires_response_at"))
    evaluated_at = to_iso(record.get("last_evaluated_at"))
    if manual is not None and manual_at is not None and (evaluated_at is None or manual_at >= evaluated_at):
        return manual
    return record.get("requires_response")


def needs_evaluation(record: dict | None, body_hash: str, force: bool = False) -> bool:
    if force or not record or record.get("last_evaluated_at") is None:
        return True
    return record.get("prompt_version") != PROMPT_VERSION or record.get("comment_body_hash") != body_hash


async def get_classifications(keys: list[tuple[str, str]] | None = None) -> dict[str, dict]:
    """Map ``classification_key`` to the stored record."""
    conn = await db.get_db()
    try:
        rows = await (await conn.execute("SELECT * FROM unanswered_mention_classifications")).fetchall()
    finally:
        await conn.close()
    wanted = {classification_key(c, u) for c, u in keys} if keys is not None else None
    records = {}
    for row in rows:
        key = classification_key(row["comment_id"], row["mentioned_user_id"])
        if wanted is None or key in wanted:
            records[key] = _decode(row)
    return records


async def get_classification(comment_id: str, mentioned_user_id: str) -> dict | None:
    conn = await db.get_db()
    try:
        row = await (await conn.execute(
            "SELECT * FROM unanswered_mention_classifications WHERE comment_id = ? AND mentioned_user_id = ?",
            (comment_id, mentioned_user_id),
        )).fetchone()
        return _decode(row) if row else None
    finally:
        await conn.close()


async def upsert_classification(
    comment_id: str, mentioned_user_id: str, *, body_hash: str, requires_response: bool,
    model: str | None, raw_response: object = None, evaluated_at: str | None = None,
) -> None:
    """Store a classifier verdict; manual columns are left alone."""
    conn = await db.get_db()
    try:
        await conn.execute(
            """INSERT INTO unanswered_mention_classifications
                   (comment_id, mentioned_user_id, comment_body_hash, prompt_version,
                    requires_response, model, raw_response, last_evaluated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(comment_id, mentioned_user_id) DO UPDATE SET
                   comment_body_hash = excluded.comment_body_hash,
                   prompt_version = excluded.prompt_version,
                   requires_response = excluded.requires_response,
                   model = excluded.model,
                   raw_response = excluded.raw_response,
                   last_evaluated_at = excluded.last_evaluated_at""",
            (
                comment_id, mentioned_user_id, body_hash, PROMPT_VERSION, 1 if requires_response else 0,
                model, db.dumps(raw_response) if raw_response is not None else None,
                to_iso(evaluated_at) or now_iso(),
            ),
        )
        await conn.commit()
    finally:
        await conn.close()


async def set_mention_override(comment_id: str, mentioned_user_id: str, state: str) -> dict:
    """Apply ``suppress``, ``force`` or ``clear`` to one mention."""
    if state not in OVERRIDE_VALUES:
        raise InvalidOverrideError(f"Unknown override state: {state}")
    conn = await db.get_db()
    try:
        row = await (await conn.execute("SELECT body FROM comments WHERE id = ?", (comment_id,))).fetchone()
        if row is None:
            raise LookupError(f"Comment {comment_id} not found")
        value = OVERRIDE_VALUES[state]
        manual = None if value is None else (1 if value else 0)
        manual_at = None if value is None else now_iso()
        await conn.execute(
            """INSERT INTO unanswered_mention_classifications
                   (comment_id, mentioned_user_id, comment_body_hash, prompt_version,
                    manual_requires_response, manual_requires_response_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(comment_id, mentioned_user_id) DO UPDATE SET
                   manual_requires_response = excluded.manual_requires_response,
                   manual_requires_response_at = excluded.manual_requires_response_at""",
            (comment_id, mentioned_user_id, hash_comment_body(row["body"]), PROMPT_VERSION, manual, manual_at),
        )
        await conn.commit()
    finally:
        await conn.close()
    logger.info(f"Mention override {state} on comment {comment_id} for {mentioned_user_id}")
    record = await get_classification(comment_id, mentioned_user_id)
    return {**record, "effective_requires_response": effective_requires_response(record)}
