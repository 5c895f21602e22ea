"""SQLite database schema and persistence operations using aiosqlite."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

import aiosqlite

from config import settings
from timestamps import max_timestamp, now_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

DB_PATH = settings.DB_PATH

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    login TEXT,
    name TEXT,
    avatar_url TEXT,
    kind TEXT NOT NULL DEFAULT 'user',
    github_created_at TEXT,
    github_updated_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    name_with_owner TEXT NOT NULL,
    owner_id TEXT REFERENCES users(id),
    url TEXT,
    is_private INTEGER NOT NULL DEFAULT 0,
    github_created_at TEXT,
    github_updated_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS issues (
    id TEXT PRIMARY KEY,
    number INTEGER NOT NULL,
    repository_id TEXT NOT NULL REFERENCES repositories(id),
    author_id TEXT,
    title TEXT,
    state TEXT,
    body TEXT,
    github_created_at TEXT,
    github_updated_at TEXT,
    github_closed_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS pull_requests (
    id TEXT PRIMARY KEY,
    number INTEGER NOT NULL,
    repository_id TEXT NOT NULL REFERENCES repositories(id),
    author_id TEXT,
    title TEXT,
    state TEXT,
    body TEXT,
    merged INTEGER NOT NULL DEFAULT 0,
    github_created_at TEXT,
    github_updated_at TEXT,
    github_closed_at TEXT,
    github_merged_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE(repository_id, number)
);

CREATE TABLE IF NOT EXISTS pull_request_issues (
    pull_request_id TEXT NOT NULL REFERENCES pull_requests(id) ON DELETE CASCADE,
    issue_id TEXT NOT NULL,
    issue_number INTEGER,
    issue_title TEXT,
    issue_state TEXT,
    issue_url TEXT,
    issue_repository TEXT,
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (pull_request_id, issue_id)
);

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    pull_request_id TEXT NOT NULL REFERENCES pull_requests(id) ON DELETE CASCADE,
    author_id TEXT,
    state TEXT,
    github_submitted_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS comments (
    id TEXT PRIMARY KEY,
    issue_id TEXT,
    pull_request_id TEXT,
    review_id TEXT,
    author_id TEXT,
    body TEXT,
    github_created_at TEXT,
    github_updated_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS reactions (
    id TEXT PRIMARY KEY,
    subject_type TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    user_id TEXT,
    content TEXT,
    github_created_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS review_requests (
    id TEXT PRIMARY KEY,
    pull_request_id TEXT NOT NULL REFERENCES pull_requests(id) ON DELETE CASCADE,
    reviewer_id TEXT,
    requested_at TEXT,
    removed_at TEXT,
    data TEXT NOT NULL DEFAULT '{}',
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS activity_issue_status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('no_status', 'todo', 'in_progress', 'done', 'pending', 'canceled')),
    occurred_at TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'activity' CHECK (source IN ('activity', 'todo_project')),
    inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE(issue_id, status, occurred_at, source)
);

CREATE TABLE IF NOT EXISTS activity_issue_project_overrides (
    issue_id TEXT PRIMARY KEY,
    priority_value TEXT,
    priority_updated_at TEXT,
    weight_value TEXT,
    weight_updated_at TEXT,
    initiation_value TEXT,
    initiation_updated_at TEXT,
    start_date_value TEXT,
    start_date_updated_at TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS activity_items (
    id TEXT PRIMARY KEY,
    item_type TEXT NOT NULL CHECK (item_type IN ('issue', 'pull_request', 'discussion')),
    number INTEGER,
    title TEXT,
    state TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    url TEXT,
    repository_id TEXT,
    repository_name TEXT,
    repository_name_with_owner TEXT,
    author_id TEXT,
    assignee_ids TEXT NOT NULL DEFAULT '[]',
    reviewer_ids TEXT NOT NULL DEFAULT '[]',
    mentioned_ids TEXT NOT NULL DEFAULT '[]',
    commenter_ids TEXT NOT NULL DEFAULT '[]',
    reactor_ids TEXT NOT NULL DEFAULT '[]',
    linked_pull_request_ids TEXT NOT NULL DEFAULT '[]',
    linked_issue_ids TEXT NOT NULL DEFAULT '[]',
    comment_count INTEGER NOT NULL DEFAULT 0,
    reaction_count INTEGER NOT NULL DEFAULT 0,
    issue_project_status TEXT,
    issue_project_status_source TEXT NOT NULL DEFAULT 'none',
    issue_project_status_locked INTEGER NOT NULL DEFAULT 0,
    issue_todo_project_status TEXT,
    issue_activity_status TEXT,
    project_priority TEXT,
    project_weight TEXT,
    project_initiation_options TEXT,
    project_start_date TEXT,
    started_at TEXT,
    completed_at TEXT,
    is_merged INTEGER NOT NULL DEFAULT 0,
    github_created_at TEXT,
    github_updated_at TEXT,
    github_closed_at TEXT,
    github_merged_at TEXT,
    attention_unanswered_mention INTEGER NOT NULL DEFAULT 0,
    attention_review_request_pending INTEGER NOT NULL DEFAULT 0,
    attention_stale_open_pr INTEGER NOT NULL DEFAULT 0,
    attention_idle_pr INTEGER NOT NULL DEFAULT 0,
    attention_reviewer_unassigned_pr INTEGER NOT NULL DEFAULT 0,
    attention_review_stalled_pr INTEGER NOT NULL DEFAULT 0,
    attention_merge_delayed_pr INTEGER NOT NULL DEFAULT 0,
    attention_backlog_issue INTEGER NOT NULL DEFAULT 0,
    attention_stalled_issue INTEGER NOT NULL DEFAULT 0,
    raw_data TEXT NOT NULL DEFAULT '{}',
    project_history TEXT NOT NULL DEFAULT '[]',
    snapshot_inserted_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    snapshot_updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS sync_config (
    id TEXT PRIMARY KEY,
    org_name TEXT,
    auto_sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_interval_minutes INTEGER NOT NULL DEFAULT 60,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    excluded_repository_ids TEXT NOT NULL DEFAULT '[]',
    excluded_user_ids TEXT NOT NULL DEFAULT '[]',
    holidays TEXT NOT NULL DEFAULT '[]',
    last_sync_started_at TEXT,
    last_sync_completed_at TEXT,
    last_successful_sync_at TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS sync_state (
    resource TEXT PRIMARY KEY,
    last_cursor TEXT,
    last_item_timestamp TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_type TEXT NOT NULL DEFAULT 'manual',
    strategy TEXT NOT NULL DEFAULT 'incremental',
    since TEXT,
    until TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    error TEXT,
    summary TEXT NOT NULL DEFAULT '{}',
    started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    resource TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    message TEXT,
    run_id INTEGER REFERENCES sync_runs(id),
    started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS activity_cache_state (
    cache_key TEXT PRIMARY KEY,
    generated_at TEXT,
    sync_run_id INTEGER,
    item_count INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS advisory_locks (
    lock_id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL DEFAULT '',
    acquired_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS run_leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS unanswered_mention_classifications (
    comment_id TEXT NOT NULL,
    mentioned_user_id TEXT NOT NULL,
    comment_body_hash TEXT NOT NULL DEFAULT '',
    prompt_version TEXT NOT NULL DEFAULT '',
    requires_response INTEGER,
    model TEXT,
    raw_response TEXT,
    last_evaluated_at TEXT,
    manual_requires_response INTEGER,
    manual_requires_response_at TEXT,
    PRIMARY KEY (comment_id, mentioned_user_id)
);

CREATE INDEX IF NOT EXISTS idx_issues_repository ON issues(repository_id);
CREATE INDEX IF NOT EXISTS idx_pull_requests_repository ON pull_requests(repository_id);
CREATE INDEX IF NOT EXISTS idx_comments_issue ON comments(issue_id);
CREATE INDEX IF NOT EXISTS idx_comments_pull_request ON comments(pull_request_id);
CREATE INDEX IF NOT EXISTS idx_reactions_subject ON reactions(subject_id);
CREATE INDEX IF NOT EXISTS idx_reviews_pull_request ON reviews(pull_request_id);
CREATE INDEX IF NOT EXISTS idx_review_requests_pull_request ON review_requests(pull_request_id);
CREATE INDEX IF NOT EXISTS idx_status_history_issue ON activity_issue_status_history(issue_id, occurred_at);
CREATE INDEX IF NOT EXISTS idx_pull_request_issues_issue ON pull_request_issues(issue_id);
"""

SYNC_CONFIG_ID = "default"
SYNC_CONFIG_JSON_FIELDS = ("excluded_repository_ids", "excluded_user_ids", "holidays")

# Collected tables wiped by reset_data, children first
COLLECTED_TABLES = [
    "reactions", "comments", "review_requests", "reviews", "pull_request_issues",
    "pull_requests", "issues", "repositories", "users",
    "activity_issue_status_history", "activity_issue_project_overrides", "activity_items",
    "unanswered_mention_classifications", "activity_cache_state", "sync_state",
]


async def get_db() -> aiosqlite.Connection:
    """Open a database connection with row factory enabled."""
    db = await aiosqlite.connect(DB_PATH, timeout=30)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    return db


async def init_db() -> None:
    """Initialize database schema and the singleton sync config row."""
    db = await get_db()
    try:
        await db.executescript(SCHEMA)
        await db.commit()
        # Idempotent ALTER migrations
        for alter in [
            "ALTER TABLE sync_runs ADD COLUMN scope TEXT NOT NULL DEFAULT '[]'",
        ]:
            try:
                await db.execute(alter)
                await db.commit()
            except Exception:
                pass  # Column already exists
        await db.execute(
            """INSERT OR IGNORE INTO sync_config
               (id, org_name, sync_interval_minutes, timezone, holidays)
               VALUES (?, ?, ?, ?, ?)""",
            (
                SYNC_CONFIG_ID,
                settings.GITHUB_ORG or None,
                settings.SYNC_INTERVAL_MINUTES,
                settings.TIMEZONE,
                json.dumps(settings.holiday_list),
            ),
        )
        await db.commit()
    finally:
        await db.close()


@asynccontextmanager
async def transaction():
    """Yield a connection inside ``BEGIN IMMEDIATE``; commit on exit, roll back on error."""
    db = await get_db()
    try:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()
    finally:
        await db.close()


def dumps(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def loads(value: str | None, default: object = None) -> object:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


# --------------- Advisory Locks ---------------

# Keyed by (event loop, lock id): asyncio locks must not cross loops.
_process_locks: dict[tuple[int, int], asyncio.Lock] = {}


def _process_lock(lock_id: int) -> asyncio.Lock:
    key = (id(asyncio.get_running_loop()), lock_id)
    lock = _process_locks.get(key)
    if lock is None:
        lock = _process_locks[key] = asyncio.Lock()
    return lock


@asynccontextmanager
async def advisory_lock(lock_id: int, owner: str = ""):
    """Transaction-scoped lock, serialized in-process and across processes.

    The lock row lives only inside the write transaction; ``BEGIN IMMEDIATE``
    blocks other processes until it commits or rolls back.
    """
    async with _process_lock(lock_id):
        async with transaction() as db:
            await db.execute(
                "INSERT INTO advisory_locks (lock_id, owner, acquired_at) VALUES (?, ?, ?)",
                (lock_id, owner, now_iso()),
            )
            yield db
            await db.execute("DELETE FROM advisory_locks WHERE lock_id = ?", (lock_id,))


async def acquire_lease(name: str, owner: str, ttl_seconds: int) -> bool:
    """Claim a named lease that outlives any one transaction.

    Returns False while another owner holds an unexpired lease. An expired
    lease (its holder died mid-run) is taken over.
    """
    now = utcnow()
    async with transaction() as db:
        row = await (await db.execute(
            "SELECT owner, expires_at FROM run_leases WHERE name = ?", (name,)
        )).fetchone()
        if row and row["owner"] != owner and row["expires_at"] > to_iso(now):
            return False
        await db.execute(
            """INSERT INTO run_leases (name, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                   owner = excluded.owner,
                   acquired_at = excluded.acquired_at,
                   expires_at = excluded.expires_at""",
            (name, owner, to_iso(now), to_iso(now + timedelta(seconds=ttl_seconds))),
        )
    if row and row["owner"] != owner:
        logger.warning(f"Took over expired lease {name} from {row['owner']}")
    return True


async def release_lease(name: str, owner: str | None = None) -> bool:
    """Drop a lease; without ``owner`` it is released whoever holds it."""
    async with transaction() as db:
        if owner is None:
            cursor = await db.execute("DELETE FROM run_leases WHERE name = ?", (name,))
        else:
            cursor = await db.execute("DELETE FROM run_leases WHERE name = ? AND owner = ?", (name, owner))
        return cursor.rowcount > 0


async def get_lease(name: str) -> dict | None:
    db = await get_db()
    try:
        row = await (await db.execute("SELECT * FROM run_leases WHERE name = ?", (name,))).fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


# --------------- Entity Upserts ---------------
# Write helpers take an open connection so a collected page commits atomically.

async def upsert_user(db: aiosqlite.Connection, actor: dict) -> None:
    await db.execute(
        """INSERT INTO users (id, login, name, avatar_url, kind, github_created_at, github_updated_at, data)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               login = excluded.login,
               name = COALESCE(excluded.name, users.name),
               avatar_url = COALESCE(excluded.avatar_url, users.avatar_url),
               kind = excluded.kind,
               github_created_at = COALESCE(excluded.github_created_at, users.github_created_at),
               github_updated_at = COALESCE(excluded.github_updated_at, users.github_updated_at),
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            actor["id"], actor.get("login"), actor.get("name"), actor.get("avatar_url"),
            actor.get("kind", "user"), to_iso(actor.get("created_at")),
            to_iso(actor.get("updated_at")), dumps(actor),
        ),
    )


async def upsert_repository(db: aiosqlite.Connection, repo: dict) -> None:
    await db.execute(
        """INSERT INTO repositories
               (id, name, name_with_owner, owner_id, url, is_private, github_created_at, github_updated_at, data)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               name = excluded.name,
               name_with_owner = excluded.name_with_owner,
               owner_id = excluded.owner_id,
               url = excluded.url,
               is_private = excluded.is_private,
               github_created_at = excluded.github_created_at,
               github_updated_at = excluded.github_updated_at,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            repo["id"], repo["name"], repo["name_with_owner"], repo.get("owner_id"),
            repo.get("url"), 1 if repo.get("is_private") else 0,
            to_iso(repo.get("created_at")), to_iso(repo.get("updated_at")), dumps(repo.get("data", {})),
        ),
    )


async def upsert_issue(db: aiosqlite.Connection, issue: dict) -> None:
    """Upsert an issue or discussion row."""
    await db.execute(
        """INSERT INTO issues
               (id, number, repository_id, author_id, title, state, body,
                github_created_at, github_updated_at, github_closed_at, data)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               number = excluded.number,
               repository_id = excluded.repository_id,
               author_id = excluded.author_id,
               title = excluded.title,
               state = excluded.state,
               body = excluded.body,
               github_created_at = excluded.github_created_at,
               github_updated_at = excluded.github_updated_at,
               github_closed_at = excluded.github_closed_at,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            issue["id"], issue["number"], issue["repository_id"], issue.get("author_id"),
            issue.get("title"), issue.get("state"), issue.get("body"),
            to_iso(issue.get("created_at")), to_iso(issue.get("updated_at")),
            to_iso(issue.get("closed_at")), dumps(issue.get("data", {})),
        ),
    )


async def upsert_pull_request(db: aiosqlite.Connection, pr: dict) -> None:
    await db.execute(
        """INSERT INTO pull_requests
               (id, number, repository_id, author_id, title, state, body, merged,
                github_created_at, github_updated_at, github_closed_at, github_merged_at, data)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               number = excluded.number,
               repository_id = excluded.repository_id,
               author_id = excluded.author_id,
               title = excluded.title,
               state = excluded.state,
               body = excluded.body,
               merged = excluded.merged,
               github_created_at = excluded.github_created_at,
               github_updated_at = excluded.github_updated_at,
               github_closed_at = excluded.github_closed_at,
               github_merged_at = excluded.github_merged_at,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            pr["id"], pr["number"], pr["repository_id"], pr.get("author_id"), pr.get("title"),
            pr.get("state"), pr.get("body"), 1 if pr.get("merged") else 0,
            to_iso(pr.get("created_at")), to_iso(pr.get("updated_at")),
            to_iso(pr.get("closed_at")), to_iso(pr.get("merged_at")), dumps(pr.get("data", {})),
        ),
    )


async def replace_pull_request_issues(db: aiosqlite.Connection, pull_request_id: str, links: list[dict]) -> None:
    """Make the stored linked-issue set of a pull request match ``links`` exactly."""
    keep_ids = [link["issue_id"] for link in links]
    await _delete_missing(db, "pull_request_issues", "pull_request_id", pull_request_id, "issue_id", keep_ids)
    for link in links:
        await db.execute(
            """INSERT INTO pull_request_issues
                   (pull_request_id, issue_id, issue_number, issue_title, issue_state, issue_url, issue_repository)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(pull_request_id, issue_id) DO UPDATE SET
                   issue_number = excluded.issue_number,
                   issue_title = excluded.issue_title,
                   issue_state = excluded.issue_state,
                   issue_url = excluded.issue_url,
                   issue_repository = excluded.issue_repository,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
            (
                pull_request_id, link["issue_id"], link.get("issue_number"), link.get("issue_title"),
                link.get("issue_state"), link.get("issue_url"), link.get("issue_repository"),
            ),
        )


async def upsert_review(db: aiosqlite.Connection, review: dict) -> None:
    await db.execute(
        """INSERT INTO reviews (id, pull_request_id, author_id, state, github_submitted_at, data)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               pull_request_id = excluded.pull_request_id,
               author_id = excluded.author_id,
               state = excluded.state,
               github_submitted_at = excluded.github_submitted_at,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            review["id"], review["pull_request_id"], review.get("author_id"), review.get("state"),
            to_iso(review.get("submitted_at")), dumps(review.get("data", {})),
        ),
    )


async def upsert_comment(db: aiosqlite.Connection, comment: dict) -> None:
    await db.execute(
        """INSERT INTO comments
               (id, issue_id, pull_request_id, review_id, author_id, body,
                github_created_at, github_updated_at, data)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               issue_id = excluded.issue_id,
               pull_request_id = excluded.pull_request_id,
               review_id = excluded.review_id,
               author_id = excluded.author_id,
               body = excluded.body,
               github_created_at = excluded.github_created_at,
               github_updated_at = excluded.github_updated_at,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            comment["id"], comment.get("issue_id"), comment.get("pull_request_id"),
            comment.get("review_id"), comment.get("author_id"), comment.get("body"),
            to_iso(comment.get("created_at")), to_iso(comment.get("updated_at")),
            dumps(comment.get("data", {})),
        ),
    )


async def upsert_reaction(db: aiosqlite.Connection, reaction: dict) -> None:
    await db.execute(
        """INSERT INTO reactions (id, subject_type, subject_id, user_id, content, github_created_at, data)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
               subject_type = excluded.subject_type,
               subject_id = excluded.subject_id,
               user_id = excluded.user_id,
               content = excluded.content,
               github_created_at = excluded.github_created_at,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            reaction["id"], reaction["subject_type"], reaction["subject_id"], reaction.get("user_id"),
            reaction.get("content"), to_iso(reaction.get("created_at")), dumps(reaction.get("data", {})),
        ),
    )


async def upsert_review_request(db: aiosqlite.Connection, request: dict) -> None:
    """Record a standing review request; re-requesting clears an earlier removal."""
    await db.execute(
        """INSERT INTO review_requests (id, pull_request_id, reviewer_id, requested_at, removed_at, data)
           VALUES (?, ?, ?, ?, NULL, ?)
           ON CONFLICT(id) DO UPDATE SET
               pull_request_id = excluded.pull_request_id,
               reviewer_id = excluded.reviewer_id,
               requested_at = excluded.requested_at,
               removed_at = NULL,
               data = excluded.data,
               updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')""",
        (
            request["id"], request["pull_request_id"], request.get("reviewer_id"),
            to_iso(request.get("requested_at")), dumps(request.get("data", {})),
        ),
    )


async def mark_review_request_removed(
    db: aiosqlite.Connection, pull_request_id: str, reviewer_id: str, removed_at: str,
) -> int:
    """Close every open request for this reviewer that predates the removal."""
    cursor = await db.execute(
        """UPDATE review_requests
           SET removed_at = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')
           WHERE pull_request_id = ? AND reviewer_id = ? AND removed_at IS NULL
             AND (requested_at IS NULL OR requested_at <= ?)""",
        (to_iso(removed_at), pull_request_id, reviewer_id, to_iso(removed_at)),
    )
    return cursor.rowcount


# --------------- Keep-set Reconciliation ---------------

async def _delete_missing(
    db: aiosqlite.Connection, table: str, scope_column: str, scope_value: str,
    id_column: str, keep_ids: list[str],
) -> list[str]:
    rows = await (await db.execute(
        f"SELECT {id_column} FROM {table} WHERE {scope_column} = ?", (scope_value,)
    )).fetchall()
    keep = set(keep_ids)
    stale = [r[0] for r in rows if r[0] not in keep]
    for stale_id in stale:
        await db.execute(
            f"DELETE FROM {table} WHERE {scope_column} = ? AND {id_column} = ?", (scope_value, stale_id)
        )
    return stale


async def delete_missing_comments(
    db: aiosqlite.Connection, keep_ids: list[str], *,
    issue_id: str | None = None, pull_request_id: str | None = None,
) -> list[str]:
    """Delete comments of one container that upstream no longer returns, with their reactions."""
    if (issue_id is None) == (pull_request_id is None):
        raise ValueError("Exactly one of issue_id or pull_request_id is required")
    column, value = ("issue_id", issue_id) if issue_id is not None else ("pull_request_id", pull_request_id)
    stale = await _delete_missing(db, "comments", column, value, "id", keep_ids)
    for comment_id in stale:
        await db.execute("DELETE FROM reactions WHERE subject_id = ?", (comment_id,))
        await db.execute(
            "DELETE FROM unanswered_mention_classifications WHERE comment_id = ?", (comment_id,)
        )
    if stale:
        logger.info(f"Removed {len(stale)} deleted comments from {column}={value}")
    return stale


async def delete_missing_reactions(db: aiosqlite.Connection, subject_id: str, keep_ids: list[str]) -> list[str]:
    return await _delete_missing(db, "reactions", "subject_id", subject_id, "id", keep_ids)


# --------------- Entity Lookups ---------------

async def get_pull_request_by_number(db: aiosqlite.Connection, repository_id: str, number: int) -> dict | None:
    row = await (await db.execute(
        "SELECT * FROM pull_requests WHERE repository_id = ? AND number = ?", (repository_id, number)
    )).fetchone()
    return dict(row) if row else None


async def review_exists(db: aiosqlite.Connection, review_id: str) -> bool:
    row = await (await db.execute("SELECT 1 FROM reviews WHERE id = ?", (review_id,))).fetchone()
    return row is not None


async def get_issue_data(db: aiosqlite.Connection, issue_id: str) -> dict | None:
    row = await (await db.execute("SELECT data FROM issues WHERE id = ?", (issue_id,))).fetchone()
    return loads(row["data"], {}) if row else None


async def get_repository(repository_id: str) -> dict | None:
    db = await get_db()
    try:
        row = await (await db.execute("SELECT * FROM repositories WHERE id = ?", (repository_id,))).fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def list_repositories() -> list[dict]:
    db = await get_db()
    try:
        rows = await (await db.execute("SELECT * FROM repositories ORDER BY name_with_owner")).fetchall()
        return [dict(r) for r in rows]
    finally:
        await db.close()


async def get_users(user_ids: list[str]) -> dict[str, dict]:
    """Map user id to a compact ``{id, login, name, avatar_url}`` reference."""
    ids = sorted({u for u in user_ids if u})
    if not ids:
        return {}
    db = await get_db()
    try:
        placeholders = ", ".join("?" for _ in ids)
        rows = await (await db.execute(
            f"SELECT id, login, name, avatar_url FROM users WHERE id IN ({placeholders})", ids
        )).fetchall()
        return {r["id"]: dict(r) for r in rows}
    finally:
        await db.close()


async def find_node_kind(node_id: str) -> str | None:
    """Return 'issue', 'discussion' or 'pull_request' for a stored node id."""
    db = await get_db()
    try:
        row = await (await db.execute("SELECT data FROM issues WHERE id = ?", (node_id,))).fetchone()
        if row:
            data = loads(row["data"], {})
            return "discussion" if data.get("__typename") == "Discussion" else "issue"
        row = await (await db.execute("SELECT 1 FROM pull_requests WHERE id = ?", (node_id,))).fetchone()
        return "pull_request" if row else None
    finally:
        await db.close()


# --------------- Sync Config ---------------

def _decode_sync_config(row: aiosqlite.Row) -> dict:
    config = dict(row)
    for field in SYNC_CONFIG_JSON_FIELDS:
        config[field] = loads(config.get(field), [])
    config["auto_sync_enabled"] = bool(config.get("auto_sync_enabled"))
    return config


async def get_sync_config() -> dict:
    db = await get_db()
    try:
        row = await (await db.execute("SELECT * FROM sync_config WHERE id = ?", (SYNC_CONFIG_ID,))).fetchone()
        if row is None:
            await db.execute("INSERT OR IGNORE INTO sync_config (id) VALUES (?)", (SYNC_CONFIG_ID,))
            await db.commit()
            row = await (await db.execute("SELECT * FROM sync_config WHERE id = ?", (SYNC_CONFIG_ID,))).fetchone()
        return _decode_sync_config(row)
    finally:
        await db.close()


async def update_sync_config(**fields: object) -> dict:
    """Update sync config columns; list values are stored as JSON."""
    if fields:
        sets = []
        values: list = []
        for key, value in fields.items():
            if key in SYNC_CONFIG_JSON_FIELDS:
                value = dumps(list(value or []))
            elif key == "auto_sync_enabled":
                value = 1 if value else 0
            sets.append(f"{key} = ?")
            values.append(value)
        sets.append("updated_at = ?")
        values.append(now_iso())
        values.append(SYNC_CONFIG_ID)
        db = await get_db()
        try:
            await db.execute(f"UPDATE sync_config SET {', '.join(sets)} WHERE id = ?", values)
            await db.commit()
        finally:
            await db.close()
    return await get_sync_config()


# --------------- Sync State (watermarks) ---------------

async def get_sync_state(resource: str) -> dict | None:
    db = await get_db()
    try:
        row = await (await db.execute("SELECT * FROM sync_state WHERE resource = ?", (resource,))).fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def update_sync_state(resource: str, last_cursor: str | None, last_item_timestamp: str | None) -> dict:
    """Advance a resource watermark; it never moves backwards."""
    existing = await get_sync_state(resource)
    latest = max_timestamp(existing["last_item_timestamp"] if existing else None, last_item_timestamp)
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO sync_state (resource, last_cursor, last_item_timestamp, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(resource) DO UPDATE SET
                   last_cursor = excluded.last_cursor,
                   last_item_timestamp = excluded.last_item_timestamp,
                   updated_at = excluded.updated_at""",
            (resource, last_cursor, latest, now_iso()),
        )
        await db.commit()
        row = await (await db.execute("SELECT * FROM sync_state WHERE resource = ?", (resource,))).fetchone()
        return dict(row)
    finally:
        await db.close()


# --------------- Sync Runs & Logs ---------------

async def create_sync_run(
    run_type: str, strategy: str, since: str | None, until: str | None,
    started_at: str, scope: list[str] | None = None,
) -> dict:
    db = await get_db()
    try:
        cursor = await db.execute(
            """INSERT INTO sync_runs (run_type, strategy, since, until, status, started_at, scope)
               VALUES (?, ?, ?, ?, 'running', ?, ?)""",
            (run_type, strategy, since, until, started_at, dumps(scope or [])),
        )
        await db.commit()
        row = await (await db.execute("SELECT * FROM sync_runs WHERE id = ?", (cursor.lastrowid,))).fetchone()
        return dict(row)
    finally:
        await db.close()


async def update_sync_run(run_id: int, **kwargs: object) -> dict | None:
    db = await get_db()
    try:
        if "summary" in kwargs:
            kwargs["summary"] = dumps(kwargs["summary"])
        sets = ", ".join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values())
        vals.append(run_id)
        await db.execute(f"UPDATE sync_runs SET {sets} WHERE id = ?", vals)
        await db.commit()
        row = await (await db.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,))).fetchone()
        return dict(row) if row else None
    finally:
        await db.close()


async def list_sync_runs(limit: int = 20) -> list[dict]:
    db = await get_db()
    try:
        rows = await (await db.execute(
            "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
        )).fetchall()
        runs = []
        for r in rows:
            run = dict(r)
            run["summary"] = loads(run.get("summary"), {})
            run["scope"] = loads(run.get("scope"), [])
            runs.append(run)
        return runs
    finally:
        await db.close()


async def fail_running_sync_runs(message: str) -> dict:
    """Mark runs and logs left in 'running' (e.g. by a crashed process) as failed."""
    finished_at = now_iso()
    db = await get_db()
    try:
        runs = await db.execute(
            "UPDATE sync_runs SET status = 'failed', error = ?, completed_at = ? WHERE status = 'running'",
            (message, finished_at),
        )
        logs = await db.execute(
            "UPDATE sync_log SET status = 'failed', message = ?, finished_at = ? WHERE status = 'running'",
            (message, finished_at),
        )
        await db.commit()
        return {"runs": runs.rowcount, "logs": logs.rowcount}
    finally:
        await db.close()


async def record_sync_log(resource: str, status: str = "running", run_id: int | None = None) -> int:
    db = await get_db()
    try:
        cursor = await db.execute(
            "INSERT INTO sync_log (resource, status, run_id, started_at) VALUES (?, ?, ?, ?)",
            (resource, status, run_id, now_iso()),
        )
        await db.commit()
        return cursor.lastrowid
    finally:
        await db.close()


async def update_sync_log(log_id: int, status: str, message: str | None = None) -> None:
    db = await get_db()
    try:
        await db.execute(
            "UPDATE sync_log SET status = ?, message = ?, finished_at = ? WHERE id = ?",
            (status, message, now_iso(), log_id),
        )
        await db.commit()
    finally:
        await db.close()


async def list_sync_logs(limit: int = 50, run_id: int | None = None) -> list[dict]:
    db = await get_db()
    try:
        query = "SELECT * FROM sync_log WHERE 1=1"
        params: list = []
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = await (await db.execute(query, params)).fetchall()
        return [dict(r) for r in rows]
    finally:
        await db.close()


# --------------- Cache State ---------------

async def read_cache_state(db: aiosqlite.Connection, cache_key: str) -> dict | None:
    row = await (await db.execute(
        "SELECT * FROM activity_cache_state WHERE cache_key = ?", (cache_key,)
    )).fetchone()
    if row is None:
        return None
    state = dict(row)
    state["metadata"] = loads(state.get("metadata"), {})
    return state


async def write_cache_state(
    db: aiosqlite.Connection, cache_key: str, *, generated_at: str | None,
    sync_run_id: int | None, item_count: int, metadata: dict,
) -> None:
    await db.execute(
        """INSERT INTO activity_cache_state (cache_key, generated_at, sync_run_id, item_count, metadata, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(cache_key) DO UPDATE SET
               generated_at = excluded.generated_at,
               sync_run_id = excluded.sync_run_id,
               item_count = excluded.item_count,
               metadata = excluded.metadata,
               updated_at = excluded.updated_at""",
        (cache_key, generated_at, sync_run_id, item_count, dumps(metadata), now_iso()),
    )


async def get_cache_state(cache_key: str) -> dict | None:
    db = await get_db()
    try:
        return await read_cache_state(db, cache_key)
    finally:
        await db.close()


# --------------- Data Reset ---------------

async def reset_data(preserve_logs: bool = True) -> None:
    """Wipe collected data; sync config survives, run history optionally."""
    async with transaction() as db:
        for table in COLLECTED_TABLES:
            await db.execute(f"DELETE FROM {table}")
        if not preserve_logs:
            await db.execute("DELETE FROM sync_log")
            await db.execute("DELETE FROM sync_runs")
        await db.execute(
            """UPDATE sync_config SET last_sync_started_at = NULL, last_sync_completed_at = NULL,
                   last_successful_sync_at = NULL WHERE id = ?""",
            (SYNC_CONFIG_ID,),
        )
    logger.info(f"Collected data reset (preserve_logs={preserve_logs})")
