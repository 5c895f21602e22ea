"""Attention engine: follow-up buckets over the activity snapshot.

Elapsed times are business days (weekends and configured holidays skipped,
evaluated in the configured timezone). Every bucket item carries the metric
that put it there; ``refresh_attention_flags`` folds the buckets back onto
``activity_items`` as boolean columns.
"""

import logging
from datetime import datetime

import aiosqlite

import database as db
import mention_store
from business_days import build_holiday_set, difference_in_business_days, difference_in_business_days_or_none
from models import AttentionThresholds
from snapshot import MENTION_PATTERN
from timestamps import now_iso, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

ATTENTION_FLAG_COLUMNS = {
    "unanswered_mentions": "attention_unanswered_mention",
    "stuck_review_requests": "attention_review_request_pending",
    "stale_open_prs": "attention_stale_open_pr",
    "idle_open_prs": "attention_idle_pr",
    "reviewer_unassigned_prs": "attention_reviewer_unassigned_pr",
    "review_stalled_prs": "attention_review_stalled_pr",
    "merge_delayed_prs": "attention_merge_delayed_pr",
    "backlog_issues": "attention_backlog_issue",
    "stalled_in_progress_issues": "attention_stalled_issue",
}

# Review states that settle a reviewer's verdict; COMMENTED does not
VERDICT_STATES = {"APPROVED", "CHANGES_REQUESTED", "DISMISSED"}

EXCERPT_CHARS = 240


class AttentionContext:
    """Exclusions, holiday calendar and clock shared by every bucket."""

    def __init__(self, config: dict, now: datetime | None = None, thresholds: AttentionThresholds | None = None):
        self.now = now or utcnow()
        self.timezone = config.get("timezone") or "UTC"
        self.holidays = build_holiday_set(config.get("holidays"))
        self.excluded_repository_ids = set(config.get("excluded_repository_ids") or [])
        self.excluded_user_ids = set(config.get("excluded_user_ids") or [])
        self.thresholds = thresholds or AttentionThresholds()

    def age(self, value: object) -> int:
        return difference_in_business_days(value, self.now, self.holidays, self.timezone)

    def age_or_none(self, value: object) -> int | None:
        return difference_in_business_days_or_none(value, self.now, self.holidays, self.timezone)

    def keep_user(self, user_id: str | None) -> bool:
        return bool(user_id) and user_id not in self.excluded_user_ids

    def keep_item(self, item: dict) -> bool:
        if item["repository_id"] in self.excluded_repository_ids:
            return False
        return item["author_id"] is None or item["author_id"] not in self.excluded_user_ids


def extract_comment_excerpt(body: str | None) -> str | None:
    text = " ".join((body or "").split())
    if not text:
        return None
    return text if len(text) <= EXCERPT_CHARS else text[:EXCERPT_CHARS - 3] + "..."


# --------------- Source data ---------------

class ActivityIndex:
    """Who did what, and when, per pull request, issue or discussion."""

    def __init__(self):
        # container id -> user id -> timestamps of comments/reviews/reactions
        self.by_container: dict[str, dict[str, list[str]]] = {}
        # comment id -> user id -> reaction timestamps
        self.comment_reactions: dict[str, dict[str, list[str]]] = {}
        # container id -> user id -> comment/review timestamps (no reactions)
        self.written: dict[str, dict[str, list[str]]] = {}

    @staticmethod
    def _add(target: dict, key: str | None, user_id: str | None, timestamp: str | None) -> None:
        if key and user_id:
            target.setdefault(key, {}).setdefault(user_id, []).append(timestamp)

    @staticmethod
    def _any_after(stamps: list[str | None], after: str) -> bool:
        # A reaction without a timestamp is treated as current
        return any(stamp is None or stamp >= after for stamp in stamps)

    def responded(self, container_id: str, user_id: str, after: str) -> bool:
        return self._any_after(self.by_container.get(container_id, {}).get(user_id, []), after)

    def answered_mention(self, container_id: str, comment_id: str, user_id: str, after: str) -> bool:
        if self._any_after(self.written.get(container_id, {}).get(user_id, []), after):
            return True
        return self._any_after(self.comment_reactions.get(comment_id, {}).get(user_id, []), after)

    def first_response(self, container_id: str, user_id: str, after: str) -> str | None:
        stamps = [s for s in self.by_container.get(container_id, {}).get(user_id, []) if s and s >= after]
        return min(stamps) if stamps else None

    def last_activity(self, container_id: str, user_ids: set[str], after: str) -> str | None:
        stamps = [
            s for user_id in user_ids
            for s in self.by_container.get(container_id, {}).get(user_id, [])
            if s and s >= after
        ]
        return max(stamps) if stamps else None


async def _load_items(conn: aiosqlite.Connection) -> list[dict]:
    rows = await (await conn.execute(
        """SELECT id, item_type, number, title, status, url, repository_id, repository_name,
                  repository_name_with_owner, author_id, assignee_ids, reviewer_ids, linked_pull_request_ids,
                  linked_issue_ids, issue_project_status, issue_project_status_source,
                  issue_project_status_locked, issue_todo_project_status, project_priority, project_weight,
                  project_initiation_options, project_start_date, started_at, completed_at, is_merged,
                  github_created_at, github_updated_at, github_closed_at
           FROM activity_items
           ORDER BY github_created_at, id"""
    )).fetchall()
    items = []
    for r in rows:
        item = dict(r)
        for key in ("assignee_ids", "reviewer_ids", "linked_pull_request_ids", "linked_issue_ids"):
            item[key] = db.loads(item[key], [])
        items.append(item)
    return items


async def _load_activity_index(conn: aiosqlite.Connection) -> tuple[ActivityIndex, list[dict], list[dict]]:
    """Index activity and return ``(index, reviews, comments)``."""
    index = ActivityIndex()
    reviews = [dict(r) for r in await (await conn.execute(
        """SELECT id, pull_request_id, author_id, state, github_submitted_at
           FROM reviews ORDER BY github_submitted_at, id"""
    )).fetchall()]
    comments = [dict(r) for r in await (await conn.execute(
        """SELECT c.id, COALESCE(c.pull_request_id, rv.pull_request_id, c.issue_id) AS container_id,
                  c.author_id, c.body, c.github_created_at, c.data
           FROM comments c
           LEFT JOIN reviews rv ON rv.id = c.review_id
           ORDER BY c.github_created_at, c.id"""
    )).fetchall()]
    reactions = await (await conn.execute(
        "SELECT subject_id, user_id, github_created_at FROM reactions WHERE user_id IS NOT NULL"
    )).fetchall()

    container_of: dict[str, str] = {}
    comment_ids = {c["id"] for c in comments}
    for review in reviews:
        container_of[review["id"]] = review["pull_request_id"]
        if review["github_submitted_at"]:
            for target in (index.by_container, index.written):
                index._add(target, review["pull_request_id"], review["author_id"], review["github_submitted_at"])
    for comment in comments:
        container_of[comment["id"]] = comment["container_id"]
        for target in (index.by_container, index.written):
            index._add(target, comment["container_id"], comment["author_id"], comment["github_created_at"])
    for reaction in reactions:
        subject_id = reaction["subject_id"]
        container_id = container_of.get(subject_id, subject_id)
        index._add(index.by_container, container_id, reaction["user_id"], reaction["github_created_at"])
        if subject_id in comment_ids:
            index._add(index.comment_reactions, subject_id, reaction["user_id"], reaction["github_created_at"])
    return index, reviews, comments


async def _load_review_requests(conn: aiosqlite.Connection) -> list[dict]:
    rows = await (await conn.execute(
        """SELECT id, pull_request_id, reviewer_id, requested_at FROM review_requests
           WHERE reviewer_id IS NOT NULL AND removed_at IS NULL AND requested_at IS NOT NULL
           ORDER BY requested_at, id"""
    )).fetchall()
    return [dict(r) for r in rows]


async def _load_users(conn: aiosqlite.Connection) -> dict[str, dict]:
    rows = await (await conn.execute("SELECT id, login, name, avatar_url FROM users")).fetchall()
    return {r["id"]: dict(r) for r in rows}


# --------------- References ---------------

def _user_ref(users: dict[str, dict], user_id: str | None) -> dict | None:
    if not user_id:
        return None
    return users.get(user_id) or {"id": user_id, "login": None, "name": None, "avatar_url": None}


def _repository_ref(item: dict) -> dict | None:
    if not item.get("repository_id"):
        return None
    return {
        "id": item["repository_id"],
        "name": item.get("repository_name"),
        "name_with_owner": item.get("repository_name_with_owner"),
    }


def _pull_request_ref(item: dict, users: dict[str, dict], reviewer_ids: list[str]) -> dict:
    return {
        "id": item["id"],
        "number": item["number"],
        "title": item["title"],
        "url": item["url"],
        "repository": _repository_ref(item),
        "author": _user_ref(users, item["author_id"]),
        "reviewers": [_user_ref(users, r) for r in sorted(set(reviewer_ids))],
        "linked_issue_ids": item["linked_issue_ids"],
    }


def _issue_ref(item: dict, users: dict[str, dict], ctx: AttentionContext) -> dict:
    return {
        "id": item["id"],
        "number": item["number"],
        "title": item["title"],
        "url": item["url"],
        "repository": _repository_ref(item),
        "author": _user_ref(users, item["author_id"]),
        "assignees": [_user_ref(users, a) for a in item["assignee_ids"] if ctx.keep_user(a)],
        "linked_pull_request_ids": item["linked_pull_request_ids"],
        "issue_project_status": item["issue_project_status"],
        "issue_project_status_source": item["issue_project_status_source"],
        "issue_project_status_locked": bool(item["issue_project_status_locked"]),
        "project_priority": item["project_priority"],
        "project_weight": item["project_weight"],
        "project_initiation_options": item["project_initiation_options"],
        "project_start_date": item["project_start_date"],
    }


# --------------- Pull request buckets ---------------

def _reviewer_ids(item: dict, requests: list[dict], reviews: list[dict], ctx: AttentionContext) -> list[str]:
    ids = {r["reviewer_id"] for r in requests}
    ids |= {r["author_id"] for r in reviews if r["author_id"] and r["author_id"] != item["author_id"]}
    return sorted(i for i in ids if ctx.keep_user(i))


def _valid_approval_at(item: dict, reviews: list[dict]) -> str | None:
    """Latest approval, provided no reviewer's latest verdict requests changes."""
    latest_by_reviewer: dict[str, dict] = {}
    for review in reviews:
        if review["state"] not in VERDICT_STATES or not review["github_submitted_at"]:
            continue
        if review["author_id"] == item["author_id"]:
            continue
        current = latest_by_reviewer.get(review["author_id"])
        if current is None or review["github_submitted_at"] >= current["github_submitted_at"]:
            latest_by_reviewer[review["author_id"]] = review
    verdicts = list(latest_by_reviewer.values())
    if any(v["state"] == "CHANGES_REQUESTED" for v in verdicts):
        return None
    approvals = [v["github_submitted_at"] for v in verdicts if v["state"] == "APPROVED"]
    return max(approvals) if approvals else None


def classify_pull_requests(
    items: list[dict], requests: list[dict], reviews: list[dict], index: ActivityIndex,
    users: dict[str, dict], ctx: AttentionContext,
) -> dict[str, list[dict]]:
    t = ctx.thresholds
    buckets = {
        "stale_open_prs": [], "idle_open_prs": [], "reviewer_unassigned_prs": [],
        "review_stalled_prs": [], "merge_delayed_prs": [],
    }
    requests_by_pr: dict[str, list[dict]] = {}
    for request in requests:
        if ctx.keep_user(request["reviewer_id"]):
            requests_by_pr.setdefault(request["pull_request_id"], []).append(request)
    reviews_by_pr: dict[str, list[dict]] = {}
    for review in reviews:
        reviews_by_pr.setdefault(review["pull_request_id"], []).append(review)

    for item in items:
        if item["item_type"] != "pull_request" or item["status"] != "open" or not ctx.keep_item(item):
            continue
        pr_requests = requests_by_pr.get(item["id"], [])
        pr_reviews = reviews_by_pr.get(item["id"], [])
        reviewer_ids = _reviewer_ids(item, pr_requests, pr_reviews, ctx)
        age_days = ctx.age(item["github_created_at"])
        inactivity_days = ctx.age_or_none(item["github_updated_at"])
        base = {
            **_pull_request_ref(item, users, reviewer_ids),
            "created_at": item["github_created_at"],
            "updated_at": item["github_updated_at"],
            "age_days": age_days,
            "inactivity_days": inactivity_days,
        }

        if age_days >= t.stale_pr_days:
            buckets["stale_open_prs"].append(base)
        if age_days >= t.idle_pr_days and (inactivity_days or 0) >= t.idle_pr_days:
            buckets["idle_open_prs"].append(base)

        if not reviewer_ids:
            if age_days >= t.reviewer_unassigned_days:
                buckets["reviewer_unassigned_prs"].append({**base, "waiting_days": age_days})
        elif pr_requests:
            first_requested = min(r["requested_at"] for r in pr_requests)
            requested_ids = {r["reviewer_id"] for r in pr_requests}
            last_activity = index.last_activity(item["id"], requested_ids, first_requested)
            stalled_days = ctx.age(last_activity or first_requested)
            if stalled_days >= t.review_stalled_days:
                buckets["review_stalled_prs"].append({
                    **base, "waiting_days": stalled_days, "requested_at": first_requested,
                    "last_reviewer_activity_at": last_activity,
                })

        approved_at = _valid_approval_at(item, pr_reviews)
        if approved_at and not item["is_merged"]:
            delayed_days = ctx.age(approved_at)
            if delayed_days >= t.merge_delayed_days:
                buckets["merge_delayed_prs"].append({**base, "waiting_days": delayed_days, "approved_at": approved_at})

    buckets["stale_open_prs"].sort(key=lambda i: -i["age_days"])
    buckets["idle_open_prs"].sort(key=lambda i: -(i["inactivity_days"] or 0))
    for key in ("reviewer_unassigned_prs", "review_stalled_prs", "merge_delayed_prs"):
        buckets[key].sort(key=lambda i: -i["waiting_days"])
    return buckets


def classify_review_requests(
    items_by_id: dict[str, dict], requests: list[dict], reviews: list[dict], index: ActivityIndex,
    users: dict[str, dict], ctx: AttentionContext,
) -> tuple[list[dict], list[dict]]:
    """Stuck review requests, plus per-request waits for the reviewer ranking."""
    stuck, waits = [], []
    reviewers_by_pr: dict[str, set[str]] = {}
    for request in requests:
        reviewers_by_pr.setdefault(request["pull_request_id"], set()).add(request["reviewer_id"])
    for review in reviews:
        if review["author_id"]:
            reviewers_by_pr.setdefault(review["pull_request_id"], set()).add(review["author_id"])

    for request in requests:
        item = items_by_id.get(request["pull_request_id"])
        if item is None or item["item_type"] != "pull_request" or not ctx.keep_item(item):
            continue
        if not ctx.keep_user(request["reviewer_id"]):
            continue
        first_response = index.first_response(item["id"], request["reviewer_id"], request["requested_at"])
        if first_response is None:
            wait_days = ctx.age_or_none(request["requested_at"])
        else:
            wait_days = difference_in_business_days(
                request["requested_at"], parse_timestamp(first_response), ctx.holidays, ctx.timezone,
            )
        waits.append({
            "reviewer_id": request["reviewer_id"],
            "waiting_days": wait_days,
            "pending": first_response is None and item["status"] == "open",
        })
        if item["status"] != "open" or first_response is not None:
            continue
        waiting_days = ctx.age(request["requested_at"])
        if waiting_days < ctx.thresholds.stuck_review_days:
            continue
        reviewer_ids = [r for r in reviewers_by_pr.get(item["id"], set()) if ctx.keep_user(r)]
        stuck.append({
            "id": request["id"],
            "requested_at": request["requested_at"],
            "waiting_days": waiting_days,
            "reviewer": _user_ref(users, request["reviewer_id"]),
            "pull_request": _pull_request_ref(item, users, reviewer_ids),
            "pull_request_age_days": ctx.age_or_none(item["github_created_at"]),
            "pull_request_inactivity_days": ctx.age_or_none(item["github_updated_at"]),
        })
    stuck.sort(key=lambda i: -i["waiting_days"])
    return stuck, waits


# --------------- Issue buckets ---------------

def classify_issues(items: list[dict], users: dict[str, dict], ctx: AttentionContext) -> dict[str, list[dict]]:
    t = ctx.thresholds
    backlog, stalled = [], []
    for item in items:
        if item["item_type"] != "issue" or item["status"] != "open" or not ctx.keep_item(item):
            continue
        base = {
            **_issue_ref(item, users, ctx),
            "created_at": item["github_created_at"],
            "updated_at": item["github_updated_at"],
            "age_days": ctx.age(item["github_created_at"]),
            "started_at": item["started_at"],
            "in_progress_age_days": ctx.age_or_none(item["started_at"]),
        }
        if not item["started_at"]:
            if base["age_days"] >= t.backlog_issue_days:
                backlog.append(base)
        elif item["issue_project_status"] == "in_progress" and not item["completed_at"]:
            if (base["in_progress_age_days"] or 0) >= t.stalled_in_progress_days:
                stalled.append(base)
    backlog.sort(key=lambda i: -i["age_days"])
    stalled.sort(key=lambda i: -(i["in_progress_age_days"] or 0))
    return {"backlog_issues": backlog, "stalled_in_progress_issues": stalled}


# --------------- Mentions ---------------

def find_mention_candidates(
    comments: list[dict], items_by_id: dict[str, dict], index: ActivityIndex,
    login_index: dict[str, str], ctx: AttentionContext, min_days: int = 0,
) -> list[dict]:
    """Mentions nobody answered yet, one per (comment, mentioned user)."""
    candidates = []
    seen: set[tuple[str, str]] = set()
    for comment in comments:
        item = items_by_id.get(comment["container_id"])
        mentioned_at = to_iso(comment["github_created_at"])
        if item is None or mentioned_at is None or not ctx.keep_item(item):
            continue
        if comment["author_id"] and comment["author_id"] in ctx.excluded_user_ids:
            continue
        for login in MENTION_PATTERN.findall(comment["body"] or ""):
            user_id = login_index.get(login.lower())
            if not user_id or user_id == comment["author_id"] or not ctx.keep_user(user_id):
                continue
            if (comment["id"], user_id) in seen:
                continue
            seen.add((comment["id"], user_id))
            if index.answered_mention(item["id"], comment["id"], user_id, mentioned_at):
                continue
            waiting_days = ctx.age(mentioned_at)
            if waiting_days < min_days:
                continue
            candidates.append({
                "comment_id": comment["id"],
                "mentioned_user_id": user_id,
                "mentioned_login": login,
                "comment_author_id": comment["author_id"],
                "body": comment["body"] or "",
                "body_hash": mention_store.hash_comment_body(comment["body"]),
                "url": (db.loads(comment["data"], {}) or {}).get("url"),
                "mentioned_at": mentioned_at,
                "waiting_days": waiting_days,
                "container": item,
            })
    return candidates


def classify_mentions(
    candidates: list[dict], classifications: dict[str, dict], users: dict[str, dict], ctx: AttentionContext,
) -> list[dict]:
    mentions = []
    for candidate in candidates:
        if candidate["waiting_days"] < ctx.thresholds.unanswered_mention_days:
            continue
        record = classifications.get(
            mention_store.classification_key(candidate["comment_id"], candidate["mentioned_user_id"])
        )
        requires_response = mention_store.effective_requires_response(record)
        if requires_response is False:
            continue
        item = candidate["container"]
        mentions.append({
            "comment_id": candidate["comment_id"],
            "url": candidate["url"],
            "mentioned_at": candidate["mentioned_at"],
            "waiting_days": candidate["waiting_days"],
            "author": _user_ref(users, candidate["comment_author_id"]),
            "target": _user_ref(users, candidate["mentioned_user_id"]),
            "container": {
                "type": item["item_type"],
                "id": item["id"],
                "number": item["number"],
                "title": item["title"],
                "url": item["url"],
                "repository": _repository_ref(item),
            },
            "comment_excerpt": extract_comment_excerpt(candidate["body"]),
            "classification": {
                "requires_response": record.get("requires_response") if record else None,
                "manual_requires_response": record.get("manual_requires_response") if record else None,
                "effective_requires_response": requires_response,
                "last_evaluated_at": record.get("last_evaluated_at") if record else None,
            },
        })
    mentions.sort(key=lambda m: -m["waiting_days"])
    return mentions


# --------------- Rankings ---------------

def build_rankings(buckets: dict[str, list[dict]], waits: list[dict], users: dict[str, dict]) -> dict:
    """Per-user aggregates over the buckets and every review request's wait."""
    def _rank(counts: dict[str, int]) -> list[dict]:
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [{"user": _user_ref(users, user_id), "count": count} for user_id, count in ranked]

    pending_reviews: dict[str, int] = {}
    for request in buckets["stuck_review_requests"]:
        reviewer = request["reviewer"]
        if reviewer:
            pending_reviews[reviewer["id"]] = pending_reviews.get(reviewer["id"], 0) + 1
    unanswered: dict[str, int] = {}
    for mention in buckets["unanswered_mentions"]:
        if mention["target"]:
            unanswered[mention["target"]["id"]] = unanswered.get(mention["target"]["id"], 0) + 1
    stale_authors: dict[str, int] = {}
    for key in ("stale_open_prs", "idle_open_prs"):
        for pr in buckets[key]:
            if pr["author"]:
                stale_authors[pr["author"]["id"]] = stale_authors.get(pr["author"]["id"], 0) + 1

    wait_totals: dict[str, list[int]] = {}
    for wait in waits:
        if wait["waiting_days"] is not None:
            wait_totals.setdefault(wait["reviewer_id"], []).append(wait["waiting_days"])
    review_wait = sorted(
        (
            {"user": _user_ref(users, reviewer_id), "requests": len(days),
             "average_wait_days": round(sum(days) / len(days), 2), "max_wait_days": max(days)}
            for reviewer_id, days in wait_totals.items()
        ),
        key=lambda r: (-r["average_wait_days"], r["user"]["id"]),
    )
    return {
        "reviewers_by_stuck_requests": _rank(pending_reviews),
        "users_by_unanswered_mentions": _rank(unanswered),
        "authors_by_stale_prs": _rank(stale_authors),
        "reviewers_by_average_wait": review_wait,
    }


# --------------- Entry points ---------------

def _matches_filters(entry: dict, repository_ids: set[str], user_ids: set[str]) -> bool:
    repository = entry.get("repository") or (entry.get("pull_request") or entry.get("container") or {}).get("repository")
    if repository_ids and (not repository or repository["id"] not in repository_ids):
        return False
    if not user_ids:
        return True
    people = [entry.get("author"), entry.get("reviewer"), entry.get("target")]
    people += entry.get("reviewers") or []
    people += entry.get("assignees") or []
    pr = entry.get("pull_request") or {}
    people += [pr.get("author")] + (pr.get("reviewers") or [])
    return any(p and p["id"] in user_ids for p in people)


async def collect_attention_data(ctx: AttentionContext) -> dict:
    """Read everything the buckets need in one connection."""
    conn = await db.get_db()
    try:
        items = await _load_items(conn)
        index, reviews, comments = await _load_activity_index(conn)
        requests = await _load_review_requests(conn)
        users = await _load_users(conn)
    finally:
        await conn.close()
    login_index = {u["login"].lower(): u["id"] for u in users.values() if u.get("login")}
    return {
        "items": items, "items_by_id": {i["id"]: i for i in items}, "index": index, "reviews": reviews,
        "comments": comments, "requests": requests, "users": users, "login_index": login_index,
    }


async def get_attention_insights(
    *, repository_ids: list[str] | None = None, user_ids: list[str] | None = None,
    thresholds: AttentionThresholds | None = None, now: datetime | None = None,
) -> dict:
    """Categorized follow-up collections plus ranking aggregates."""
    config = await db.get_sync_config()
    ctx = AttentionContext(config, now=now, thresholds=thresholds)
    data = await collect_attention_data(ctx)
    users = data["users"]

    buckets = classify_pull_requests(data["items"], data["requests"], data["reviews"], data["index"], users, ctx)
    stuck, waits = classify_review_requests(
        data["items_by_id"], data["requests"], data["reviews"], data["index"], users, ctx,
    )
    buckets["stuck_review_requests"] = stuck
    buckets.update(classify_issues(data["items"], users, ctx))
    candidates = find_mention_candidates(
        data["comments"], data["items_by_id"], data["index"], data["login_index"], ctx,
        min_days=ctx.thresholds.unanswered_mention_days,
    )
    classifications = await mention_store.get_classifications(
        [(c["comment_id"], c["mentioned_user_id"]) for c in candidates]
    )
    buckets["unanswered_mentions"] = classify_mentions(candidates, classifications, users, ctx)

    repo_filter, user_filter = set(repository_ids or []), set(user_ids or [])
    if repo_filter or user_filter:
        buckets = {k: [e for e in v if _matches_filters(e, repo_filter, user_filter)] for k, v in buckets.items()}
        waits = [w for w in waits if not user_filter or w["reviewer_id"] in user_filter]

    return {
        "generated_at": to_iso(ctx.now),
        "timezone": ctx.timezone,
        "thresholds": ctx.thresholds.model_dump(),
        **buckets,
        "rankings": build_rankings(buckets, waits, users),
        "counts": {key: len(value) for key, value in buckets.items()},
    }


def attention_flags(insights: dict) -> dict[str, set[str]]:
    """Activity item ids per flag column; one item can carry several flags."""
    flags: dict[str, set[str]] = {column: set() for column in ATTENTION_FLAG_COLUMNS.values()}
    for bucket, column in ATTENTION_FLAG_COLUMNS.items():
        for entry in insights.get(bucket, []):
            if bucket == "stuck_review_requests":
                flags[column].add(entry["pull_request"]["id"])
            elif bucket == "unanswered_mentions":
                flags[column].add(entry["container"]["id"])
            else:
                flags[column].add(entry["id"])
    return flags


async def refresh_attention_flags(now: datetime | None = None) -> dict:
    """Recompute every ``attention_*`` column from fresh insights."""
    insights = await get_attention_insights(now=now)
    flags = attention_flags(insights)
    async with db.transaction() as conn:
        await conn.execute(
            f"UPDATE activity_items SET {', '.join(f'{c} = 0' for c in flags)}"
        )
        for column, ids in flags.items():
            for item_id in sorted(ids):
                await conn.execute(f"UPDATE activity_items SET {column} = 1 WHERE id = ?", (item_id,))
    counts = {column: len(ids) for column, ids in flags.items()}
    logger.info(f"Attention flags refreshed at {now_iso()}: {counts}")
    return {"generated_at": insights["generated_at"], "flags": counts}
