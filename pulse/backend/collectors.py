"""Collector: walks the organization through the GraphQL client and persists normalized rows.

Repositories are processed one at a time. Top-level pages (issues, discussions,
pull requests) are committed page by page; a container's comments are walked
fully and committed together so keep-set reconciliation sees the whole live set.
"""

import logging
from collections.abc import Awaitable, Callable

import aiosqlite

import database as db
import queries as q
import status_store
from config import settings
from github_client import GitHubClient, NotFoundError
from models import Actor, SyncSummary
from status_utils import (
    extract_project_status_entries, merge_project_history, project_history,
    removal_entries, snapshot_project_items,
)
from timestamps import max_timestamp, now_iso, to_iso

logger = logging.getLogger(__name__)

RESOURCE_KEYS = ("repositories", "issues", "discussions", "pull_requests", "reviews", "comments")

ACTOR_KINDS = {
    "User": "user",
    "EnterpriseUserAccount": "user",
    "Organization": "organization",
    "Bot": "bot",
    "Mannequin": "mannequin",
}


class SyncCancelledError(Exception):
    """Raised at a repository boundary when the run was asked to stop."""


def to_actor(node: dict | None, allowed_bots: set[str] | None = None) -> dict | None:
    """Normalize a user/org/bot/mannequin node; teams and unknown bots yield None."""
    if not isinstance(node, dict) or not node.get("id"):
        return None
    kind = ACTOR_KINDS.get(node.get("__typename") or "User")
    if kind is None:
        return None
    if kind == "bot" and allowed_bots is not None and (node.get("login") or "").lower() not in allowed_bots:
        return None
    return Actor(
        id=node["id"],
        login=node.get("login"),
        name=node.get("name"),
        avatar_url=node.get("avatarUrl"),
        kind=kind,
        created_at=to_iso(node.get("createdAt")),
        updated_at=to_iso(node.get("updatedAt")),
    ).model_dump()


def evaluate_timestamp(value: str | None, since: str | None, until: str | None) -> str:
    """Classify a timestamp against the window: 'include', 'before' or 'after'.

    ``since`` is inclusive, ``until`` exclusive; a missing timestamp is included.
    """
    stamp = to_iso(value)
    if stamp is None:
        return "include"
    if since and stamp < since:
        return "before"
    if until and stamp >= until:
        return "after"
    return "include"


def normalize_project_items(node: dict) -> list[dict]:
    items = []
    for item in ((node.get("projectItems") or {}).get("nodes") or []):
        if not item:
            continue
        status = item.get("status") or {}
        fields = {}
        for key in ("priority", "weight", "initiationOptions", "startDate"):
            value = item.get(key) or {}
            raw = value.get("name") or value.get("text") or value.get("date")
            if raw is None and value.get("number") is not None:
                raw = str(value["number"])
            fields[key] = raw
        items.append({
            "id": item.get("id"),
            "projectTitle": (item.get("project") or {}).get("title"),
            "status": status.get("name"),
            "statusUpdatedAt": to_iso(status.get("updatedAt")),
            "updatedAt": to_iso(item.get("updatedAt")),
            "fields": fields,
        })
    return items


class Collector:
    """One collection pass, full (no window) or incremental (``since``/``until``)."""

    def __init__(
        self,
        client: GitHubClient,
        org: str,
        *,
        since: str | None = None,
        until: str | None = None,
        since_by_resource: dict[str, str] | None = None,
        target_project: str | None = None,
        run_id: int | None = None,
        should_abort: Callable[[], bool] | None = None,
        progress: Callable[[str], Awaitable[None] | None] | None = None,
    ):
        self.client = client
        self.org = org
        self.since = to_iso(since)
        self.until = to_iso(until)
        self.since_by_resource = {k: to_iso(v) for k, v in (since_by_resource or {}).items() if v}
        self.target_project = target_project if target_project is not None else settings.TODO_PROJECT_NAME
        self.run_id = run_id
        self.should_abort = should_abort or (lambda: False)
        self.progress = progress
        self.allowed_bots = settings.allowed_bot_logins
        self.counts = {key: 0 for key in RESOURCE_KEYS}
        self.counts.update({"reactions": 0, "review_requests": 0})
        self.latest: dict[str, str | None] = {key: None for key in RESOURCE_KEYS}
        self.backfilled_pull_requests = 0
        self.deleted_comments = 0
        self.deleted_reactions = 0

    def resolve_since(self, resource: str) -> str | None:
        return self.since_by_resource.get(resource) or self.since

    def _track(self, resource: str, timestamp: object) -> None:
        self.latest[resource] = max_timestamp(self.latest[resource], timestamp)

    async def _report(self, message: str) -> None:
        logger.info(message)
        if self.progress is not None:
            result = self.progress(message)
            if result is not None:
                await result

    def summary(self) -> SyncSummary:
        return SyncSummary(
            repositories_processed=self.counts["repositories"],
            counts=dict(self.counts),
            timestamps=dict(self.latest),
            backfilled_pull_requests=self.backfilled_pull_requests,
            deleted_comments=self.deleted_comments,
            deleted_reactions=self.deleted_reactions,
        )

    # --------------- Run ---------------

    async def run(self, repository_ids: list[str] | None = None) -> SyncSummary:
        """Collect every (or every scoped) repository and advance watermarks."""
        if not self.org:
            raise ValueError("GitHub organization is not configured.")
        log_ids = {key: await db.record_sync_log(key, "running", self.run_id) for key in RESOURCE_KEYS}
        try:
            repositories = await self.collect_repositories()
            if repository_ids:
                scope = set(repository_ids)
                repositories = [r for r in repositories if r["id"] in scope]
            await db.update_sync_log(
                log_ids["repositories"], "success",
                f"Processed {len(repositories)} repositories for {self.org}.",
            )
            for repo in repositories:
                if self.should_abort():
                    raise SyncCancelledError(f"Sync aborted before {repo['name_with_owner']}")
                await self.collect_repository(repo)
        except Exception as e:
            for key, log_id in log_ids.items():
                await db.update_sync_log(log_id, "failed", str(e) or e.__class__.__name__)
            raise

        messages = {
            "issues": f"Upserted {self.counts['issues']} issues.",
            "discussions": f"Upserted {self.counts['discussions']} discussions.",
            "pull_requests": f"Upserted {self.counts['pull_requests']} pull requests "
                             f"({self.backfilled_pull_requests} backfilled).",
            "reviews": f"Recorded {self.counts['reviews']} reviews.",
            "comments": f"Captured {self.counts['comments']} comments, removed {self.deleted_comments}.",
        }
        for key, message in messages.items():
            await db.update_sync_log(log_ids[key], "success", message)
        for key in RESOURCE_KEYS:
            if self.latest[key]:
                await db.update_sync_state(key, None, self.latest[key])
        return self.summary()

    async def collect_repositories(self) -> list[dict]:
        repositories = []
        async for nodes in self.client.paginate(
            q.ORGANIZATION_REPOSITORIES, {"login": self.org}, ("organization", "repositories"),
        ):
            async with db.transaction() as conn:
                for node in nodes:
                    repositories.append(await self._persist_repository(conn, node))
        await self._report(f"Found {len(repositories)} repositories in {self.org}")
        return repositories

    async def collect_repository(self, repo: dict) -> None:
        await self._report(f"Collecting {repo['name_with_owner']}")
        await self.collect_issues(repo)
        await self.collect_discussions(repo)
        await self.collect_pull_requests(repo)
        await self.collect_open_pull_request_metadata(repo)

    # --------------- Persistence helpers ---------------

    async def _actor(self, conn: aiosqlite.Connection, node: dict | None) -> str | None:
        actor = to_actor(node, self.allowed_bots)
        if actor is None:
            return None
        await db.upsert_user(conn, actor)
        return actor["id"]

    async def _persist_repository(self, conn: aiosqlite.Connection, node: dict) -> dict:
        owner_id = await self._actor(conn, node.get("owner"))
        repo = {
            "id": node["id"],
            "name": node["name"],
            "name_with_owner": node["nameWithOwner"],
            "owner_id": owner_id,
            "url": node.get("url"),
            "is_private": node.get("isPrivate", False),
            "created_at": node.get("createdAt"),
            "updated_at": node.get("updatedAt"),
            "data": {k: v for k, v in node.items() if k != "owner"},
        }
        await db.upsert_repository(conn, repo)
        self.counts["repositories"] += 1
        self._track("repositories", node.get("updatedAt"))
        owner, _, name = node["nameWithOwner"].partition("/")
        return {**repo, "owner": owner, "repo_name": name}

    async def _persist_reactions(self, conn: aiosqlite.Connection, subject_type: str, subject_id: str,
                                 node: dict) -> None:
        connection = node.get("reactions") or {}
        nodes = [n for n in connection.get("nodes") or [] if n]
        for reaction in nodes:
            user_id = await self._actor(conn, {"__typename": "User", **(reaction.get("user") or {})})
            await db.upsert_reaction(conn, {
                "id": reaction["id"],
                "subject_type": subject_type,
                "subject_id": subject_id,
                "user_id": user_id,
                "content": reaction.get("content"),
                "created_at": reaction.get("createdAt"),
                "data": reaction,
            })
            self.counts["reactions"] += 1
        # Truncated connections cannot prove a reaction was deleted
        if connection and (connection.get("totalCount") or 0) <= len(nodes):
            removed = await db.delete_missing_reactions(conn, subject_id, [n["id"] for n in nodes])
            self.deleted_reactions += len(removed)

    async def _persist_issue(self, conn: aiosqlite.Connection, repo: dict, node: dict) -> dict:
        """Persist an issue or discussion plus its project-board history."""
        is_discussion = node.get("__typename") == "Discussion"
        author_id = await self._actor(conn, node.get("author"))
        assignee_ids = []
        for assignee in ((node.get("assignees") or {}).get("nodes") or []):
            assignee_id = await self._actor(conn, {"__typename": "User", **assignee})
            if assignee_id:
                assignee_ids.append(assignee_id)

        data = {k: v for k, v in node.items() if k not in ("reactions", "author", "projectItems")}
        data["__typename"] = "Discussion" if is_discussion else "Issue"
        data["repository"] = {"id": repo["id"], "nameWithOwner": repo["name_with_owner"]}
        data["assigneeIds"] = assignee_ids
        if is_discussion:
            state = "CLOSED" if node.get("closed") else "OPEN"
        else:
            state = node.get("state")
            items = normalize_project_items(node)
            previous = project_history(await db.get_issue_data(conn, node["id"]))
            observed_at = to_iso(node.get("updatedAt")) or now_iso()
            incoming = snapshot_project_items(items, observed_at) + removal_entries(previous, items, now_iso())
            data["projectItems"] = items
            data["projectStatusHistory"] = merge_project_history(previous, incoming)

        row = {
            "id": node["id"],
            "number": node["number"],
            "repository_id": repo["id"],
            "author_id": author_id,
            "title": node.get("title"),
            "state": state,
            "body": node.get("body"),
            "created_at": node.get("createdAt"),
            "updated_at": node.get("updatedAt"),
            "closed_at": node.get("closedAt"),
            "data": data,
        }
        await db.upsert_issue(conn, row)
        if not is_discussion:
            entries = extract_project_status_entries(data, self.target_project)
            await status_store.sync_todo_project_events(conn, node["id"], entries)
        await self._persist_reactions(conn, "Discussion" if is_discussion else "Issue", node["id"], node)
        return row

    async def _persist_pull_request(self, conn: aiosqlite.Connection, repo: dict, node: dict) -> dict:
        author_id = await self._actor(conn, node.get("author"))
        assignee_ids = []
        for assignee in ((node.get("assignees") or {}).get("nodes") or []):
            assignee_id = await self._actor(conn, {"__typename": "User", **assignee})
            if assignee_id:
                assignee_ids.append(assignee_id)
        requested_ids = []
        for request in ((node.get("reviewRequests") or {}).get("nodes") or []):
            reviewer_id = await self._actor(conn, (request or {}).get("requestedReviewer"))
            if reviewer_id:
                requested_ids.append(reviewer_id)

        data = {k: v for k, v in node.items() if k not in ("reactions", "author")}
        data["repository"] = {"id": repo["id"], "nameWithOwner": repo["name_with_owner"]}
        data["assigneeIds"] = assignee_ids
        data["requestedReviewerIds"] = requested_ids
        row = {
            "id": node["id"],
            "number": node["number"],
            "repository_id": repo["id"],
            "author_id": author_id,
            "title": node.get("title"),
            "state": node.get("state"),
            "body": node.get("body"),
            "merged": bool(node.get("merged")),
            "created_at": node.get("createdAt"),
            "updated_at": node.get("updatedAt"),
            "closed_at": node.get("closedAt"),
            "merged_at": node.get("mergedAt"),
            "data": data,
        }
        await db.upsert_pull_request(conn, row)
        links = [
            {
                "issue_id": issue["id"],
                "issue_number": issue.get("number"),
                "issue_title": issue.get("title"),
                "issue_state": issue.get("state"),
                "issue_url": issue.get("url"),
                "issue_repository": (issue.get("repository") or {}).get("nameWithOwner"),
            }
            for issue in ((node.get("closingIssuesReferences") or {}).get("nodes") or [])
            if issue and issue.get("id")
        ]
        await db.replace_pull_request_issues(conn, node["id"], links)
        await self._persist_reactions(conn, "PullRequest", node["id"], node)
        return row

    # --------------- Issues & Discussions ---------------

    async def collect_issues(self, repo: dict) -> None:
        since = self.resolve_since("issues")
        variables = {"owner": repo["owner"], "name": repo["repo_name"], "since": since}
        async for nodes in self.client.paginate(q.REPOSITORY_ISSUES, variables, ("repository", "issues")):
            persisted, stop = [], False
            async with db.transaction() as conn:
                for node in nodes:
                    verdict = evaluate_timestamp(node.get("updatedAt"), since, self.until)
                    if verdict == "after":
                        stop = True
                        break
                    if verdict == "before":
                        continue
                    persisted.append(await self._persist_issue(conn, repo, node))
                    self.counts["issues"] += 1
                    self._track("issues", node.get("updatedAt"))
            for issue in persisted:
                await self.collect_comments(repo, "issue", issue["number"], issue["id"])
            if stop:
                break

    async def collect_discussions(self, repo: dict) -> None:
        since = self.resolve_since("discussions")
        variables = {"owner": repo["owner"], "name": repo["repo_name"]}
        try:
            async for nodes in self.client.paginate(
                q.REPOSITORY_DISCUSSIONS, variables, ("repository", "discussions"),
            ):
                persisted, stop = [], False
                async with db.transaction() as conn:
                    for node in nodes:
                        verdict = evaluate_timestamp(node.get("updatedAt"), since, self.until)
                        if verdict == "after":
                            stop = True
                            break
                        if verdict == "before":
                            continue
                        persisted.append(await self._persist_issue(conn, repo, node))
                        self.counts["discussions"] += 1
                        self._track("discussions", node.get("updatedAt"))
                for discussion in persisted:
                    await self.collect_comments(repo, "discussion", discussion["number"], discussion["id"])
                if stop:
                    break
        except NotFoundError:
            logger.info(f"Discussions unavailable for {repo['name_with_owner']}")

    # --------------- Pull Requests ---------------

    async def collect_pull_requests(self, repo: dict) -> None:
        since = self.resolve_since("pull_requests")
        variables = {"owner": repo["owner"], "name": repo["repo_name"]}
        async for nodes in self.client.paginate(
            q.REPOSITORY_PULL_REQUESTS, variables, ("repository", "pullRequests"),
        ):
            persisted, stop = [], False
            async with db.transaction() as conn:
                for node in nodes:
                    verdict = evaluate_timestamp(node.get("updatedAt"), since, self.until)
                    if verdict == "after":
                        stop = True
                        break
                    if verdict == "before":
                        continue
                    persisted.append(await self._persist_pull_request(conn, repo, node))
                    self.counts["pull_requests"] += 1
                    self._track("pull_requests", node.get("updatedAt"))
            for pr in persisted:
                await self.collect_pull_request_children(repo, pr)
            if stop:
                break

    async def collect_pull_request_children(self, repo: dict, pr: dict) -> None:
        await self.collect_reviews(repo, pr)
        await self.collect_review_requests(repo, pr)
        await self.collect_comments(repo, "pull_request", pr["number"], pr["id"])

    async def collect_reviews(self, repo: dict, pr: dict) -> None:
        since = self.resolve_since("reviews")
        variables = {"owner": repo["owner"], "name": repo["repo_name"], "number": pr["number"]}
        async for nodes in self.client.paginate(
            q.PULL_REQUEST_REVIEWS, variables, ("repository", "pullRequest", "reviews"),
        ):
            async with db.transaction() as conn:
                for node in nodes:
                    if evaluate_timestamp(node.get("submittedAt"), since, self.until) != "include":
                        continue
                    author_id = await self._actor(conn, node.get("author"))
                    await db.upsert_review(conn, {
                        "id": node["id"],
                        "pull_request_id": pr["id"],
                        "author_id": author_id,
                        "state": node.get("state"),
                        "submitted_at": node.get("submittedAt"),
                        "data": {k: v for k, v in node.items() if k != "author"},
                    })
                    self.counts["reviews"] += 1
                    self._track("reviews", node.get("submittedAt"))

    async def collect_review_requests(self, repo: dict, pr: dict) -> None:
        """Replay review-requested/removed timeline events in order."""
        variables = {"owner": repo["owner"], "name": repo["repo_name"], "number": pr["number"]}
        async for nodes in self.client.paginate(
            q.PULL_REQUEST_TIMELINE, variables, ("repository", "pullRequest", "timelineItems"),
        ):
            async with db.transaction() as conn:
                for event in nodes:
                    reviewer_id = await self._actor(conn, event.get("requestedReviewer"))
                    if reviewer_id is None:
                        continue  # team reviewers
                    if event.get("__typename") == "ReviewRequestedEvent":
                        await db.upsert_review_request(conn, {
                            "id": event["id"],
                            "pull_request_id": pr["id"],
                            "reviewer_id": reviewer_id,
                            "requested_at": event.get("createdAt"),
                            "data": event,
                        })
                        self.counts["review_requests"] += 1
                    elif event.get("__typename") == "ReviewRequestRemovedEvent":
                        await db.mark_review_request_removed(conn, pr["id"], reviewer_id, event.get("createdAt"))

    async def collect_open_pull_request_metadata(self, repo: dict) -> None:
        """Make sure every open PR with a standing review request exists locally."""
        variables = {"owner": repo["owner"], "name": repo["repo_name"]}
        async for nodes in self.client.paginate(
            q.REPOSITORY_OPEN_PULL_REQUEST_REQUESTS, variables, ("repository", "pullRequests"),
        ):
            for node in nodes:
                if not ((node.get("reviewRequests") or {}).get("nodes")):
                    continue
                await self.ensure_pull_request(repo, node["number"])

    async def ensure_pull_request(self, repo: dict, number: int) -> str | None:
        """Return the local PR id, fetching it by number (with children) when missing."""
        conn = await db.get_db()
        try:
            existing = await db.get_pull_request_by_number(conn, repo["id"], number)
        finally:
            await conn.close()
        if existing:
            return existing["id"]

        variables = {"owner": repo["owner"], "name": repo["repo_name"], "number": number}
        try:
            data = await self.client.request(q.PULL_REQUEST_BY_NUMBER, variables)
        except NotFoundError:
            logger.warning(f"{repo['name_with_owner']}#{number} vanished before it could be backfilled")
            return None
        node = (data.get("repository") or {}).get("pullRequest")
        if not node:
            return None
        async with db.transaction() as conn:
            pr = await self._persist_pull_request(conn, repo, node)
        self.backfilled_pull_requests += 1
        logger.info(f"Backfilled missing pull request {repo['name_with_owner']}#{number}")
        # Backfill ignores the incremental window so the PR is complete
        saved = (self.since, self.until, self.since_by_resource)
        self.since, self.until, self.since_by_resource = None, None, {}
        try:
            await self.collect_pull_request_children(repo, pr)
        finally:
            self.since, self.until, self.since_by_resource = saved
        return pr["id"]

    # --------------- Comments ---------------

    async def collect_comments(self, repo: dict, container: str, number: int, container_id: str) -> None:
        """Walk a container's full comment set, persist the in-window part, delete the vanished."""
        since = self.resolve_since("comments")
        variables = {"owner": repo["owner"], "name": repo["repo_name"], "number": number}
        sources = {
            "issue": [(q.ISSUE_COMMENTS, ("repository", "issue", "comments"))],
            "discussion": [(q.DISCUSSION_COMMENTS, ("repository", "discussion", "comments"))],
            "pull_request": [
                (q.PULL_REQUEST_COMMENTS, ("repository", "pullRequest", "comments")),
                (q.PULL_REQUEST_REVIEW_COMMENTS, ("repository", "pullRequest", "reviewThreads")),
            ],
        }[container]

        fetched: list[dict] = []
        try:
            for query, path in sources:
                async for nodes in self.client.paginate(query, variables, path):
                    if path[-1] == "reviewThreads":
                        for thread in nodes:
                            fetched.extend(await self._thread_comments(thread))
                    else:
                        fetched.extend(nodes)
        except NotFoundError:
            logger.info(f"{container} {repo['name_with_owner']}#{number} not found while fetching comments")
            return

        scope = {"pull_request_id": container_id} if container == "pull_request" else {"issue_id": container_id}
        async with db.transaction() as conn:
            for node in fetched:
                if evaluate_timestamp(node.get("updatedAt") or node.get("createdAt"), since, self.until) != "include":
                    continue
                review_id = (node.get("pullRequestReview") or {}).get("id")
                if review_id and not await db.review_exists(conn, review_id):
                    review_id = None
                author_id = await self._actor(conn, node.get("author"))
                await db.upsert_comment(conn, {
                    "id": node["id"],
                    **scope,
                    "review_id": review_id,
                    "author_id": author_id,
                    "body": node.get("body"),
                    "created_at": node.get("createdAt"),
                    "updated_at": node.get("updatedAt"),
                    "data": {k: v for k, v in node.items() if k not in ("reactions", "author")},
                })
                await self._persist_reactions(conn, "Comment", node["id"], node)
                self.counts["comments"] += 1
                self._track("comments", node.get("updatedAt") or node.get("createdAt"))
            removed = await db.delete_missing_comments(conn, [n["id"] for n in fetched], **scope)
            self.deleted_comments += len(removed)

    async def _thread_comments(self, thread: dict) -> list[dict]:
        """Every comment of a review thread, following the nested comment cursor."""
        connection = thread.get("comments") or {}
        comments = [c for c in connection.get("nodes") or [] if c]
        page_info = connection.get("pageInfo") or {}
        has_more, cursor = page_info.get("hasNextPage", False), page_info.get("endCursor")
        while has_more:
            nodes, cursor, has_more = await self.client.fetch_page(
                q.REVIEW_THREAD_COMMENTS, {"id": thread["id"]}, ("node", "comments"), cursor,
            )
            comments.extend(c for c in nodes if c)
        return comments

    # --------------- Single node ---------------

    async def resync_node(self, node_id: str) -> dict:
        """Re-fetch one issue, pull request or discussion with all its children."""
        data = await self.client.request(q.NODE_BY_ID, {"id": node_id})
        node = data.get("node")
        if not node or node.get("__typename") not in ("Issue", "PullRequest", "Discussion"):
            raise NotFoundError(f"Node {node_id} is not an issue, pull request or discussion")

        async with db.transaction() as conn:
            repo = await self._persist_repository(conn, node["repository"])
            if node["__typename"] == "PullRequest":
                row = await self._persist_pull_request(conn, repo, node)
            else:
                row = await self._persist_issue(conn, repo, node)

        if node["__typename"] == "PullRequest":
            await self.collect_pull_request_children(repo, row)
            kind = "pull_request"
        elif node["__typename"] == "Discussion":
            await self.collect_comments(repo, "discussion", row["number"], row["id"])
            kind = "discussion"
        else:
            await self.collect_comments(repo, "issue", row["number"], row["id"])
            kind = "issue"
        return {"id": node_id, "type": kind, "repository_id": repo["id"], "number": row["number"]}
