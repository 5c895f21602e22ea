"""Shared fixtures for Pulse backend tests."""

import json
import os
import re
import sys
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

# Ensure backend is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


@pytest.fixture(autouse=True)
async def test_db(tmp_path):
    """Patch DB_PATH to a per-test temp file, init schema, clean after."""
    import database as db_module
    import sync_service

    db_path = str(tmp_path / "test.db")
    original = db_module.DB_PATH
    db_module.DB_PATH = db_path

    await db_module.init_db()
    yield

    sync_service.stop_scheduler()
    sync_service._active_runs.clear()
    db_module.DB_PATH = original


@pytest_asyncio.fixture
async def async_client():
    """HTTPX async client wired to the FastAPI app without invoking lifespan."""
    from main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# --------------- Seed data ---------------

class Seeder:
    """Writes collected rows straight into the database, bypassing the collector."""

    async def _write(self, fn, row: dict) -> dict:
        import database as db

        async with db.transaction() as conn:
            await fn(conn, row)
        return row

    async def user(self, user_id: str, login: str, **extra) -> dict:
        import database as db
        return await self._write(db.upsert_user, {"id": user_id, "login": login, **extra})

    async def repo(self, repo_id: str = "R_1", name: str = "widgets", owner: str = "acme") -> dict:
        import database as db
        return await self._write(db.upsert_repository, {
            "id": repo_id, "name": name, "name_with_owner": f"{owner}/{name}",
            "url": f"https://github.com/{owner}/{name}",
        })

    async def issue(
        self, issue_id: str, number: int, *, repo_id: str = "R_1", author_id: str | None = None,
        created_at: str = "2024-06-03T09:00:00Z", updated_at: str | None = None, state: str = "OPEN",
        closed_at: str | None = None, title: str | None = None, body: str = "", data: dict | None = None,
        discussion: bool = False,
    ) -> dict:
        import database as db
        payload = {"url": f"https://github.com/acme/widgets/issues/{number}", **(data or {})}
        payload["__typename"] = "Discussion" if discussion else "Issue"
        return await self._write(db.upsert_issue, {
            "id": issue_id, "number": number, "repository_id": repo_id, "author_id": author_id,
            "title": title or f"Issue {number}", "state": state, "body": body,
            "created_at": created_at, "updated_at": updated_at or created_at, "closed_at": closed_at,
            "data": payload,
        })

    async def pull_request(
        self, pr_id: str, number: int, *, repo_id: str = "R_1", author_id: str | None = None,
        created_at: str = "2024-06-03T09:00:00Z", updated_at: str | None = None, state: str = "OPEN",
        merged_at: str | None = None, closed_at: str | None = None, title: str | None = None, body: str = "",
    ) -> dict:
        import database as db
        return await self._write(db.upsert_pull_request, {
            "id": pr_id, "number": number, "repository_id": repo_id, "author_id": author_id,
            "title": title or f"PR {number}", "state": "MERGED" if merged_at else state, "body": body,
            "merged": merged_at is not None, "created_at": created_at, "updated_at": updated_at or created_at,
            "closed_at": closed_at or merged_at, "merged_at": merged_at,
            "data": {"url": f"https://github.com/acme/widgets/pull/{number}"},
        })

    async def link(self, pr_id: str, issue_id: str) -> None:
        import database as db

        async with db.transaction() as conn:
            await db.replace_pull_request_issues(conn, pr_id, [{"issue_id": issue_id}])

    async def review(self, review_id: str, pr_id: str, author_id: str, state: str, submitted_at: str) -> dict:
        import database as db
        return await self._write(db.upsert_review, {
            "id": review_id, "pull_request_id": pr_id, "author_id": author_id,
            "state": state, "submitted_at": submitted_at,
        })

    async def review_request(self, request_id: str, pr_id: str, reviewer_id: str, requested_at: str) -> dict:
        import database as db
        return await self._write(db.upsert_review_request, {
            "id": request_id, "pull_request_id": pr_id, "reviewer_id": reviewer_id, "requested_at": requested_at,
        })

    async def comment(
        self, comment_id: str, *, author_id: str | None, body: str, created_at: str,
        issue_id: str | None = None, pull_request_id: str | None = None,
    ) -> dict:
        import database as db
        return await self._write(db.upsert_comment, {
            "id": comment_id, "issue_id": issue_id, "pull_request_id": pull_request_id,
            "author_id": author_id, "body": body, "created_at": created_at, "updated_at": created_at,
            "data": {"url": f"https://github.com/acme/widgets/issues/1#{comment_id}"},
        })

    async def reaction(self, reaction_id: str, subject_id: str, user_id: str, created_at: str,
                       subject_type: str = "Comment") -> dict:
        import database as db
        return await self._write(db.upsert_reaction, {
            "id": reaction_id, "subject_type": subject_type, "subject_id": subject_id,
            "user_id": user_id, "content": "THUMBS_UP", "created_at": created_at,
        })

    async def status(self, issue_id: str, status: str, occurred_at: str, source: str = "activity") -> None:
        import database as db
        import status_store

        async with db.transaction() as conn:
            await status_store.record_status(conn, issue_id, status, occurred_at, source=source)


@pytest.fixture
def seed():
    return Seeder()


# --------------- Fake GitHub GraphQL ---------------

class FakeGitHub:
    """GraphQL endpoint double served through ``httpx.MockTransport``.

    Connection queries are answered from pages registered per operation
    (optionally per ``number`` variable); cursors are ``c<page index>``.
    """

    PATHS = {
        "OrganizationRepositories": ("organization", "repositories"),
        "RepositoryIssues": ("repository", "issues"),
        "RepositoryDiscussions": ("repository", "discussions"),
        "RepositoryPullRequests": ("repository", "pullRequests"),
        "OpenPullRequestReviewRequests": ("repository", "pullRequests"),
        "PullRequestReviews": ("repository", "pullRequest", "reviews"),
        "PullRequestTimeline": ("repository", "pullRequest", "timelineItems"),
        "IssueComments": ("repository", "issue", "comments"),
        "PullRequestComments": ("repository", "pullRequest", "comments"),
        "PullRequestReviewComments": ("repository", "pullRequest", "reviewThreads"),
        "DiscussionComments": ("repository", "discussion", "comments"),
        "ReviewThreadComments": ("node", "comments"),
    }

    def __init__(self):
        self.pages: dict[tuple[str, int | None], list[list[dict]]] = {}
        self.pull_requests: dict[int, dict] = {}
        self.nodes: dict[str, dict] = {}
        self.responses: dict[str, list[httpx.Response]] = {}
        self.calls: list[tuple[str, dict]] = []
        self.transport = httpx.MockTransport(self._handle)

    def set_pages(self, operation: str, *pages: list[dict], number: int | str | None = None) -> None:
        """Register pages keyed by the `number` variable, or the `id` variable for node queries."""
        self.pages[(operation, number)] = [list(p) for p in pages]

    def queue_response(self, operation: str, response: httpx.Response) -> None:
        """Serve ``response`` once before falling back to the registered data."""
        self.responses.setdefault(operation, []).append(response)

    def operations(self, name: str) -> list[dict]:
        return [variables for op, variables in self.calls if op == name]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        operation = re.search(r"query (\w+)", body["query"]).group(1)
        variables = body.get("variables") or {}
        self.calls.append((operation, variables))

        queued = self.responses.get(operation)
        if queued:
            return queued.pop(0)

        if operation == "PullRequestByNumber":
            node = self.pull_requests.get(variables["number"])
            return httpx.Response(200, json={"data": {"repository": {"pullRequest": node}}})
        if operation == "NodeById":
            node = self.nodes.get(variables["id"])
            if node is None:
                return httpx.Response(200, json={
                    "data": {"node": None},
                    "errors": [{"type": "NOT_FOUND", "message": f"Could not resolve to a node with the global id of '{variables['id']}'"}],
                })
            return httpx.Response(200, json={"data": {"node": node}})

        key = variables.get("number", variables.get("id"))
        pages = self.pages.get((operation, key)) or self.pages.get((operation, None)) or [[]]
        index = int(variables["cursor"][1:]) if variables.get("cursor") else 0
        has_next = index + 1 < len(pages)
        data: dict = {
            "pageInfo": {"hasNextPage": has_next, "endCursor": f"c{index + 1}" if has_next else None},
            "nodes": pages[index],
        }
        for key in reversed(self.PATHS[operation]):
            data = {key: data}
        return httpx.Response(200, json={"data": data})

    # --------------- Node builders ---------------

    @staticmethod
    def actor(user_id: str, login: str, typename: str = "User") -> dict:
        return {"__typename": typename, "id": user_id, "login": login, "avatarUrl": None}

    @staticmethod
    def repository(repo_id: str = "R_1", name: str = "widgets", owner: str = "acme") -> dict:
        return {
            "id": repo_id, "name": name, "nameWithOwner": f"{owner}/{name}",
            "url": f"https://github.com/{owner}/{name}", "isPrivate": False,
            "createdAt": "2023-01-01T00:00:00Z", "updatedAt": "2024-06-01T00:00:00Z",
            "owner": {"__typename": "Organization", "id": "O_1", "login": owner},
        }

    @staticmethod
    def reactions(*nodes: dict, total: int | None = None) -> dict:
        return {"totalCount": len(nodes) if total is None else total, "nodes": list(nodes)}

    @staticmethod
    def reaction(reaction_id: str, user_id: str, login: str, created_at: str) -> dict:
        return {"id": reaction_id, "content": "THUMBS_UP", "createdAt": created_at,
                "user": {"id": user_id, "login": login}}

    @classmethod
    def issue(
        cls, issue_id: str, number: int, updated_at: str, *, author: dict | None = None, state: str = "OPEN",
        created_at: str | None = None, closed_at: str | None = None, body: str = "",
        project_items: list[dict] | None = None,
    ) -> dict:
        return {
            "__typename": "Issue", "id": issue_id, "number": number, "title": f"Issue {number}",
            "state": state, "url": f"https://github.com/acme/widgets/issues/{number}", "body": body,
            "createdAt": created_at or updated_at, "updatedAt": updated_at, "closedAt": closed_at,
            "author": author, "assignees": {"nodes": []}, "labels": {"nodes": []},
            "comments": {"totalCount": 0}, "projectItems": {"nodes": project_items or []},
            "reactions": cls.reactions(),
        }

    @classmethod
    def discussion(cls, discussion_id: str, number: int, updated_at: str, *, author: dict | None = None) -> dict:
        return {
            "__typename": "Discussion", "id": discussion_id, "number": number, "title": f"Discussion {number}",
            "url": f"https://github.com/acme/widgets/discussions/{number}", "body": "", "closed": False,
            "createdAt": updated_at, "updatedAt": updated_at, "closedAt": None, "author": author,
            "category": {"name": "General"}, "answerChosenAt": None, "comments": {"totalCount": 0},
            "reactions": cls.reactions(),
        }

    @classmethod
    def pull_request(
        cls, pr_id: str, number: int, updated_at: str, *, author: dict | None = None, state: str = "OPEN",
        created_at: str | None = None, merged_at: str | None = None, closing_issues: list[dict] | None = None,
        requested_reviewers: list[dict] | None = None,
    ) -> dict:
        return {
            "__typename": "PullRequest", "id": pr_id, "number": number, "title": f"PR {number}",
            "state": "MERGED" if merged_at else state, "url": f"https://github.com/acme/widgets/pull/{number}",
            "body": "", "createdAt": created_at or updated_at, "updatedAt": updated_at,
            "closedAt": merged_at, "mergedAt": merged_at, "merged": merged_at is not None, "isDraft": False,
            "reviewDecision": None, "additions": 1, "deletions": 1, "changedFiles": 1, "author": author,
            "assignees": {"nodes": []},
            "closingIssuesReferences": {"nodes": [
                {"id": i["id"], "number": i["number"], "title": i.get("title"), "state": i.get("state", "OPEN"),
                 "url": None, "repository": {"nameWithOwner": "acme/widgets"}}
                for i in closing_issues or []
            ]},
            "reviewRequests": {"nodes": [{"requestedReviewer": r} for r in requested_reviewers or []]},
            "comments": {"totalCount": 0}, "reviews": {"totalCount": 0},
            "reactions": cls.reactions(),
        }

    @classmethod
    def comment(cls, comment_id: str, created_at: str, *, author: dict | None = None, body: str = "",
                reactions: dict | None = None) -> dict:
        return {
            "id": comment_id, "url": f"https://github.com/acme/widgets/issues/1#{comment_id}", "body": body,
            "createdAt": created_at, "updatedAt": created_at, "author": author,
            "reactions": reactions or cls.reactions(),
        }

    @staticmethod
    def review(review_id: str, submitted_at: str, author: dict, state: str = "APPROVED") -> dict:
        return {"id": review_id, "state": state, "body": "", "url": None, "submittedAt": submitted_at,
                "author": author}

    @staticmethod
    def timeline_event(event_id: str, typename: str, created_at: str, reviewer: dict) -> dict:
        return {"__typename": typename, "id": event_id, "createdAt": created_at, "requestedReviewer": reviewer}

    @staticmethod
    def project_item(item_id: str, title: str, status: str, updated_at: str, **fields: str) -> dict:
        item = {
            "id": item_id, "updatedAt": updated_at, "project": {"title": title},
            "status": {"name": status, "updatedAt": updated_at},
        }
        for key, value in fields.items():
            item[key] = {"name": value}
        return item


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest_asyncio.fixture
async def github_client(fake_github):
    """GitHubClient wired to the fake endpoint; sleeps are recorded, not awaited."""
    from github_client import GitHubClient

    client = GitHubClient(
        token="test-token", api_url="https://api.github.test/graphql",
        transport=fake_github.transport, sleep=AsyncMock(),
    )
    async with client:
        yield client


@pytest.fixture
def mock_classifier():
    """Patch mention_classifier._run_classifier to prevent Claude API calls."""
    with patch("mention_classifier._run_classifier", new_callable=AsyncMock) as mock:
        mock.return_value = "[]"
        yield mock
