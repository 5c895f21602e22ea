"""Pydantic models for the sync engine, attention engine and API."""

from typing import Literal

from pydantic import BaseModel, Field

IssueStatus = Literal["no_status", "todo", "in_progress", "done", "pending", "canceled"]
StatusSource = Literal["none", "activity", "todo_project"]
ActivityItemType = Literal["issue", "pull_request", "discussion"]


class Actor(BaseModel):
    """A user, organization, bot or mannequin, normalized at the collector boundary."""

    id: str
    login: str | None = None
    name: str | None = None
    avatar_url: str | None = None
    kind: Literal["user", "organization", "bot", "mannequin"] = "user"
    created_at: str | None = None
    updated_at: str | None = None


class StatusEvent(BaseModel):
    """One entry of an issue's append-only status history."""

    status: IssueStatus
    occurred_at: str
    source: Literal["activity", "todo_project"] = "activity"


class StatusResolution(BaseModel):
    """Outcome of resolving an issue's status history.

    ``source`` walks the states none -> activity -> todo_project; todo_project
    is authoritative and locks the status against manual edits.
    """

    status: IssueStatus = "no_status"
    source: StatusSource = "none"
    locked: bool = False
    todo_status: IssueStatus | None = None
    todo_status_at: str | None = None
    activity_status: IssueStatus | None = None
    activity_status_at: str | None = None
    timeline: list[StatusEvent] = []


class WorkTimestamps(BaseModel):
    started_at: str | None = None
    completed_at: str | None = None


class AttentionThresholds(BaseModel):
    """Follow-up thresholds, in business days."""

    stale_pr_days: int = Field(default=20, ge=0)
    idle_pr_days: int = Field(default=10, ge=0)
    reviewer_unassigned_days: int = Field(default=2, ge=0)
    review_stalled_days: int = Field(default=5, ge=0)
    merge_delayed_days: int = Field(default=3, ge=0)
    stuck_review_days: int = Field(default=5, ge=0)
    backlog_issue_days: int = Field(default=40, ge=0)
    stalled_in_progress_days: int = Field(default=20, ge=0)
    unanswered_mention_days: int = Field(default=5, ge=0)


class ActivityFilters(BaseModel):
    """Filters accepted by the activity list."""

    item_types: list[ActivityItemType] = []
    repository_ids: list[str] = []
    statuses: list[str] = []
    issue_statuses: list[IssueStatus] = []
    user_ids: list[str] = []
    attention: list[str] = []
    search: str | None = None


class PageInfo(BaseModel):
    page: int
    per_page: int
    total_count: int
    total_pages: int


class SyncSummary(BaseModel):
    """Counts and watermarks produced by one collection run."""

    repositories_processed: int = 0
    counts: dict[str, int] = {}
    timestamps: dict[str, str | None] = {}
    backfilled_pull_requests: int = 0
    deleted_comments: int = 0
    deleted_reactions: int = 0
