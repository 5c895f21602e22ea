"""FastAPI application exposing sync, activity and attention endpoints for Pulse."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

import activity_service
import attention
import database as db
import mention_classifier
import mention_store
import snapshot
import sync_service
from config import settings
from activity_service import (
    ActivityItemNotFoundError, InvalidStatusError, ProjectFieldConflictError,
    StatusConflictError, StatusLockedError,
)
from github_client import GitHubApiError, NotFoundError
from models import ActivityFilters, AttentionThresholds
from project_field_store import InvalidProjectFieldError
from sync_service import ConfigurationError, SyncInProgressError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)


# --------------- App Setup ---------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    await db.init_db()
    await sync_service.initialize_scheduler()
    logger.info("Pulse backend started")
    yield
    sync_service.stop_scheduler()
    logger.info("Pulse backend shutting down")


app = FastAPI(
    title="Pulse",
    description="GitHub organization activity sync with follow-up insights",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------- Request Models ---------------

class SyncRunRequest(BaseModel):
    mode: str = "incremental"
    repository_ids: list[str] | None = None
    wait: bool = False


class BackfillRequest(BaseModel):
    start_date: str
    wait: bool = False


class AutoSyncRequest(BaseModel):
    enabled: bool
    interval_minutes: int | None = None


class CleanupRequest(BaseModel):
    reset_data: bool = False
    preserve_logs: bool = True


class SyncConfigUpdate(BaseModel):
    org_name: str | None = None
    sync_interval_minutes: int | None = None
    timezone: str | None = None
    excluded_repository_ids: list[str] | None = None
    excluded_user_ids: list[str] | None = None
    holidays: list[str] | None = None


class AutomationRequest(BaseModel):
    force: bool = False


class SnapshotRefreshRequest(BaseModel):
    truncate: bool = False
    ids: list[str] | None = None


class StatusUpdate(BaseModel):
    status: str
    expected_status: str | None = None


class ProjectFieldUpdate(BaseModel):
    updates: dict[str, str | None]
    expected: dict[str, object] | None = None


class MentionOverrideRequest(BaseModel):
    comment_id: str
    mentioned_user_id: str
    state: str


class ClassifyRequest(BaseModel):
    force: bool = False
    model: str | None = None


# --------------- Sync Endpoints ---------------

@app.post("/api/sync/run")
async def run_sync(body: SyncRunRequest):
    """Start a full or incremental sync; ``wait`` returns the finished run."""
    if body.mode not in ("full", "incremental"):
        raise HTTPException(status_code=400, detail="Mode must be 'full' or 'incremental'")
    if sync_service.is_sync_running():
        raise HTTPException(status_code=409, detail="A sync is already running")
    if body.wait:
        try:
            return await sync_service.run_sync(body.mode, body.repository_ids)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SyncInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except GitHubApiError as e:
            raise HTTPException(status_code=502, detail=f"GitHub API error: {e}")

    asyncio.create_task(_sync_background(body.mode, body.repository_ids))
    return {"status": "started", "mode": body.mode, "message": "Poll /api/sync/status for progress"}


async def _sync_background(mode: str, repository_ids: list[str] | None) -> None:
    try:
        await sync_service.run_sync(mode, repository_ids)
    except Exception as e:
        logger.exception(f"Background sync error: {e}")


@app.post("/api/sync/backfill")
async def run_backfill(body: BackfillRequest):
    if sync_service.is_sync_running():
        raise HTTPException(status_code=409, detail="A sync is already running")
    if body.wait:
        try:
            return await sync_service.run_backfill(body.start_date)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    asyncio.create_task(_backfill_background(body.start_date))
    return {"status": "started", "start_date": body.start_date}


async def _backfill_background(start_date: str) -> None:
    try:
        result = await sync_service.run_backfill(start_date)
        logger.info(f"Backfill finished with {result['chunk_count']} chunks: {result['totals']}")
    except Exception as e:
        logger.exception(f"Background backfill error: {e}")


@app.get("/api/sync/status")
async def sync_status():
    return await sync_service.fetch_sync_status()


@app.post("/api/sync/auto")
async def set_auto_sync(body: AutoSyncRequest):
    try:
        if body.enabled:
            return await sync_service.enable_automatic_sync(body.interval_minutes)
        return await sync_service.disable_automatic_sync()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/sync/admin/cleanup")
async def cleanup_sync(body: CleanupRequest | None = None):
    body = body or CleanupRequest()
    try:
        result = await sync_service.cleanup_stuck_sync_runs()
        if body.reset_data:
            result["reset"] = await sync_service.reset_data(preserve_logs=body.preserve_logs)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result


@app.get("/api/sync/config")
async def get_sync_config():
    return await db.get_sync_config()


@app.patch("/api/sync/config")
async def update_sync_config(body: SyncConfigUpdate):
    try:
        return await sync_service.update_sync_settings(
            org_name=body.org_name,
            sync_interval_minutes=body.sync_interval_minutes,
            timezone_name=body.timezone,
            excluded_repository_ids=body.excluded_repository_ids,
            excluded_user_ids=body.excluded_user_ids,
            holidays=body.holidays,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --------------- Activity Endpoints ---------------

@app.post("/api/activity/status-automation")
async def run_status_automation(body: AutomationRequest | None = None):
    body = body or AutomationRequest()
    return await sync_service.run_status_automation(force=body.force, trigger="api")


@app.post("/api/activity/snapshot/refresh")
async def refresh_snapshot(body: SnapshotRefreshRequest | None = None):
    body = body or SnapshotRefreshRequest()
    result = await snapshot.refresh_activity_items_snapshot(truncate=body.truncate, ids=body.ids)
    result["attention"] = await attention.refresh_attention_flags()
    return result


@app.get("/api/activity")
async def list_activity(
    item_type: list[str] = Query(default=[]),
    repository_id: list[str] = Query(default=[]),
    status: list[str] = Query(default=[]),
    issue_status: list[str] = Query(default=[]),
    user_id: list[str] = Query(default=[]),
    attention_filter: list[str] = Query(default=[], alias="attention"),
    search: str | None = None,
    page: int = 1,
    per_page: int = activity_service.DEFAULT_PER_PAGE,
):
    try:
        filters = ActivityFilters(
            item_types=item_type, repository_ids=repository_id, statuses=status,
            issue_statuses=issue_status, user_ids=user_id, attention=attention_filter, search=search,
        )
        return await activity_service.list_activity_items(filters, page=page, per_page=per_page)
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/activity/{item_id}")
async def get_activity_item(item_id: str):
    detail = await activity_service.get_activity_item_detail(item_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Activity item not found")
    return detail


@app.post("/api/activity/{item_id}/resync")
async def resync_activity_item(item_id: str):
    try:
        return await sync_service.resync_item(item_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Item not found on GitHub")
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.patch("/api/activity/{item_id}/status")
async def update_activity_status(item_id: str, body: StatusUpdate):
    try:
        return await activity_service.update_issue_status(item_id, body.status, body.expected_status)
    except ActivityItemNotFoundError:
        raise HTTPException(status_code=404, detail="Issue not found")
    except InvalidStatusError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StatusLockedError as e:
        raise HTTPException(status_code=409, detail={
            "error": "status_locked", "message": str(e), "todo_status": e.todo_status,
        })
    except StatusConflictError as e:
        raise HTTPException(status_code=409, detail={
            "error": "status_conflict", "message": str(e), "current": e.current,
        })


@app.patch("/api/activity/{item_id}/project-fields")
async def update_project_fields(item_id: str, body: ProjectFieldUpdate):
    try:
        return await activity_service.update_project_field_override(item_id, body.updates, body.expected)
    except ActivityItemNotFoundError:
        raise HTTPException(status_code=404, detail="Issue not found")
    except InvalidProjectFieldError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StatusLockedError as e:
        raise HTTPException(status_code=409, detail={
            "error": "status_locked", "message": str(e), "todo_status": e.todo_status,
        })
    except ProjectFieldConflictError as e:
        raise HTTPException(status_code=409, detail={
            "error": "project_field_conflict", "message": str(e), "field": e.field, "current": e.current,
        })


# --------------- Attention Endpoints ---------------

@app.get("/api/attention")
async def get_attention(
    repository_id: list[str] = Query(default=[]),
    user_id: list[str] = Query(default=[]),
    stale_pr_days: int | None = None,
    idle_pr_days: int | None = None,
    stuck_review_days: int | None = None,
    backlog_issue_days: int | None = None,
    stalled_in_progress_days: int | None = None,
    unanswered_mention_days: int | None = None,
):
    overrides = {
        k: v for k, v in {
            "stale_pr_days": stale_pr_days, "idle_pr_days": idle_pr_days,
            "stuck_review_days": stuck_review_days, "backlog_issue_days": backlog_issue_days,
            "stalled_in_progress_days": stalled_in_progress_days,
            "unanswered_mention_days": unanswered_mention_days,
        }.items() if v is not None
    }
    try:
        thresholds = AttentionThresholds(**overrides)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await attention.get_attention_insights(
        repository_ids=repository_id, user_ids=user_id, thresholds=thresholds,
    )


@app.post("/api/attention/unanswered-mentions/manual")
async def override_mention(body: MentionOverrideRequest):
    try:
        record = await mention_store.set_mention_override(body.comment_id, body.mentioned_user_id, body.state)
    except mention_store.InvalidOverrideError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError:
        raise HTTPException(status_code=404, detail="Comment not found")
    await attention.refresh_attention_flags()
    return record


@app.post("/api/attention/unanswered-mentions/classify")
async def classify_mentions(body: ClassifyRequest | None = None):
    body = body or ClassifyRequest()
    result = await mention_classifier.classify_unanswered_mentions(force=body.force, model=body.model)
    if result["updated"]:
        await attention.refresh_attention_flags()
    return result


# --------------- Health ---------------

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": app.version, "sync_running": sync_service.is_sync_running()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
