"""Sync orchestration: runs, backfill, resync, cache refresh and the scheduler.

Runs are tracked in an in-process registry keyed by sync run id. Only one
collection (full, incremental, backfill chunk or single-item resync) may be
active at a time. The run slot is claimed with no await between the idle
check and the claim, and the ``sync`` lease row excludes other processes
sharing the database. The status automation and snapshot jobs additionally
serialize through their database advisory locks.
"""

import asyncio
import itertools
import logging
import os
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import attention
import database as db
import snapshot
import status_automation
from business_days import build_holiday_set
from collectors import RESOURCE_KEYS, Collector, SyncCancelledError
from config import settings
from github_client import GitHubClient
from timestamps import max_timestamp, now_iso, parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)

Progress = Callable[[str], Awaitable[None] | None]


class SyncInProgressError(Exception):
    pass


class ConfigurationError(Exception):
    pass


# --------------- Run Registry ---------------

_active_runs: dict[int, dict] = {}


def active_runs() -> list[dict]:
    return [
        {k: v for k, v in run.items() if k != "cancel"} | {"cancel_requested": run["cancel"].is_set()}
        for run in _active_runs.values()
    ]


def is_sync_running() -> bool:
    return bool(_active_runs)


def _register(run_id: int, run_type: str, strategy: str) -> dict:
    entry = {
        "run_id": run_id, "run_type": run_type, "strategy": strategy,
        "started_at": now_iso(), "cancel": asyncio.Event(),
    }
    _active_runs[run_id] = entry
    return entry


def _ensure_idle() -> None:
    if _active_runs:
        running = ", ".join(str(r) for r in sorted(_active_runs) if r > 0) or "starting"
        raise SyncInProgressError(f"A sync is already running (run {running}).")


SYNC_LEASE = "sync"
SYNC_LEASE_TTL_SECONDS = 6 * 3600

# Negative placeholder keys hold the slot until the sync_runs row exists.
_claim_keys = itertools.count(-1, -1)


def _claim(run_type: str, strategy: str) -> dict:
    _ensure_idle()
    return _register(next(_claim_keys), run_type, strategy)


def _assign_run_id(entry: dict, run_id: int) -> None:
    _active_runs.pop(entry["run_id"], None)
    entry["run_id"] = run_id
    _active_runs[run_id] = entry


@asynccontextmanager
async def _exclusive_run(run_type: str, strategy: str):
    """Hold the in-process run slot and the cross-process sync lease."""
    entry = _claim(run_type, strategy)
    owner = f"{os.getpid()}:{id(entry)}"
    try:
        if not await db.acquire_lease(SYNC_LEASE, owner, SYNC_LEASE_TTL_SECONDS):
            lease = await db.get_lease(SYNC_LEASE)
            holder = lease["owner"] if lease else "another process"
            raise SyncInProgressError(f"A sync is already running in another process ({holder}).")
        try:
            yield entry
        finally:
            await db.release_lease(SYNC_LEASE, owner)
    finally:
        _active_runs.pop(entry["run_id"], None)


def cancel_sync(run_id: int | None = None) -> bool:
    """Ask a run (or every run) to stop at the next repository boundary."""
    if run_id is None:
        targets = list(_active_runs.values())
    else:
        targets = [_active_runs[run_id]] if run_id in _active_runs else []
    for run in targets:
        run["cancel"].set()
    return bool(targets)


# --------------- Helpers ---------------

def create_client() -> GitHubClient:
    if not settings.GITHUB_TOKEN:
        raise ConfigurationError("GITHUB_TOKEN is not configured.")
    return GitHubClient()


def resolve_org(config: dict) -> str:
    org = config.get("org_name") or settings.GITHUB_ORG
    if not org:
        raise ConfigurationError(
            "GitHub organization is not configured. Set GITHUB_ORG or update the sync configuration."
        )
    return org


async def build_since_map(base: str | None) -> dict[str, str]:
    """Per-resource lower bound: the later of ``base`` and the resource watermark."""
    since_map = {}
    for resource in RESOURCE_KEYS:
        state = await db.get_sync_state(resource)
        effective = max_timestamp(to_iso(base), state["last_item_timestamp"] if state else None)
        if effective:
            since_map[resource] = effective
    return since_map


def _latest_timestamp(timestamps: dict[str, str | None]) -> str | None:
    latest = None
    for value in timestamps.values():
        latest = max_timestamp(latest, value)
    return latest


# --------------- Cache Refresh ---------------

async def refresh_activity_caches(run_id: int | None = None, reason: str = "manual") -> dict:
    """Status automation, then the full snapshot, then attention flags."""
    automation = await status_automation.ensure_issue_status_automation(run_id=run_id, trigger=reason)
    snapshot_result = await snapshot.refresh_activity_items_snapshot(run_id=run_id)
    flags = await attention.refresh_attention_flags()
    return {"automation": automation, "snapshot": snapshot_result, "attention": flags}


async def run_status_automation(force: bool = False, trigger: str = "manual") -> dict:
    result = await status_automation.ensure_issue_status_automation(force=force, trigger=trigger)
    inserted = result["inserted_in_progress"] + result["inserted_done"] + result["inserted_canceled"]
    if inserted:
        result["snapshot"] = await snapshot.refresh_activity_items_snapshot()
        result["attention"] = await attention.refresh_attention_flags()
    return result


# --------------- Sync Runs ---------------

async def execute_sync(
    *,
    since: str | None,
    until: str | None = None,
    strategy: str = "incremental",
    run_type: str = "manual",
    since_by_resource: dict[str, str] | None = None,
    repository_ids: list[str] | None = None,
    progress: Progress | None = None,
    refresh_caches: bool = True,
) -> dict:
    """One collection run with run bookkeeping."""
    async with _exclusive_run(run_type, strategy) as entry:
        config = await db.get_sync_config()
        org = resolve_org(config)
        client = create_client()
        started_at = now_iso()

        run = await db.create_sync_run(run_type, strategy, since, until, started_at, scope=repository_ids)
        _assign_run_id(entry, run["id"])
        await db.update_sync_config(last_sync_started_at=started_at)
        logger.info(f"Sync run {run['id']} started ({run_type}/{strategy}, since={since}, until={until})")
        try:
            async with client:
                collector = Collector(
                    client, org, since=since, until=until, since_by_resource=since_by_resource,
                    run_id=run["id"], should_abort=entry["cancel"].is_set, progress=progress,
                )
                summary = await collector.run(repository_ids)
        except SyncCancelledError as e:
            completed_at = now_iso()
            await db.update_sync_run(run["id"], status="canceled", error=str(e), completed_at=completed_at,
                                     summary=collector.summary().model_dump())
            await db.update_sync_config(last_sync_completed_at=completed_at)
            logger.warning(f"Sync run {run['id']} canceled: {e}")
            raise
        except Exception as e:
            completed_at = now_iso()
            await db.update_sync_run(run["id"], status="failed", error=str(e) or e.__class__.__name__,
                                     completed_at=completed_at)
            await db.update_sync_config(last_sync_completed_at=completed_at)
            logger.exception(f"Sync run {run['id']} failed")
            raise

        completed_at = now_iso()
        await db.update_sync_config(
            last_sync_completed_at=completed_at,
            last_successful_sync_at=_latest_timestamp(summary.timestamps) or completed_at,
        )
        await db.update_sync_run(run["id"], status="success", completed_at=completed_at,
                                 summary=summary.model_dump())
        logger.info(f"Sync run {run['id']} completed: {summary.counts}")

    caches = None
    if refresh_caches:
        try:
            caches = await refresh_activity_caches(run_id=run["id"], reason="sync")
        except Exception:
            logger.exception(f"Failed to refresh activity caches after sync run {run['id']}")
    return {
        "run_id": run["id"],
        "status": "success",
        "strategy": strategy,
        "since": since,
        "until": until,
        "started_at": started_at,
        "completed_at": completed_at,
        "summary": summary.model_dump(),
        "caches": caches,
    }


async def run_sync(
    mode: str = "incremental", repository_ids: list[str] | None = None,
    run_type: str = "manual", progress: Progress | None = None,
) -> dict:
    """Full (no window) or incremental (since the last successful sync) collection."""
    if mode not in ("full", "incremental"):
        raise ValueError(f"Unknown sync mode: {mode}")
    if mode == "full":
        return await execute_sync(
            since=None, strategy="full", run_type=run_type, repository_ids=repository_ids, progress=progress,
        )
    config = await db.get_sync_config()
    since = config.get("last_successful_sync_at")
    return await execute_sync(
        since=since, strategy="incremental", run_type=run_type,
        since_by_resource=await build_since_map(since), repository_ids=repository_ids, progress=progress,
    )


async def run_backfill(start_date: str, progress: Progress | None = None) -> dict:
    """Collect day-sized windows from ``start_date`` (UTC midnight) up to now."""
    try:
        start_day = date.fromisoformat(str(start_date).strip()[:10])
    except ValueError:
        raise ValueError(f"Invalid backfill start date: {start_date}") from None
    cursor = datetime.combine(start_day, time(), tzinfo=timezone.utc)
    now = utcnow().replace(microsecond=0)
    if cursor > now:
        raise ValueError("Backfill start date must be in the past.")

    totals = {key: 0 for key in RESOURCE_KEYS if key != "repositories"}
    chunks = []
    while cursor < now:
        chunk_end = min(cursor + timedelta(days=1), now)
        since, until = to_iso(cursor), to_iso(chunk_end)

        chunk_progress = None
        if progress is not None:
            def chunk_progress(message: str, _since=since, _until=until):
                return progress(f"[{_since} -> {_until}) {message}")

        try:
            result = await execute_sync(
                since=since, until=until, strategy="backfill", run_type="backfill",
                since_by_resource={}, progress=chunk_progress, refresh_caches=False,
            )
        except Exception as e:
            chunks.append({"status": "failed", "since": since, "until": until, "error": str(e)})
            break
        chunks.append({"status": "success", **result})
        for key in totals:
            totals[key] += result["summary"]["counts"].get(key, 0)
        cursor = chunk_end

    caches = None
    if any(c["status"] == "success" for c in chunks):
        try:
            caches = await refresh_activity_caches(reason="backfill")
        except Exception:
            logger.exception("Failed to refresh activity caches after backfill")
    return {
        "start_date": to_iso(datetime.combine(start_day, time(), tzinfo=timezone.utc)),
        "end_date": to_iso(now),
        "chunk_count": len(chunks),
        "totals": totals,
        "chunks": chunks,
        "caches": caches,
    }


async def resync_item(item_id: str) -> dict:
    """Re-fetch one issue, pull request or discussion and re-materialize its row."""
    item_id = (item_id or "").strip()
    if not item_id:
        raise ValueError("Item id is required.")
    async with _exclusive_run("manual", "resync") as entry:
        config = await db.get_sync_config()
        client = create_client()
        started_at = now_iso()
        run = await db.create_sync_run("manual", "resync", None, None, started_at, scope=[item_id])
        _assign_run_id(entry, run["id"])
        try:
            async with client:
                collector = Collector(client, config.get("org_name") or settings.GITHUB_ORG, run_id=run["id"])
                node = await collector.resync_node(item_id)
        except Exception as e:
            await db.update_sync_run(run["id"], status="failed", error=str(e) or e.__class__.__name__,
                                     completed_at=now_iso())
            raise
        await db.update_sync_run(run["id"], status="success", completed_at=now_iso(),
                                 summary=collector.summary().model_dump())

    refreshed = await snapshot.refresh_activity_items_snapshot(ids=[item_id])
    flags = await attention.refresh_attention_flags()
    logger.info(f"Resynced {node['type']} {item_id}")
    return {"run_id": run["id"], **node, "snapshot": refreshed, "attention": flags}


# --------------- Scheduler ---------------

_scheduler: dict = {"task": None, "interval_minutes": None}


async def compute_initial_delay(interval_seconds: float) -> float:
    """Seconds until the next run, counting from the last completed sync."""
    config = await db.get_sync_config()
    completed = parse_timestamp(config.get("last_sync_completed_at"))
    if completed is None:
        return 0.0
    elapsed = (utcnow() - completed).total_seconds()
    return max(interval_seconds - elapsed, 0.0)


async def _scheduler_loop(interval_minutes: int, initial_delay: float | None) -> None:
    interval = interval_minutes * 60
    delay = initial_delay if initial_delay is not None else await compute_initial_delay(interval)
    while True:
        await asyncio.sleep(delay)
        try:
            await run_sync("incremental", run_type="automatic")
        except SyncInProgressError:
            logger.info("Skipping scheduled sync; another run is active")
        except Exception:
            logger.exception("Automatic sync failed")
        delay = interval


def start_scheduler(interval_minutes: int, initial_delay: float | None = None) -> None:
    stop_scheduler()
    _scheduler["interval_minutes"] = interval_minutes
    _scheduler["task"] = asyncio.create_task(_scheduler_loop(interval_minutes, initial_delay))
    logger.info(f"Automatic sync scheduled every {interval_minutes} minutes")


def stop_scheduler() -> None:
    task = _scheduler.get("task")
    if task is not None and not task.done():
        task.cancel()
    _scheduler["task"] = None
    _scheduler["interval_minutes"] = None


def scheduler_state() -> dict:
    task = _scheduler.get("task")
    return {"enabled": task is not None and not task.done(), "interval_minutes": _scheduler["interval_minutes"]}


async def initialize_scheduler() -> None:
    config = await db.get_sync_config()
    if config["auto_sync_enabled"]:
        start_scheduler(config["sync_interval_minutes"] or settings.SYNC_INTERVAL_MINUTES)


async def enable_automatic_sync(interval_minutes: int | None = None) -> dict:
    config = await db.get_sync_config()
    interval = interval_minutes or config["sync_interval_minutes"] or settings.SYNC_INTERVAL_MINUTES
    if interval <= 0:
        raise ValueError("Sync interval must be positive.")
    config = await db.update_sync_config(auto_sync_enabled=True, sync_interval_minutes=interval)
    start_scheduler(interval)
    return config


async def disable_automatic_sync() -> dict:
    stop_scheduler()
    return await db.update_sync_config(auto_sync_enabled=False)


# --------------- Admin & Status ---------------

async def cleanup_stuck_sync_runs() -> dict:
    """Fail runs left 'running' by a process that is gone."""
    _ensure_idle()
    result = await db.fail_running_sync_runs("Marked as failed by cleanup.")
    result["lease_released"] = await db.release_lease(SYNC_LEASE)
    logger.info(f"Cleaned up {result['runs']} stuck sync runs and {result['logs']} logs")
    return result


async def update_sync_settings(
    *, org_name: str | None = None, sync_interval_minutes: int | None = None, timezone_name: str | None = None,
    excluded_repository_ids: list[str] | None = None, excluded_user_ids: list[str] | None = None,
    holidays: list[str] | None = None,
) -> dict:
    updates: dict = {}
    if org_name is not None:
        updates["org_name"] = org_name.strip() or None
    if sync_interval_minutes is not None:
        if sync_interval_minutes <= 0:
            raise ValueError("Sync interval must be positive.")
        updates["sync_interval_minutes"] = sync_interval_minutes
    if timezone_name is not None:
        try:
            ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {timezone_name}") from None
        updates["timezone"] = timezone_name
    if excluded_repository_ids is not None:
        updates["excluded_repository_ids"] = sorted({i.strip() for i in excluded_repository_ids if i.strip()})
    if excluded_user_ids is not None:
        updates["excluded_user_ids"] = sorted({i.strip() for i in excluded_user_ids if i.strip()})
    if holidays is not None:
        updates["holidays"] = sorted(build_holiday_set(holidays))
    config = await db.update_sync_config(**updates)
    if sync_interval_minutes is not None and scheduler_state()["enabled"]:
        start_scheduler(sync_interval_minutes)
    return config


async def reset_data(preserve_logs: bool = True) -> dict:
    _ensure_idle()
    await db.reset_data(preserve_logs=preserve_logs)
    return {"reset": True, "preserve_logs": preserve_logs}


async def fetch_sync_status() -> dict:
    """Config, recent runs and logs, the live registry and cache generations."""
    return {
        "config": await db.get_sync_config(),
        "runs": await db.list_sync_runs(10),
        "logs": await db.list_sync_logs(50),
        "active_runs": active_runs(),
        "scheduler": scheduler_state(),
        "caches": {
            "status_automation": await status_automation.get_automation_state(),
            "snapshot": await snapshot.get_snapshot_state(),
        },
    }
