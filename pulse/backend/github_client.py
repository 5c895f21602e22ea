"""GitHub GraphQL client with rate-limit aware retries and cursor pagination."""

import asyncio
import logging
import re
from contextlib import AsyncExitStack
from datetime import datetime, timezone

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import settings
from timestamps import parse_timestamp

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {500, 502, 503, 504}
RATE_LIMIT_STATUS = {403, 429}
RATE_LIMIT_CODES = {"RATE_LIMIT", "RATE_LIMITED", "GRAPHQL_RATE_LIMIT", "graphql_rate_limit"}
RATE_LIMIT_PATTERN = re.compile(r"rate limit", re.IGNORECASE)
RETRY_HINT_KEYS = (
    "retryAfter", "retry_after", "retryAfterSeconds", "retry_after_seconds",
    "wait", "seconds", "resetAfter", "reset_after", "resetAt", "reset_at",
)

MAX_RETRY_ATTEMPTS = 3
MAX_RATE_LIMIT_RETRIES = 10
BASE_RETRY_DELAY_SECONDS = 0.5
DEFAULT_RATE_LIMIT_DELAY_SECONDS = 60.0
MAX_RATE_LIMIT_DELAY_SECONDS = 15 * 60.0
BACKOFF_FACTOR = 2


class GitHubApiError(Exception):
    """A GraphQL request that failed and will not be retried."""

    def __init__(self, message: str, status_code: int | None = None, codes: list[str] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.codes = codes or []


class RateLimitError(GitHubApiError):
    def __init__(self, message: str, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NotFoundError(GitHubApiError):
    """The requested node no longer exists upstream."""


class TransientError(GitHubApiError):
    """A server or network failure worth retrying."""


def _gh_headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "User-Agent": "pulse-sync",
    }


def _seconds_from_hint(value: object, now: datetime) -> float | None:
    """Interpret a retry hint as seconds to wait: a number, an epoch, or an ISO time."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and re.fullmatch(r"\d+(\.\d+)?", value.strip())):
        number = float(value)
        # Large values are epoch seconds (x-ratelimit-reset style)
        if number > 10_000_000:
            return max(number - now.timestamp(), 0.0)
        return max(number, 0.0)
    reset_at = parse_timestamp(value)
    if reset_at is not None:
        return max((reset_at - now).total_seconds(), 0.0)
    return None


def retry_hint_seconds(headers: httpx.Headers | dict | None, errors: list[dict] | None = None) -> float | None:
    """Pull a server-provided wait out of response headers or GraphQL error extensions."""
    now = datetime.now(timezone.utc)
    headers = headers or {}
    for header in ("retry-after", "x-ratelimit-reset"):
        hint = _seconds_from_hint(headers.get(header), now)
        if hint is not None:
            return hint
    for error in errors or []:
        for container in (error.get("extensions") or {}, error):
            for key in RETRY_HINT_KEYS:
                hint = _seconds_from_hint(container.get(key), now)
                if hint is not None:
                    return hint
    return None


def rate_limit_delay(hint: float | None, attempt: int) -> float:
    """Seconds to wait before the next rate-limited attempt."""
    if hint is not None:
        return max(hint, 1.0)
    return min(DEFAULT_RATE_LIMIT_DELAY_SECONDS * BACKOFF_FACTOR ** attempt, MAX_RATE_LIMIT_DELAY_SECONDS)


def _wait_for_rate_limit(retry_state: RetryCallState) -> float:
    error = retry_state.outcome.exception()
    return rate_limit_delay(getattr(error, "retry_after", None), retry_state.attempt_number - 1)


def _log_retry(label: str, limit: int):
    def log(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{retry_state.outcome.exception()}; waiting {retry_state.next_action.sleep:.1f}s "
            f"({label} {retry_state.attempt_number}/{limit})"
        )
    return log


def _is_rate_limit_error(error: dict) -> bool:
    code = error.get("type") or (error.get("extensions") or {}).get("code")
    return code in RATE_LIMIT_CODES or bool(RATE_LIMIT_PATTERN.search(error.get("message") or ""))


def _get_path(data: dict | None, path: tuple[str, ...]) -> dict | None:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class GitHubClient:
    """Issues one GraphQL request at a time; use as an async context manager."""

    def __init__(
        self,
        token: str | None = None,
        api_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
        timeout: float | None = None,
    ):
        self.token = token if token is not None else settings.GITHUB_TOKEN
        self.api_url = api_url or settings.GITHUB_API_URL
        self.transport = transport
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self.sleep = sleep
        self.rate_limit_remaining: int | None = None
        self.rate_limit_reset_at: str | None = None
        self.request_count = 0
        self._stack: AsyncExitStack | None = None
        self._http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GitHubClient":
        self._stack = AsyncExitStack()
        kwargs = {"follow_redirects": True, "timeout": self.timeout, "headers": _gh_headers(self.token)}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        self._http = await self._stack.enter_async_context(httpx.AsyncClient(**kwargs))
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._http = None

    async def _send(self, query: str, variables: dict) -> dict:
        """One HTTP round trip, classified into data or a typed error."""
        if self._http is None:
            raise RuntimeError("GitHubClient must be used as an async context manager")
        self.request_count += 1
        try:
            resp = await self._http.post(self.api_url, json={"query": query, "variables": variables})
        except httpx.TransportError as e:
            raise TransientError(f"Network error talking to GitHub: {e}") from e

        if resp.status_code in RETRYABLE_STATUS:
            raise TransientError(f"GitHub API error {resp.status_code}", status_code=resp.status_code)

        payload: dict = {}
        try:
            payload = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                raise GitHubApiError(f"GitHub API error {resp.status_code}: {resp.text[:200]}",
                                     status_code=resp.status_code)
            raise TransientError("GitHub returned a non-JSON body", status_code=resp.status_code)

        errors = payload.get("errors") or []
        remaining = resp.headers.get("x-ratelimit-remaining")
        if resp.status_code in RATE_LIMIT_STATUS and (
            remaining == "0" or "retry-after" in resp.headers
            or RATE_LIMIT_PATTERN.search(str(payload.get("message", "")))
            or any(_is_rate_limit_error(e) for e in errors)
        ):
            raise RateLimitError(
                f"GitHub rate limit hit ({resp.status_code})",
                retry_after=retry_hint_seconds(resp.headers, errors),
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            message = payload.get("message") or resp.text[:200]
            raise GitHubApiError(f"GitHub API error {resp.status_code}: {message}", status_code=resp.status_code)

        if errors:
            codes = [e.get("type") or (e.get("extensions") or {}).get("code") or "" for e in errors]
            messages = "; ".join(e.get("message", "Unknown error") for e in errors)
            if any(_is_rate_limit_error(e) for e in errors):
                raise RateLimitError(
                    f"GitHub GraphQL rate limit: {messages}",
                    retry_after=retry_hint_seconds(resp.headers, errors),
                    codes=codes,
                )
            if all(code == "NOT_FOUND" for code in codes):
                raise NotFoundError(messages, codes=codes)
            if payload.get("data") is None:
                raise GitHubApiError(f"GraphQL errors: {messages}", codes=codes)
            logger.warning(f"GraphQL returned partial data with errors: {messages}")

        data = payload.get("data") or {}
        rate_limit = data.get("rateLimit")
        if isinstance(rate_limit, dict):
            self.rate_limit_remaining = rate_limit.get("remaining", self.rate_limit_remaining)
            self.rate_limit_reset_at = rate_limit.get("resetAt", self.rate_limit_reset_at)
        return data

    async def _send_with_retries(self, query: str, variables: dict) -> dict:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=BASE_RETRY_DELAY_SECONDS, exp_base=BACKOFF_FACTOR),
            retry=retry_if_exception_type(TransientError),
            before_sleep=_log_retry("attempt", MAX_RETRY_ATTEMPTS),
            sleep=self.sleep,
            reraise=True,
        ):
            with attempt:
                data = await self._send(query, variables)
        return data

    async def request(self, query: str, variables: dict | None = None) -> dict:
        """Run a query, retrying transient and rate-limit failures with backoff."""
        variables = variables or {}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(MAX_RATE_LIMIT_RETRIES + 1),
            wait=_wait_for_rate_limit,
            retry=retry_if_exception_type(RateLimitError),
            before_sleep=_log_retry("rate-limit retry", MAX_RATE_LIMIT_RETRIES),
            sleep=self.sleep,
            reraise=True,
        ):
            with attempt:
                data = await self._send_with_retries(query, variables)
        return data

    async def fetch_page(
        self, query: str, variables: dict, path: tuple[str, ...], cursor: str | None = None,
    ) -> tuple[list[dict], str | None, bool]:
        """Fetch one connection page: ``(nodes, next_cursor, has_more)``.

        ``path`` locates the connection inside ``data``; a missing parent
        (e.g. a deleted repository) yields an empty final page.
        """
        data = await self.request(query, {**variables, "cursor": cursor})
        connection = _get_path(data, path)
        if not isinstance(connection, dict):
            return [], None, False
        nodes = [n for n in connection.get("nodes") or [] if n]
        page_info = connection.get("pageInfo") or {}
        has_more = bool(page_info.get("hasNextPage"))
        return nodes, page_info.get("endCursor") if has_more else None, has_more

    async def paginate(self, query: str, variables: dict, path: tuple[str, ...]):
        """Yield pages of nodes; the cursor only advances once the caller has consumed a page."""
        cursor = None
        while True:
            nodes, cursor, has_more = await self.fetch_page(query, variables, path, cursor)
            yield nodes
            if not has_more:
                return
