"""
GitHub REST API client for pr-bro.

Runs search queries and enriches each PR hit with:
- diff size (additions/deletions, optionally filtered by excluded file globs)
- approval count and whether the viewer has already reviewed it

Supports:
- Conditional requests through a pluggable response cache (ETag/Last-Modified)
- Typed failure classification (auth, rate limit, permission, not found, transient)
- Bounded concurrent enrichment with a rate-limit circuit breaker
"""

from __future__ import annotations

import asyncio
import fnmatch
import functools
import logging
import posixpath
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, TypeVar
from urllib.parse import urlparse

import requests
from requests.structures import CaseInsensitiveDict

from . import __version__
from .cache import CacheStorage, NullCache, Validator


logger = logging.getLogger(__name__)

T = TypeVar("T")

GITHUB_API_BASE = "https://api.github.com"
DEFAULT_PER_PAGE = 100
MAX_FILE_PAGES = 30
REQUEST_TIMEOUT = 30.0

SEARCH_MAX_ATTEMPTS = 3
SEARCH_RETRY_DELAY = 0.1  # doubles per attempt: 100ms, 200ms, 400ms

ENRICH_CONCURRENCY = 10

DECISIVE_REVIEW_STATES = {"APPROVED", "CHANGES_REQUESTED", "DISMISSED"}


@dataclass
class PullRequest:
    """A PR search hit, enriched in place with size and review data."""
    title: str
    number: int
    author: str
    repo: str  # "owner/repo"
    url: str  # html_url, unique key
    created_at: datetime
    updated_at: datetime
    additions: int = 0
    deletions: int = 0
    approvals: int = 0
    draft: bool = False
    labels: list[str] = field(default_factory=list)
    user_has_reviewed: bool = False
    filtered_size: int | None = None  # set only when exclude globs were applied

    def age(self, now: datetime | None = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return now - self.created_at

    def size(self) -> int:
        if self.filtered_size is not None:
            return self.filtered_size
        return self.additions + self.deletions

    def short_ref(self) -> str:
        return f"{self.repo}#{self.number}"


class ErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


class GitHubAPIError(Exception):
    """Error from GitHub API. Plain instances are transient (retryable)."""
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(GitHubAPIError):
    """Credentials rejected (401 / Bad credentials)."""
    kind = ErrorKind.AUTH


class RateLimitError(GitHubAPIError):
    """Rate limit exceeded."""
    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str = "GitHub API rate limit exceeded",
        status_code: int | None = 403,
        reset_time: int | None = None,
    ):
        super().__init__(message, status_code)
        self.reset_time = reset_time


class PermissionDeniedError(GitHubAPIError):
    kind = ErrorKind.PERMISSION


class NotFoundError(GitHubAPIError):
    kind = ErrorKind.NOT_FOUND


_ERROR_TYPES: dict[ErrorKind, type[GitHubAPIError]] = {
    ErrorKind.AUTH: AuthError,
    ErrorKind.PERMISSION: PermissionDeniedError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.TRANSIENT: GitHubAPIError,
}


def classify_failure(
    status_code: int | None,
    message: str = "",
    headers: Mapping[str, str] | None = None,
) -> ErrorKind:
    """
    Classify a failed response.

    Only TRANSIENT failures are worth retrying; everything else would fail
    the same way again.
    """
    headers = headers or {}
    text = message.lower()

    if status_code == 401 or "bad credentials" in text:
        return ErrorKind.AUTH
    if (
        status_code == 429
        or headers.get("X-RateLimit-Remaining") == "0"
        or "rate limit" in text
    ):
        return ErrorKind.RATE_LIMIT
    if status_code == 403:
        if headers.get("Retry-After"):
            return ErrorKind.RATE_LIMIT
        return ErrorKind.PERMISSION
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    return ErrorKind.TRANSIENT


def error_from_response(response: requests.Response) -> GitHubAPIError:
    """Build the typed error for a >= 400 response."""
    try:
        payload = response.json()
        message = payload.get("message", "") if isinstance(payload, dict) else ""
    except ValueError:
        message = ""
    message = message or (response.text or "")[:300]

    kind = classify_failure(response.status_code, message, response.headers)
    detail = f"GitHub API error: {response.status_code} - {message}"

    if kind is ErrorKind.RATE_LIMIT:
        reset = response.headers.get("X-RateLimit-Reset")
        return RateLimitError(
            detail,
            response.status_code,
            reset_time=int(reset) if reset and reset.isdigit() else None,
        )
    return _ERROR_TYPES[kind](detail, response.status_code)


def parse_timestamp(value: str | None) -> datetime:
    """Parse a GitHub ISO timestamp ("2024-01-01T00:00:00Z") into an aware datetime."""
    if not value:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def repo_from_url(html_url: str) -> str:
    """"https://github.com/owner/repo/pull/123" -> "owner/repo"."""
    parts = [p for p in urlparse(html_url).path.split("/") if p]
    if len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return "unknown/unknown"


class GitHubClient:
    """GitHub REST API client with conditional requests and typed errors."""

    def __init__(
        self,
        token: str | None = None,
        cache: CacheStorage | None = None,
        session: requests.Session | None = None,
        base_url: str = GITHUB_API_BASE,
    ):
        self.token = token
        self.cache: CacheStorage = cache if cache is not None else NullCache()
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

        if self.token:
            self.session.headers["Authorization"] = f"Bearer {self.token}"

        self.session.headers["Accept"] = "application/vnd.github+json"
        self.session.headers["X-GitHub-Api-Version"] = "2022-11-28"
        self.session.headers["User-Agent"] = f"pr-bro/{__version__}"

    def set_token(self, token: str) -> None:
        """Swap credentials (after a re-prompt)."""
        self.token = token
        self.session.headers["Authorization"] = f"Bearer {token}"

    def _full_url(self, endpoint: str, params: dict[str, Any] | None = None) -> str:
        request = requests.Request("GET", f"{self.base_url}{endpoint}", params=params)
        return request.prepare().url or f"{self.base_url}{endpoint}"

    def _send(self, url: str, headers: dict[str, str] | None = None) -> requests.Response:
        try:
            return self.session.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise GitHubAPIError(f"Request failed: {e}") from e

    def _get_json(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        use_cache: bool = True,
    ) -> tuple[Any, Mapping[str, str]]:
        """
        GET an endpoint and decode its JSON body.

        With a cached validator the request is conditional; a 304 replays the
        cached body. A fresh 200 carrying a validator is written to the cache.

        Returns:
            (decoded body, response headers)
        """
        url = self._full_url(endpoint, params)
        validator = self.cache.try_validator(url) if use_cache else None

        response = self._send(url, validator.request_headers() if validator else None)

        if response.status_code == 304 and validator is not None:
            cached = self.cache.load(url)
            if cached is not None:
                logger.debug("304 Not Modified, replaying cache: %s", url)
                return cached.json(), CaseInsensitiveDict(cached.headers)
            # Validator survived but the body did not; ask again unconditionally
            response = self._send(url)

        if response.status_code >= 400:
            raise error_from_response(response)

        try:
            data = response.json()
        except ValueError as e:
            raise GitHubAPIError(f"Invalid JSON from {url}: {e}", response.status_code) from e

        if use_cache:
            new_validator = Validator.from_response_headers(response.headers)
            if new_validator is not None:
                with self.cache.open_writer(url, new_validator, dict(response.headers)) as writer:
                    writer.write(response.content)

        return data, response.headers

    def _paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Iterate through paginated API results."""
        params = dict(params or {})
        params.setdefault("per_page", DEFAULT_PER_PAGE)
        page = 1

        while True:
            if max_pages and page > max_pages:
                break

            params["page"] = page
            items, _ = self._get_json(endpoint, params=params)

            if not items:
                break

            yield from items

            if len(items) < params["per_page"]:
                break

            page += 1

    def search_issues(self, query: str) -> list[dict[str, Any]]:
        """Run an issue/PR search. The query string is passed through verbatim."""
        data, _ = self._get_json(
            "/search/issues",
            params={"q": query, "per_page": DEFAULT_PER_PAGE},
        )
        return list(data.get("items", [])) if isinstance(data, dict) else []

    def get_pull(self, repo: str, number: int) -> dict[str, Any]:
        data, _ = self._get_json(f"/repos/{repo}/pulls/{number}")
        return data

    def list_reviews(self, repo: str, number: int) -> list[dict[str, Any]]:
        return list(self._paginate(f"/repos/{repo}/pulls/{number}/reviews"))

    def list_pull_files(self, repo: str, number: int) -> list[dict[str, Any]]:
        return list(
            self._paginate(f"/repos/{repo}/pulls/{number}/files", max_pages=MAX_FILE_PAGES)
        )

    def get_viewer_login(self) -> str:
        """Login of the authenticated user."""
        data, _ = self._get_json("/user")
        return str(data.get("login", ""))

    def get_rate_limit_remaining(self) -> int | None:
        """Remaining core quota. Never cached; None if the payload lacks it."""
        data, _ = self._get_json("/rate_limit", use_cache=False)
        try:
            return int(data["resources"]["core"]["remaining"])
        except (KeyError, TypeError, ValueError):
            return None


def pull_request_from_search_hit(hit: dict[str, Any]) -> PullRequest | None:
    """Build an unenriched PullRequest; None for hits that are plain issues."""
    if not hit.get("pull_request"):
        return None

    html_url = hit.get("html_url", "")
    user = hit.get("user") or {}
    labels = hit.get("labels") or []

    return PullRequest(
        title=hit.get("title", ""),
        number=int(hit.get("number", 0)),
        author=user.get("login", "") if isinstance(user, dict) else "",
        repo=repo_from_url(html_url),
        url=html_url,
        created_at=parse_timestamp(hit.get("created_at")),
        updated_at=parse_timestamp(hit.get("updated_at")),
        draft=bool(hit.get("draft", False)),
        labels=[
            label.get("name", "")
            for label in labels
            if isinstance(label, dict) and label.get("name")
        ],
    )


def search_prs(client: GitHubClient, query: str) -> list[PullRequest]:
    """
    Search GitHub for pull requests matching `query`.

    Transient failures are retried (3 attempts, exponential backoff from
    100ms). Auth, rate-limit, permission and not-found errors raise at once.
    """
    items: list[dict[str, Any]] = []
    for attempt in range(SEARCH_MAX_ATTEMPTS):
        try:
            items = client.search_issues(query)
            break
        except GitHubAPIError as e:
            if e.kind is not ErrorKind.TRANSIENT or attempt == SEARCH_MAX_ATTEMPTS - 1:
                raise
            delay = SEARCH_RETRY_DELAY * (2 ** attempt)
            logger.debug("Search %r failed (%s), retrying in %.1fs", query, e, delay)
            time.sleep(delay)

    prs = []
    for hit in items:
        try:
            pr = pull_request_from_search_hit(hit)
        except (TypeError, ValueError, AttributeError) as e:
            url = hit.get("html_url") if isinstance(hit, dict) else hit
            logger.warning("Skipping malformed search hit %r: %s", url, e)
            continue
        if pr is not None:
            prs.append(pr)
    return prs


def count_approvals(reviews: list[dict[str, Any]]) -> int:
    """Reviewers whose latest decisive review is an approval."""
    latest: dict[str, str] = {}
    for review in reviews:
        state = str(review.get("state") or "").upper()
        user = review.get("user") or {}
        login = user.get("login") if isinstance(user, dict) else None
        if not login or state not in DECISIVE_REVIEW_STATES:
            continue
        latest[login.casefold()] = state
    return sum(1 for state in latest.values() if state == "APPROVED")


def viewer_has_reviewed(reviews: list[dict[str, Any]], viewer_login: str | None) -> bool:
    if not viewer_login:
        return False
    viewer = viewer_login.casefold()
    for review in reviews:
        user = review.get("user") or {}
        if isinstance(user, dict) and str(user.get("login", "")).casefold() == viewer:
            return True
    return False


def is_excluded(path: str, exclude_globs: list[str]) -> bool:
    """Match the file's basename against each glob."""
    name = posixpath.basename(path)
    return any(fnmatch.fnmatch(name, pattern) for pattern in exclude_globs)


def filtered_size(files: list[dict[str, Any]], exclude_globs: list[str]) -> int:
    """Sum of additions+deletions over files not matching any exclude glob."""
    total = 0
    for f in files:
        if is_excluded(str(f.get("filename", "")), exclude_globs):
            continue
        total += int(f.get("additions") or 0) + int(f.get("deletions") or 0)
    return total


class EnrichmentController:
    """
    Bounded worker pool shared by one query's enrichment tasks.

    At most `max_concurrency` PRs are enriched at once; each runs its detail
    and review requests side by side, so the pool has two threads per slot.

    `rate_limited` is set by the first task that sees a rate limit; no new
    task is dispatched after that, tasks already running finish normally.
    """

    def __init__(self, max_concurrency: int = ENRICH_CONCURRENCY):
        slots = max(max_concurrency, 1)
        self.semaphore = asyncio.Semaphore(slots)
        self.executor = ThreadPoolExecutor(max_workers=2 * slots, thread_name_prefix="prbro-enrich")
        self.rate_limited = False

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking client call on this controller's threads."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args))

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)

    def trip(self) -> None:
        self.rate_limited = True


def _apply_detail(pr: PullRequest, detail: dict[str, Any]) -> None:
    pr.additions = int(detail.get("additions") or 0)
    pr.deletions = int(detail.get("deletions") or 0)
    pr.draft = bool(detail.get("draft", pr.draft))


async def enrich_pr(
    client: GitHubClient,
    pr: PullRequest,
    controller: EnrichmentController,
    viewer_login: str | None = None,
    exclude_globs: list[str] | None = None,
) -> None:
    """
    Fill in size, approvals and review state for one PR.

    Failures are logged and leave the fields at their defaults.
    """
    detail, reviews = await asyncio.gather(
        controller.call(client.get_pull, pr.repo, pr.number),
        controller.call(client.list_reviews, pr.repo, pr.number),
        return_exceptions=True,
    )

    if isinstance(detail, RateLimitError) or isinstance(reviews, RateLimitError):
        controller.trip()

    if isinstance(detail, BaseException) or isinstance(reviews, BaseException):
        failure = detail if isinstance(detail, BaseException) else reviews
        logger.warning("Failed to enrich %s: %s", pr.short_ref(), failure)
    elif not isinstance(detail, dict):
        logger.warning("Failed to enrich %s: unexpected PR payload", pr.short_ref())
    else:
        _apply_detail(pr, detail)
        pr.approvals = count_approvals(reviews)
        pr.user_has_reviewed = viewer_has_reviewed(reviews, viewer_login)

    if not exclude_globs:
        return

    try:
        files = await controller.call(client.list_pull_files, pr.repo, pr.number)
        pr.filtered_size = filtered_size(files, exclude_globs)
    except RateLimitError as e:
        controller.trip()
        logger.warning("Failed to list files for %s: %s", pr.short_ref(), e)
    except (GitHubAPIError, TypeError, ValueError) as e:
        logger.warning("Failed to list files for %s: %s", pr.short_ref(), e)


async def search_and_enrich_prs(
    client: GitHubClient,
    query: str,
    viewer_login: str | None = None,
    exclude_globs: list[str] | None = None,
    max_concurrency: int = ENRICH_CONCURRENCY,
) -> list[PullRequest]:
    """
    Search, then enrich every hit concurrently (at most `max_concurrency` at once).

    Once a rate limit is observed the remaining hits are returned unenriched
    rather than dropped.
    """
    prs = await asyncio.to_thread(search_prs, client, query)
    controller = EnrichmentController(max_concurrency)

    async def run(pr: PullRequest) -> None:
        try:
            await enrich_pr(client, pr, controller, viewer_login, exclude_globs)
        finally:
            controller.semaphore.release()

    tasks: list[asyncio.Task[None]] = []
    try:
        for pr in prs:
            await controller.semaphore.acquire()
            if controller.rate_limited:
                controller.semaphore.release()
                break
            tasks.append(asyncio.create_task(run(pr)))
        if tasks:
            await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    finally:
        controller.shutdown()

    skipped = len(prs) - len(tasks)
    if skipped:
        logger.warning(
            "Rate limit reached: %d of %d PRs for %r left unenriched",
            skipped,
            len(prs),
            query,
        )
    return prs


def create_client(token: str, cache: CacheStorage | None = None) -> GitHubClient:
    """Create an authenticated client, optionally backed by a response cache."""
    return GitHubClient(token=token, cache=cache)
