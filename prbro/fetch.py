"""
Fetch orchestration: run every configured query, dedupe, score, rank.

Queries run concurrently. An auth failure from any of them aborts the whole
fetch (every other query would fail the same way) and the remaining queries
are cancelled. Any other failure is logged and that query skipped, as long as
at least one query succeeds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, NamedTuple

from .cache import CacheConfig
from .config import PrbroConfig
from .github import (
    AuthError,
    GitHubAPIError,
    GitHubClient,
    PullRequest,
    search_and_enrich_prs,
)
from .scoring import ScoreResult, calculate_score


logger = logging.getLogger(__name__)

DASHBOARD_FETCH_TIMEOUT = 20.0

ScoredPR = tuple[PullRequest, ScoreResult]


class FetchResult(NamedTuple):
    active: list[ScoredPR]
    snoozed: list[ScoredPR]
    rate_limit_remaining: int | None


def _sort_key(item: ScoredPR) -> tuple[float, datetime]:
    pr, result = item
    return (-result.score, pr.created_at)


async def _get_viewer_login(client: GitHubClient) -> str | None:
    try:
        return await asyncio.to_thread(client.get_viewer_login) or None
    except AuthError:
        raise
    except GitHubAPIError as e:
        logger.warning("Could not determine viewer login: %s", e)
        return None


async def _get_rate_limit_remaining(client: GitHubClient) -> int | None:
    try:
        return await asyncio.to_thread(client.get_rate_limit_remaining)
    except GitHubAPIError as e:
        logger.debug("Rate limit lookup failed: %s", e)
        return None


async def fetch_and_score_prs(
    client: GitHubClient,
    config: PrbroConfig,
    is_snoozed: Callable[[str], bool],
    cache_config: CacheConfig | None = None,
) -> FetchResult:
    """
    Fetch, score and rank PRs for every configured query.

    Args:
        client: GitHub client (shared by every query)
        config: Loaded configuration
        is_snoozed: Predicate on PR url deciding which partition a PR lands in
        cache_config: Cache settings, reported in the debug log

    Returns:
        FetchResult(active, snoozed, rate_limit_remaining); both lists sorted
        by score descending, older PRs first on ties

    Raises:
        AuthError: If any query's credentials were rejected
        GitHubAPIError: If every query failed
    """
    if cache_config is not None:
        logger.debug("Cache: %s", "enabled" if cache_config.enabled else "disabled (--no-cache)")

    viewer_login = await _get_viewer_login(client)

    async def run_query(index: int) -> tuple[int, list[PullRequest]]:
        query = config.queries[index]
        scoring = config.scoring_for_query(index)
        prs = await search_and_enrich_prs(
            client,
            query.query,
            viewer_login=viewer_login,
            exclude_globs=scoring.exclude_globs,
        )
        return index, prs

    tasks = [asyncio.create_task(run_query(i)) for i in range(len(config.queries))]
    task_index = {task: i for i, task in enumerate(tasks)}

    results: list[tuple[int, list[PullRequest]]] = []
    pending = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                query = config.queries[task_index[task]]
                try:
                    index, prs = task.result()
                except AuthError:
                    raise
                except GitHubAPIError as e:
                    logger.warning("Query failed: %s - %s", query.display_name, e)
                    continue
                except Exception as e:
                    logger.warning("Query failed: %s - %r", query.display_name, e, exc_info=True)
                    continue
                logger.info("Found %d PRs for %s", len(prs), query.display_name)
                results.append((index, prs))
    finally:
        for task in pending:
            task.cancel()
        # Reap cancelled and unread tasks so none outlives the fetch
        await asyncio.gather(*tasks, return_exceptions=True)

    if config.queries and not results:
        raise GitHubAPIError(
            "All queries failed. Check your network connection and GitHub token."
        )

    # Completion order is arbitrary; first occurrence is by query order
    results.sort(key=lambda item: item[0])
    seen: dict[str, int] = {}
    unique: list[PullRequest] = []
    for index, prs in results:
        for pr in prs:
            if pr.url in seen:
                continue
            seen[pr.url] = index
            unique.append(pr)

    logger.debug("After deduplication: %d unique PRs", len(unique))

    now = datetime.now(timezone.utc)
    active: list[ScoredPR] = []
    snoozed: list[ScoredPR] = []
    for pr in unique:
        result = calculate_score(pr, config.scoring_for_query(seen[pr.url]), now=now)
        if is_snoozed(pr.url):
            snoozed.append((pr, result))
        else:
            active.append((pr, result))

    active.sort(key=_sort_key)
    snoozed.sort(key=_sort_key)
    logger.debug("After filter: %d active, %d snoozed", len(active), len(snoozed))

    remaining = await _get_rate_limit_remaining(client)
    return FetchResult(active, snoozed, remaining)


async def fetch_with_timeout(
    client: GitHubClient,
    config: PrbroConfig,
    is_snoozed: Callable[[str], bool],
    cache_config: CacheConfig | None = None,
    timeout: float = DASHBOARD_FETCH_TIMEOUT,
) -> FetchResult | None:
    """fetch_and_score_prs bounded by `timeout`; None when it runs out."""
    try:
        return await asyncio.wait_for(
            fetch_and_score_prs(client, config, is_snoozed, cache_config),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Fetch timed out after %.0fs; will retry on next refresh", timeout)
        return None
