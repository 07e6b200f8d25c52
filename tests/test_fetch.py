from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from prbro.config import PrbroConfig, QueryConfig, ScoringConfig, SizeConfig
from prbro.fetch import fetch_and_score_prs, fetch_with_timeout
from prbro.github import AuthError, GitHubAPIError, PullRequest


NOW = datetime.now(timezone.utc)


def make_pr(number, created_hours_ago=1, repo="acme/widgets", **overrides):
    created = NOW - timedelta(hours=created_hours_ago)
    return PullRequest(
        title=f"PR {number}",
        number=number,
        author="alice",
        repo=repo,
        url=f"https://github.com/{repo}/pull/{number}",
        created_at=created,
        updated_at=created,
        **overrides,
    )


def make_config(*queries: QueryConfig, scoring: ScoringConfig | None = None) -> PrbroConfig:
    return PrbroConfig(
        queries=list(queries),
        scoring=scoring if scoring is not None else ScoringConfig(base_score=100),
    )


def make_client():
    client = Mock()
    client.get_viewer_login.return_value = "me"
    client.get_rate_limit_remaining.return_value = 4999
    return client


def fake_search(results):
    """Stand-in for search_and_enrich_prs keyed by query string."""
    calls = []

    async def search(client, query, viewer_login=None, exclude_globs=None):
        calls.append((query, viewer_login, exclude_globs))
        outcome = results[query]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    search.calls = calls
    return search


def never_snoozed(url):
    return False


def test_fetch_ranks_by_score_then_age():
    config = make_config(
        QueryConfig(query="q1"),
        scoring=ScoringConfig(base_score=100, age="+1 per 1h"),
    )
    prs = [make_pr(1, created_hours_ago=2), make_pr(2, created_hours_ago=10), make_pr(3, created_hours_ago=5)]
    search = fake_search({"q1": prs})

    with patch("prbro.fetch.search_and_enrich_prs", search):
        result = asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))

    assert [pr.number for pr, _ in result.active] == [2, 3, 1]
    assert result.snoozed == []
    assert result.rate_limit_remaining == 4999


def test_ties_break_on_creation_time():
    config = make_config(QueryConfig(query="q1"))
    prs = [make_pr(1, created_hours_ago=1), make_pr(2, created_hours_ago=48)]

    with patch("prbro.fetch.search_and_enrich_prs", fake_search({"q1": prs})):
        active, snoozed, remaining = asyncio.run(
            fetch_and_score_prs(make_client(), config, never_snoozed)
        )

    assert [pr.number for pr, _ in active] == [2, 1]
    assert active[0][1].score == active[1][1].score


def test_dedup_attributes_pr_to_first_query():
    config = make_config(
        QueryConfig(query="q1", scoring=ScoringConfig(base_score=10)),
        QueryConfig(query="q2", scoring=ScoringConfig(base_score=500)),
    )
    shared = make_pr(1)
    search = fake_search({
        "q1": [shared, make_pr(2)],
        "q2": [make_pr(1), make_pr(3)],
    })

    with patch("prbro.fetch.search_and_enrich_prs", search):
        result = asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))

    by_number = {pr.number: score.score for pr, score in result.active}
    assert sorted(by_number) == [1, 2, 3]
    assert by_number[1] == 10
    assert by_number[3] == 500


def test_exclude_globs_resolved_per_query():
    config = make_config(
        QueryConfig(query="q1"),
        QueryConfig(query="q2", scoring=ScoringConfig(size=SizeConfig(exclude=["*.lock"]))),
    )
    search = fake_search({"q1": [], "q2": []})

    with patch("prbro.fetch.search_and_enrich_prs", search):
        asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))

    assert sorted(search.calls) == [("q1", "me", []), ("q2", "me", ["*.lock"])]


def test_snoozed_prs_are_partitioned():
    config = make_config(QueryConfig(query="q1"))
    prs = [make_pr(1), make_pr(2)]
    snoozed_url = prs[1].url

    with patch("prbro.fetch.search_and_enrich_prs", fake_search({"q1": prs})):
        result = asyncio.run(
            fetch_and_score_prs(make_client(), config, lambda url: url == snoozed_url)
        )

    assert [pr.number for pr, _ in result.active] == [1]
    assert [pr.number for pr, _ in result.snoozed] == [2]


def test_failed_query_is_skipped():
    config = make_config(QueryConfig(query="good"), QueryConfig(query="bad"))
    search = fake_search({"good": [make_pr(1)], "bad": GitHubAPIError("502")})

    with patch("prbro.fetch.search_and_enrich_prs", search):
        result = asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))

    assert [pr.number for pr, _ in result.active] == [1]


def test_unexpected_query_error_is_skipped():
    config = make_config(QueryConfig(query="good"), QueryConfig(query="bad"))
    search = fake_search({"good": [make_pr(1)], "bad": ValueError("Invalid isoformat string: 'garbage'")})

    with patch("prbro.fetch.search_and_enrich_prs", search):
        result = asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))

    assert [pr.number for pr, _ in result.active] == [1]


def test_all_queries_failing_raises():
    config = make_config(QueryConfig(query="a"), QueryConfig(query="b"))
    search = fake_search({"a": GitHubAPIError("502"), "b": GitHubAPIError("503")})

    with patch("prbro.fetch.search_and_enrich_prs", search):
        with pytest.raises(GitHubAPIError, match="All queries failed"):
            asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))


def test_no_queries_is_empty_result():
    with patch("prbro.fetch.search_and_enrich_prs", fake_search({})):
        result = asyncio.run(fetch_and_score_prs(make_client(), make_config(), never_snoozed))
    assert result.active == [] and result.snoozed == []


def test_auth_error_from_any_query_aborts():
    config = make_config(QueryConfig(query="a"), QueryConfig(query="b"), QueryConfig(query="c"))
    search = fake_search({
        "a": [make_pr(1)],
        "b": AuthError("Bad credentials", 401),
        "c": [make_pr(2)],
    })

    with patch("prbro.fetch.search_and_enrich_prs", search):
        with pytest.raises(AuthError):
            asyncio.run(fetch_and_score_prs(make_client(), config, never_snoozed))


def test_auth_error_cancels_and_awaits_other_queries():
    config = make_config(QueryConfig(query="slow"), QueryConfig(query="bad"))
    cancelled = []

    async def search(client, query, viewer_login=None, exclude_globs=None):
        if query == "bad":
            raise AuthError("Bad credentials", 401)
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(query)
            raise
        return []

    async def run():
        with pytest.raises(AuthError):
            await fetch_and_score_prs(make_client(), config, never_snoozed)
        # Already cleaned up by the time the error reaches the caller
        assert cancelled == ["slow"]

    with patch("prbro.fetch.search_and_enrich_prs", search):
        asyncio.run(run())


def test_auth_error_on_viewer_lookup_propagates():
    client = make_client()
    client.get_viewer_login.side_effect = AuthError("Bad credentials", 401)

    with patch("prbro.fetch.search_and_enrich_prs", fake_search({"q1": []})):
        with pytest.raises(AuthError):
            asyncio.run(fetch_and_score_prs(client, make_config(QueryConfig(query="q1")), never_snoozed))


def test_viewer_and_quota_failures_are_not_fatal():
    client = make_client()
    client.get_viewer_login.side_effect = GitHubAPIError("502")
    client.get_rate_limit_remaining.side_effect = GitHubAPIError("502")
    search = fake_search({"q1": [make_pr(1)]})

    with patch("prbro.fetch.search_and_enrich_prs", search):
        result = asyncio.run(fetch_and_score_prs(client, make_config(QueryConfig(query="q1")), never_snoozed))

    assert len(result.active) == 1
    assert result.rate_limit_remaining is None
    assert search.calls[0][1] is None


def test_fetch_with_timeout_returns_none():
    async def slow_search(client, query, viewer_login=None, exclude_globs=None):
        await asyncio.sleep(5)
        return []

    config = make_config(QueryConfig(query="q1"))
    with patch("prbro.fetch.search_and_enrich_prs", slow_search):
        result = asyncio.run(fetch_with_timeout(make_client(), config, never_snoozed, timeout=0.05))

    assert result is None


def test_fetch_with_timeout_passes_result_through():
    config = make_config(QueryConfig(query="q1"))
    with patch("prbro.fetch.search_and_enrich_prs", fake_search({"q1": [make_pr(1)]})):
        result = asyncio.run(fetch_with_timeout(make_client(), config, never_snoozed))

    assert len(result.active) == 1
