"""Plain-text and JSON rendering of ranked PRs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

import click

from .github import PullRequest
from .scoring import ScoreResult, format_duration
from .snooze import SnoozeState


def format_score(score: float) -> str:
    if score >= 1e9:
        return f"{score:.3g}"
    return f"{score:.1f}"


def format_pr_line(
    rank: int,
    pr: PullRequest,
    result: ScoreResult,
    color: bool = True,
    now: datetime | None = None,
) -> str:
    """`  1.  124.0  title | repo | author | url  (age, +adds/-dels, approvals)`."""
    title = pr.title + (" [draft]" if pr.draft else "")
    meta = (
        f"({format_duration(pr.age(now))}, +{pr.additions}/-{pr.deletions}, "
        f"{pr.approvals} approved)"
    )
    score = format_score(result.score)
    if result.incomplete:
        score += "*"

    if color:
        return (
            f"{rank:>3}. {click.style(score.rjust(8), fg='green', bold=True)}  "
            f"{click.style(title, bold=True)} | {click.style(pr.repo, fg='cyan')} | "
            f"{click.style(pr.author, fg='yellow')} | {click.style(pr.url, underline=True)}  "
            f"{click.style(meta, dim=True)}"
        )
    return f"{rank:>3}. {score.rjust(8)}  {title} | {pr.repo} | {pr.author} | {pr.url}  {meta}"


def format_pr_list(
    items: Sequence[tuple[PullRequest, ScoreResult]],
    color: bool = True,
    now: datetime | None = None,
) -> str:
    if not items:
        return "No pull requests found."
    return "\n".join(
        format_pr_line(i, pr, result, color=color, now=now)
        for i, (pr, result) in enumerate(items, 1)
    )


def format_breakdown(result: ScoreResult) -> str:
    """Indented audit trail, one line per factor that fired."""
    lines = [f"       base {format_score(result.breakdown.base_score)}"]
    for factor in result.breakdown.factors:
        sign = "+" if factor.delta >= 0 else ""
        lines.append(
            f"       {factor.label}: {factor.description}  "
            f"{format_score(factor.score_before)} -> {format_score(factor.score_after)} "
            f"({sign}{format_score(factor.delta)})"
        )
    return "\n".join(lines)


def format_snoozed_list(
    items: Sequence[tuple[PullRequest, ScoreResult]],
    state: SnoozeState,
    color: bool = True,
) -> str:
    if not items:
        return "No snoozed pull requests."
    lines = []
    for pr, result in items:
        entry = state.snoozed.get(pr.url)
        remaining = entry.format_remaining() if entry else "indefinite"
        line = f"  {format_score(result.score).rjust(8)}  {pr.title} | {pr.url}  ({remaining})"
        lines.append(click.style(line, dim=True) if color else line)
    return "\n".join(lines)


def pr_to_dict(pr: PullRequest, result: ScoreResult) -> dict[str, Any]:
    return {
        "title": pr.title,
        "number": pr.number,
        "repo": pr.repo,
        "author": pr.author,
        "url": pr.url,
        "created_at": pr.created_at.isoformat(),
        "updated_at": pr.updated_at.isoformat(),
        "additions": pr.additions,
        "deletions": pr.deletions,
        "size": pr.size(),
        "approvals": pr.approvals,
        "draft": pr.draft,
        "labels": pr.labels,
        "user_has_reviewed": pr.user_has_reviewed,
        "score": result.score,
        "incomplete": result.incomplete,
        "breakdown": {
            "base_score": result.breakdown.base_score,
            "factors": [
                {
                    "label": f.label,
                    "description": f.description,
                    "score_before": f.score_before,
                    "score_after": f.score_after,
                }
                for f in result.breakdown.factors
            ],
        },
    }
