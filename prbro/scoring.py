"""
PR priority scoring for pr-bro.

Factors compose left to right onto a running score:
1. Base score (default 100)
2. Age (elapsed time since creation, per duration unit)
3. Approvals (per approval count)
4. Size (first matching bucket wins)
5. Labels (every matching rule, in configured order)
6. Previously reviewed by the viewer
7. Floor at zero

Every factor that changes the score is recorded in the breakdown so the
final number can be explained.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from .config import DEFAULT_BASE_SCORE, ScoringConfig
from .factors import Effect, ParseError, RangeOp, UnitKind

if TYPE_CHECKING:
    from .github import PullRequest

logger = logging.getLogger(__name__)


@dataclass
class FactorContribution:
    """One factor's effect on the running score."""
    label: str
    description: str
    score_before: float
    score_after: float

    @property
    def delta(self) -> float:
        return self.score_after - self.score_before


@dataclass
class ScoreBreakdown:
    base_score: float
    factors: list[FactorContribution] = field(default_factory=list)


@dataclass
class ScoreResult:
    """Final score for a PR plus the audit trail that produced it."""
    score: float
    incomplete: bool = False
    breakdown: ScoreBreakdown = field(default_factory=lambda: ScoreBreakdown(DEFAULT_BASE_SCORE))


def format_duration(delta: timedelta) -> str:
    """Compact age: "3w", "2d", "5h", "12m" or "now"."""
    seconds = max(int(delta.total_seconds()), 0)
    weeks = seconds // 604800
    days = seconds // 86400
    hours = seconds // 3600
    minutes = seconds // 60
    if weeks:
        return f"{weeks}w"
    if days:
        return f"{days}d"
    if hours:
        return f"{hours}h"
    if minutes:
        return f"{minutes}m"
    return "now"


def _parse_effect(text: str, field_name: str, unit_kind: UnitKind = UnitKind.DURATION) -> Effect | None:
    try:
        return Effect.parse(text, unit_kind)
    except ParseError as e:
        logger.debug("Skipping %s effect %r: %s", field_name, text, e)
        return None


class _Accumulator:
    """Running score that records each applied factor."""

    def __init__(self, base: float):
        self.score = base
        self.breakdown = ScoreBreakdown(base_score=base)

    def apply(self, label: str, description: str, effect: Effect, units: float = 1) -> None:
        before = self.score
        self.score = effect.apply(self.score, units)
        if self.score == before:
            return
        self.breakdown.factors.append(
            FactorContribution(
                label=label,
                description=description,
                score_before=before,
                score_after=self.score,
            )
        )


def _apply_age(acc: _Accumulator, pr: PullRequest, effect_str: str, now: datetime) -> None:
    effect = _parse_effect(effect_str, "age")
    if effect is None:
        return
    elapsed = max(now - pr.created_at, timedelta(0))
    units = effect.units_for_elapsed(elapsed)
    acc.apply("age", f"{format_duration(elapsed)} old -> {effect}", effect, units)


def _apply_approvals(acc: _Accumulator, pr: PullRequest, effect_str: str) -> None:
    effect = _parse_effect(effect_str, "approvals", UnitKind.COUNT)
    if effect is None:
        return
    units = effect.units_for_count(pr.approvals)
    noun = "approval" if pr.approvals == 1 else "approvals"
    acc.apply("approvals", f"{pr.approvals} {noun} -> {effect}", effect, units)


def _apply_size(acc: _Accumulator, pr: PullRequest, config: ScoringConfig) -> None:
    if not config.size or not config.size.buckets:
        return
    size = pr.size()
    for bucket in config.size.buckets:
        try:
            range_op = RangeOp.parse(bucket.range)
        except ParseError as e:
            logger.debug("Skipping size bucket %r: %s", bucket.range, e)
            continue
        if not range_op.matches(size):
            continue
        effect = _parse_effect(bucket.effect, "size")
        if effect is None:
            continue
        suffix = " (filtered)" if pr.filtered_size is not None else ""
        acc.apply(
            "size",
            f"{size} lines{suffix}, matched '{range_op}' -> {effect}",
            effect,
        )
        return


def _apply_labels(acc: _Accumulator, pr: PullRequest, config: ScoringConfig) -> None:
    if not config.labels or not pr.labels:
        return
    pr_labels = {label.casefold() for label in pr.labels}
    for rule in config.labels:
        if rule.name.casefold() not in pr_labels:
            continue
        effect = _parse_effect(rule.effect, f"label {rule.name}")
        if effect is None:
            continue
        acc.apply(f"label:{rule.name}", f"label '{rule.name}' -> {effect}", effect)


def calculate_score(
    pr: PullRequest,
    config: ScoringConfig,
    now: datetime | None = None,
) -> ScoreResult:
    """
    Score a PR with a resolved scoring config.

    Args:
        pr: Enriched pull request
        config: Effective config (global already merged with any query override)
        now: Reference time for the age factor (defaults to current UTC time)

    Returns:
        ScoreResult with the floored score and its breakdown
    """
    now = now or datetime.now(timezone.utc)
    base = config.base_score if config.base_score is not None else DEFAULT_BASE_SCORE
    acc = _Accumulator(base)

    if config.age:
        _apply_age(acc, pr, config.age, now)

    if config.approvals:
        _apply_approvals(acc, pr, config.approvals)

    _apply_size(acc, pr, config)
    _apply_labels(acc, pr, config)

    if config.previously_reviewed and pr.user_has_reviewed:
        effect = _parse_effect(config.previously_reviewed, "previously_reviewed")
        if effect is not None:
            acc.apply("previously_reviewed", f"previously reviewed -> {effect}", effect)

    # NaN (inf * 0) also floors to zero
    score = acc.score if acc.score > 0 else 0.0
    return ScoreResult(
        score=score,
        incomplete=False,
        breakdown=acc.breakdown,
    )
