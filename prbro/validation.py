"""
Startup validation for scoring configuration.

Every problem is collected and returned; nothing stops at the first error.
An empty list means the config is valid.
"""

from __future__ import annotations

from .config import PrbroConfig, ScoringConfig
from .factors import Effect, ParseError, RangeOp, UnitKind


def _check_effect(
    errors: list[str],
    where: str,
    value: str,
    unit_kind: UnitKind = UnitKind.DURATION,
) -> None:
    try:
        Effect.parse(value, unit_kind)
    except ParseError as e:
        errors.append(f"{where}: invalid '{value}' - {e}")


def _check_glob(errors: list[str], where: str, pattern: str) -> None:
    if not pattern.strip():
        errors.append(f"{where}: glob pattern must not be empty")
        return
    # fnmatch treats an unclosed "[" as a literal, which silently never matches
    last_open = pattern.rfind("[")
    if last_open != -1 and "]" not in pattern[last_open + 1:]:
        errors.append(f"{where}: invalid glob '{pattern}' - unclosed character class")


def _check_bucket_overlaps(
    errors: list[str],
    where: str,
    parsed: list[tuple[int, RangeOp]],
) -> None:
    for pos, (i, first) in enumerate(parsed):
        first_bounds = first.bounds()
        if first_bounds is None:
            continue
        for j, second in parsed[pos + 1:]:
            second_bounds = second.bounds()
            if second_bounds is None:
                continue
            if first_bounds[0] <= second_bounds[1] and second_bounds[0] <= first_bounds[1]:
                errors.append(
                    f"{where}: ranges '{first}' (bucket {i}) and "
                    f"'{second}' (bucket {j}) overlap"
                )


def validate_scoring(config: ScoringConfig, prefix: str = "scoring") -> list[str]:
    """
    Validate one scoring config.

    Args:
        config: Raw (unmerged) scoring config
        prefix: Field path used in messages, e.g. "queries[1].scoring"

    Returns:
        Human-readable error messages; empty when valid
    """
    errors: list[str] = []

    if config.base_score is not None and config.base_score < 0:
        errors.append(f"{prefix}.base_score: must be non-negative, got {config.base_score:g}")

    if config.age is not None:
        _check_effect(errors, f"{prefix}.age", config.age)

    if config.approvals is not None:
        _check_effect(errors, f"{prefix}.approvals", config.approvals, UnitKind.COUNT)

    if config.size is not None:
        for i, pattern in enumerate(config.size.exclude or []):
            _check_glob(errors, f"{prefix}.size.exclude[{i}]", pattern)

        parsed: list[tuple[int, RangeOp]] = []
        for i, bucket in enumerate(config.size.buckets or []):
            try:
                range_op = RangeOp.parse(bucket.range)
            except ParseError as e:
                errors.append(f"{prefix}.size.buckets[{i}].range: invalid '{bucket.range}' - {e}")
            else:
                if range_op.bounds() is None and range_op.high is not None:
                    errors.append(
                        f"{prefix}.size.buckets[{i}].range: lower bound exceeds upper bound "
                        f"in '{bucket.range}'"
                    )
                else:
                    parsed.append((i, range_op))
            _check_effect(errors, f"{prefix}.size.buckets[{i}].effect", bucket.effect)

        _check_bucket_overlaps(errors, f"{prefix}.size.buckets", parsed)

    for i, rule in enumerate(config.labels or []):
        if not rule.name.strip():
            errors.append(f"{prefix}.labels[{i}].name: must not be empty")
        _check_effect(errors, f"{prefix}.labels[{i}].effect", rule.effect)

    if config.previously_reviewed is not None:
        _check_effect(errors, f"{prefix}.previously_reviewed", config.previously_reviewed)

    return errors


def validate_config(config: PrbroConfig) -> list[str]:
    """Validate the global scoring section and every query (no network access)."""
    errors: list[str] = []

    if config.scoring is not None:
        errors.extend(validate_scoring(config.scoring, "scoring"))

    for i, query in enumerate(config.queries):
        if not query.query.strip():
            errors.append(f"queries[{i}].query: must not be empty")
        if query.scoring is not None:
            errors.extend(validate_scoring(query.scoring, f"queries[{i}].scoring"))

    return errors
