from __future__ import annotations

from prbro.config import (
    LabelEffect,
    PrbroConfig,
    QueryConfig,
    ScoringConfig,
    SizeBucket,
    SizeConfig,
)
from prbro.validation import validate_config, validate_scoring


def test_default_scoring_is_valid():
    assert validate_scoring(ScoringConfig.default()) == []


def test_invalid_effects_are_all_reported():
    config = ScoringConfig(
        age="+1 per 1y",
        approvals="+10 per 1h",
        previously_reviewed="half",
    )

    errors = validate_scoring(config)

    assert len(errors) == 3
    assert errors[0].startswith("scoring.age: invalid '+1 per 1y'")
    assert errors[1].startswith("scoring.approvals: invalid '+10 per 1h'")
    assert errors[2].startswith("scoring.previously_reviewed: invalid 'half'")


def test_negative_base_score():
    errors = validate_scoring(ScoringConfig(base_score=-1))
    assert errors == ["scoring.base_score: must be non-negative, got -1"]


def test_bucket_range_errors():
    config = ScoringConfig(size=SizeConfig(buckets=[
        SizeBucket(range="big", effect="x1"),
        SizeBucket(range="500-100", effect="x1"),
        SizeBucket(range="<10", effect="times two"),
    ]))

    errors = validate_scoring(config)

    assert errors[0].startswith("scoring.size.buckets[0].range: invalid 'big'")
    assert "scoring.size.buckets[1].range: lower bound exceeds upper bound" in errors[1]
    assert errors[2].startswith("scoring.size.buckets[2].effect: invalid 'times two'")
    assert len(errors) == 3


def test_overlapping_buckets_cite_both_ranges():
    config = ScoringConfig(size=SizeConfig(buckets=[
        SizeBucket(range="<=100", effect="x2"),
        SizeBucket(range=">=100", effect="x1"),
    ]))

    errors = validate_scoring(config)

    assert errors == [
        "scoring.size.buckets: ranges '<=100' (bucket 0) and '>=100' (bucket 1) overlap"
    ]


def test_adjacent_buckets_do_not_overlap():
    config = ScoringConfig(size=SizeConfig(buckets=[
        SizeBucket(range="<100", effect="x2"),
        SizeBucket(range="100-500", effect="x1"),
        SizeBucket(range=">500", effect="x0.5"),
    ]))
    assert validate_scoring(config) == []


def test_bad_globs_and_label_names():
    config = ScoringConfig(
        size=SizeConfig(exclude=["*.lock", "", "src/[abc"]),
        labels=[LabelEffect(name=" ", effect="+1")],
    )

    errors = validate_scoring(config)

    assert errors == [
        "scoring.size.exclude[1]: glob pattern must not be empty",
        "scoring.size.exclude[2]: invalid glob 'src/[abc' - unclosed character class",
        "scoring.labels[0].name: must not be empty",
    ]


def test_validate_config_checks_queries():
    config = PrbroConfig(
        queries=[
            QueryConfig(query="is:pr"),
            QueryConfig(query="  "),
            QueryConfig(query="is:pr", scoring=ScoringConfig(age="later")),
        ],
        scoring=ScoringConfig(base_score=-5),
    )

    errors = validate_config(config)

    assert errors[0].startswith("scoring.base_score")
    assert errors[1] == "queries[1].query: must not be empty"
    assert errors[2].startswith("queries[2].scoring.age: invalid 'later'")
    assert len(errors) == 3
