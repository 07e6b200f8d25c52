"""
Configuration management for pr-bro.

Loads ~/.config/pr-bro/config.yaml:
- queries: GitHub search queries, each with optional per-query scoring
- scoring: global scoring formula (per-query scoring inherits from it)

Example:

    queries:
      - name: Needs my review
        query: "is:pr is:open review-requested:@me"
      - name: Team
        query: "is:pr is:open team-review-requested:acme/core"
        scoring:
          age: "+5 per 1h"
    scoring:
      base_score: 100
      age: "+1 per 1h"
      approvals: "+10 per 1"
      size:
        exclude: ["*.lock"]
        buckets:
          - { range: "<100", effect: "x5" }
          - { range: ">=500", effect: "x0.5" }
      labels:
        - { name: urgent, effect: "+20" }
      previously_reviewed: "x0.5"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


DEFAULT_BASE_SCORE = 100.0
CONFIG_FILENAME = "config.yaml"


@dataclass
class LabelEffect:
    """Score effect applied when a PR carries the named label (case-insensitive)."""

    name: str
    effect: str


@dataclass
class SizeBucket:
    """Maps a line-count range ("<100", "100-500", ">=500") to an effect."""

    range: str
    effect: str


@dataclass
class SizeConfig:
    """Size factor: file exclusions and ordered buckets. None means inherit."""

    exclude: list[str] | None = None
    buckets: list[SizeBucket] | None = None


@dataclass
class ScoringConfig:
    """
    Scoring formula. Every field is optional; None means "inherit from the
    broader scope" (query -> global -> built-in default for base_score).
    """

    base_score: float | None = None
    age: str | None = None
    approvals: str | None = None
    size: SizeConfig | None = None
    labels: list[LabelEffect] | None = None
    previously_reviewed: str | None = None

    @classmethod
    def default(cls) -> ScoringConfig:
        """Built-in global formula used when the config file has no scoring section."""
        return cls(
            base_score=DEFAULT_BASE_SCORE,
            age="+1 per 1h",
            approvals="+10 per 1",
            size=SizeConfig(
                buckets=[
                    SizeBucket(range="<100", effect="x5"),
                    SizeBucket(range="100-500", effect="x1"),
                    SizeBucket(range=">500", effect="x0.5"),
                ],
            ),
        )

    @property
    def exclude_globs(self) -> list[str]:
        if self.size and self.size.exclude:
            return list(self.size.exclude)
        return []


@dataclass
class QueryConfig:
    """A saved search. The query string is passed to GitHub verbatim."""

    query: str
    name: str | None = None
    scoring: ScoringConfig | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.query


@dataclass
class PrbroConfig:
    """Complete pr-bro configuration."""

    queries: list[QueryConfig] = field(default_factory=list)
    scoring: ScoringConfig | None = None
    path: Path | None = None

    @property
    def global_scoring(self) -> ScoringConfig:
        return self.scoring if self.scoring is not None else ScoringConfig.default()

    def scoring_for_query(self, index: int) -> ScoringConfig:
        """Effective scoring for the query at `index` (global merged with its override)."""
        query = self.queries[index] if 0 <= index < len(self.queries) else None
        return merge_scoring_configs(
            self.global_scoring,
            query.scoring if query else None,
        )

    @classmethod
    def load(cls, path: Path | None = None) -> PrbroConfig:
        """Load configuration from `path` (defaults to ~/.config/pr-bro/config.yaml)."""
        config_path = path or get_config_path()
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found at {config_path}. "
                f"Create it or run: pr-bro init"
            )

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Invalid config in {config_path}: expected a mapping")

        config = cls.from_dict(data)
        config.path = config_path
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrbroConfig:
        config = cls()

        for i, query_data in enumerate(data.get("queries") or []):
            if isinstance(query_data, str):
                config.queries.append(QueryConfig(query=query_data))
            elif isinstance(query_data, dict):
                config.queries.append(
                    QueryConfig(
                        query=str(query_data.get("query") or ""),
                        name=query_data.get("name"),
                        scoring=_parse_scoring(
                            query_data.get("scoring"), f"queries[{i}].scoring"
                        ),
                    )
                )

        config.scoring = _parse_scoring(data.get("scoring"), "scoring")
        return config


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _parse_scoring(data: Any, where: str) -> ScoringConfig | None:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"{where}: expected a mapping")

    base_score = data.get("base_score")
    if base_score is not None:
        if isinstance(base_score, bool) or not isinstance(base_score, (int, float)):
            raise ValueError(f"{where}.base_score: expected a number, got {base_score!r}")
        base_score = float(base_score)

    size = None
    size_data = data.get("size")
    if isinstance(size_data, dict):
        exclude = size_data.get("exclude")
        buckets_data = size_data.get("buckets")
        size = SizeConfig(
            exclude=[str(p) for p in exclude] if exclude is not None else None,
            buckets=[
                SizeBucket(range=str(b.get("range", "")), effect=str(b.get("effect", "")))
                for b in buckets_data
                if isinstance(b, dict)
            ] if buckets_data is not None else None,
        )
    elif size_data is not None:
        raise ValueError(f"{where}.size: expected a mapping")

    labels = None
    labels_data = data.get("labels")
    if labels_data is not None:
        labels = [
            LabelEffect(name=str(item.get("name") or ""), effect=str(item.get("effect", "")))
            for item in labels_data
            if isinstance(item, dict)
        ]

    return ScoringConfig(
        base_score=base_score,
        age=_optional_str(data.get("age")),
        approvals=_optional_str(data.get("approvals")),
        size=size,
        labels=labels,
        previously_reviewed=_optional_str(data.get("previously_reviewed")),
    )


def merge_scoring_configs(
    global_: ScoringConfig,
    query: ScoringConfig | None,
) -> ScoringConfig:
    """
    Resolve a per-query scoring config against the global one.

    Scalar fields take the query value when set, else the global value.
    Size exclude globs and buckets resolve independently. Labels merge by
    case-insensitive name with the query rule winning.
    """
    if query is None:
        return global_

    return ScoringConfig(
        base_score=query.base_score if query.base_score is not None else global_.base_score,
        age=query.age if query.age is not None else global_.age,
        approvals=query.approvals if query.approvals is not None else global_.approvals,
        size=_merge_size_configs(global_.size, query.size),
        labels=_merge_labels(global_.labels, query.labels),
        previously_reviewed=(
            query.previously_reviewed
            if query.previously_reviewed is not None
            else global_.previously_reviewed
        ),
    )


def _merge_size_configs(
    global_: SizeConfig | None,
    query: SizeConfig | None,
) -> SizeConfig | None:
    if query is None:
        return global_
    if global_ is None:
        return query
    return SizeConfig(
        exclude=query.exclude if query.exclude is not None else global_.exclude,
        # An empty bucket list in a query falls through to global
        buckets=query.buckets if query.buckets else global_.buckets,
    )


def _merge_labels(
    global_: list[LabelEffect] | None,
    query: list[LabelEffect] | None,
) -> list[LabelEffect] | None:
    if query is None:
        return global_
    if global_ is None:
        return query

    overrides = {rule.name.casefold(): rule for rule in query}
    merged: list[LabelEffect] = []
    used: set[str] = set()
    for rule in global_:
        key = rule.name.casefold()
        if key in overrides:
            if key not in used:
                merged.append(overrides[key])
                used.add(key)
        else:
            merged.append(rule)
    for rule in query:
        key = rule.name.casefold()
        if key not in used:
            merged.append(rule)
            used.add(key)
    return merged


def get_config_dir() -> Path:
    """Get the pr-bro config directory (~/.config/pr-bro)."""

    return Path.home() / ".config" / "pr-bro"


def get_config_path() -> Path:
    return get_config_dir() / CONFIG_FILENAME


def ensure_config_dir() -> Path:
    """Ensure the config directory exists and return its path."""

    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir
