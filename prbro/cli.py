"""
pr-bro CLI - rank the GitHub pull requests waiting on you.

Commands:
    init      - Write a starter config to ~/.config/pr-bro/config.yaml
    list      - Fetch, score and print PRs for every configured query
    validate  - Check the scoring config without touching the network
    snooze    - Hide a PR (for a while, or until unsnoozed)
    unsnooze  - Bring a snoozed PR back
    cache     - Clear or evict the HTTP response cache
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
import yaml
from dotenv import load_dotenv
from loguru import logger

# Load .env from the current directory
load_dotenv()

from . import __version__
from .cache import CACHE_RETENTION_DAYS, CacheConfig, DiskCache, clear_cache, create_cache, get_cache_path
from .config import PrbroConfig, ensure_config_dir, get_config_path
from .factors import ParseError, parse_duration
from .fetch import FetchResult, fetch_and_score_prs
from .github import AuthError, GitHubAPIError, GitHubClient, create_client
from .output import format_breakdown, format_pr_line, format_pr_list, format_snoozed_list, pr_to_dict
from .snooze import SnoozeState, load_snooze_state, save_snooze_state
from .validation import validate_config


TOKEN_ENV_VARS = ("GITHUB_TOKEN", "PR_BRO_GH_TOKEN")

SAMPLE_CONFIG = """\
# pr-bro configuration

# GitHub search queries. Each query string is passed to GitHub as-is.
queries:
  - name: Review requested
    query: "is:pr is:open review-requested:@me"
  # - name: Team
  #   query: "is:pr is:open team-review-requested:my-org/my-team"
  #   scoring:             # Optional per-query override (inherits the rest)
  #     age: "+5 per 1h"

# Global scoring formula
scoring:
  base_score: 100
  age: "+1 per 1h"         # Added per hour since the PR was opened
  approvals: "+10 per 1"   # Added per approval
  size:
    # exclude: ["*.lock", "*.snap"]   # Files ignored when measuring size
    buckets:
      - { range: "<100", effect: "x5" }
      - { range: "100-500", effect: "x1" }
      - { range: ">500", effect: "x0.5" }
  # labels:
  #   - { name: urgent, effect: "+50" }
  # previously_reviewed: "x0.5"
"""


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: bool = False) -> None:
    """Route library logging (stdlib) through loguru to stderr."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        colorize=True,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
    )
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # urllib3 debug output is noise even with --verbose
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _load_snooze() -> SnoozeState:
    try:
        return load_snooze_state()
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e))

def _load_config(path: Path | None) -> PrbroConfig:
    try:
        return PrbroConfig.load(path)
    except FileNotFoundError as e:
        raise click.ClickException(str(e))
    except (ValueError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid config: {e}")


def _check_config(config: PrbroConfig) -> None:
    errors = validate_config(config)
    if errors:
        click.echo(f"Config has {len(errors)} error(s):", err=True)
        for error in errors:
            click.echo(f"  {error}", err=True)
        sys.exit(1)


def _resolve_token() -> str:
    for name in TOKEN_ENV_VARS:
        token = os.environ.get(name)
        if token:
            return token
    return _prompt_token("GitHub token")


def _prompt_token(message: str) -> str:
    token = click.prompt(message, hide_input=True, type=str).strip()
    if not token:
        raise click.ClickException("A GitHub token is required")
    return token


def _run_fetch(
    client: GitHubClient,
    config: PrbroConfig,
    state: SnoozeState,
    cache_config: CacheConfig,
) -> FetchResult:
    """Fetch once; on rejected credentials re-prompt and try exactly once more."""
    try:
        return asyncio.run(fetch_and_score_prs(client, config, state.is_snoozed, cache_config))
    except AuthError as e:
        logger.warning("Authentication failed: {}", e)

    client.set_token(_prompt_token("GitHub rejected the token. Enter a new token"))
    try:
        return asyncio.run(fetch_and_score_prs(client, config, state.is_snoozed, cache_config))
    except AuthError as e:
        raise click.ClickException(f"Authentication failed: {e}")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: ~/.config/pr-bro/config.yaml)",
)
@click.option("--no-cache", is_flag=True, help="Disable the HTTP response cache")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging to stderr")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, no_cache: bool, verbose: bool):
    """pr-bro - rank the GitHub pull requests waiting on you."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["cache_config"] = CacheConfig(enabled=not no_cache)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
@click.pass_context
def init(ctx: click.Context, force: bool):
    """Write a starter config file."""
    config_path = ctx.obj["config_path"]
    if config_path is None:
        ensure_config_dir()
        config_path = get_config_path()
    else:
        config_path.parent.mkdir(parents=True, exist_ok=True)

    if config_path.exists() and not force:
        click.echo(f"  Skipped: {config_path} (already exists)")
        return

    config_path.write_text(SAMPLE_CONFIG, encoding="utf-8")
    click.echo(f"  Created: {config_path}")
    click.echo("\nNext steps:")
    click.echo("  1. Edit the queries in the config file")
    click.echo("  2. Set GITHUB_TOKEN (or PR_BRO_GH_TOKEN)")
    click.echo("  3. Run: pr-bro list")


@main.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("-b", "--breakdown", is_flag=True, help="Show how each score was computed")
@click.option("--snoozed", "show_snoozed", is_flag=True, help="Also list snoozed PRs")
@click.option("-n", "--limit", default=None, type=int, help="Show at most N PRs")
@click.pass_context
def list_prs(ctx: click.Context, as_json: bool, breakdown: bool, show_snoozed: bool, limit: int | None):
    """Fetch, score and rank PRs."""
    config = _load_config(ctx.obj["config_path"])
    _check_config(config)

    cache_config: CacheConfig = ctx.obj["cache_config"]
    cache = create_cache(cache_config)
    if isinstance(cache, DiskCache):
        cache.evict(CACHE_RETENTION_DAYS)

    state = _load_snooze()
    if state.clean_expired():
        save_snooze_state(state)

    client = create_client(_resolve_token(), cache)
    try:
        result = _run_fetch(client, config, state, cache_config)
    except GitHubAPIError as e:
        raise click.ClickException(str(e))

    active = result.active[:limit] if limit else result.active

    if as_json:
        click.echo(json.dumps({
            "active": [pr_to_dict(pr, score) for pr, score in active],
            "snoozed": [pr_to_dict(pr, score) for pr, score in result.snoozed],
            "rate_limit_remaining": result.rate_limit_remaining,
        }, indent=2))
        return

    now = datetime.now(timezone.utc)
    if breakdown and active:
        for i, (pr, score) in enumerate(active, 1):
            click.echo(format_pr_line(i, pr, score, now=now))
            click.echo(format_breakdown(score))
    else:
        click.echo(format_pr_list(active, now=now))

    if show_snoozed:
        click.echo(f"\nSnoozed ({len(result.snoozed)}):")
        click.echo(format_snoozed_list(result.snoozed, state))
    elif result.snoozed:
        click.echo(click.style(f"\n{len(result.snoozed)} snoozed (--snoozed to show)", dim=True))

    remaining = result.rate_limit_remaining
    click.echo(click.style(
        f"API quota remaining: {remaining if remaining is not None else 'unknown'}",
        dim=True,
    ))


@main.command()
@click.pass_context
def validate(ctx: click.Context):
    """Check the config for errors (no network access)."""
    config = _load_config(ctx.obj["config_path"])
    _check_config(config)
    click.echo(f"Config OK: {config.path} ({len(config.queries)} queries)")


@main.command()
@click.argument("url")
@click.option("--for", "duration", default=None, help="Snooze duration, e.g. 2d, 4h, 1w (default: indefinite)")
def snooze(url: str, duration: str | None):
    """Hide a PR from the active list."""
    until = None
    if duration:
        try:
            until = datetime.now(timezone.utc) + parse_duration(duration)
        except ParseError as e:
            raise click.BadParameter(str(e), param_hint="--for")

    state = _load_snooze()
    state.snooze(url, until)
    save_snooze_state(state)
    click.echo(f"Snoozed {url} ({state.snoozed[url].format_remaining()})")


@main.command()
@click.argument("url")
def unsnooze(url: str):
    """Bring a snoozed PR back."""
    state = _load_snooze()
    if not state.unsnooze(url):
        click.echo(f"Not snoozed: {url}")
        sys.exit(1)
    save_snooze_state(state)
    click.echo(f"Unsnoozed {url}")


@main.group()
def cache():
    """Manage the HTTP response cache."""
    pass


@cache.command("clear")
def cache_clear():
    """Delete every cached response."""
    path = get_cache_path()
    try:
        clear_cache(path)
    except OSError as e:
        raise click.ClickException(f"Failed to clear cache at {path}: {e}")
    click.echo(f"Cleared cache: {path}")


@cache.command("evict")
@click.option("--days", default=CACHE_RETENTION_DAYS, type=int, help="Remove entries older than N days")
def cache_evict(days: int):
    """Remove cached responses older than --days."""
    removed = DiskCache(get_cache_path()).evict(days)
    click.echo(f"Evicted {removed} cache entries older than {days} days")


if __name__ == "__main__":
    main()
