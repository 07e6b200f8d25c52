"""
Snooze state: PRs hidden from the active list until a deadline (or forever).

Stored as JSON at ~/.config/pr-bro/snooze.json:

    {"version": 1,
     "snoozed": {"<pr url>": {"snoozed_at": "...", "snooze_until": "..." | null}}}
"""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .config import get_config_dir


SNOOZE_FILENAME = "snooze.json"
SNOOZE_STATE_VERSION = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class SnoozeEntry:
    snoozed_at: datetime
    snooze_until: datetime | None = None  # None = indefinite

    def is_active(self, now: datetime | None = None) -> bool:
        if self.snooze_until is None:
            return True
        return (now or _now()) < self.snooze_until

    def format_remaining(self, now: datetime | None = None) -> str:
        """"indefinite", "expired", or "3d left" style countdown."""
        if self.snooze_until is None:
            return "indefinite"
        remaining = self.snooze_until - (now or _now())
        seconds = int(remaining.total_seconds())
        if seconds <= 0:
            return "expired"
        if seconds >= 7 * 86400:
            return f"{seconds // (7 * 86400)}w left"
        if seconds >= 86400:
            return f"{seconds // 86400}d left"
        if seconds >= 3600:
            return f"{seconds // 3600}h left"
        if seconds >= 60:
            return f"{seconds // 60}m left"
        return "<1m left"

    def to_dict(self) -> dict[str, str | None]:
        return {
            "snoozed_at": self.snoozed_at.isoformat(),
            "snooze_until": self.snooze_until.isoformat() if self.snooze_until else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SnoozeEntry:
        until = data.get("snooze_until")
        return cls(
            snoozed_at=_parse_time(data["snoozed_at"]),
            snooze_until=_parse_time(until) if until else None,
        )


@dataclass
class SnoozeState:
    version: int = SNOOZE_STATE_VERSION
    snoozed: dict[str, SnoozeEntry] = field(default_factory=dict)

    def is_snoozed(self, url: str) -> bool:
        entry = self.snoozed.get(url)
        return entry is not None and entry.is_active()

    def snooze(self, url: str, until: datetime | None = None) -> None:
        self.snoozed[url] = SnoozeEntry(snoozed_at=_now(), snooze_until=until)

    def unsnooze(self, url: str) -> bool:
        """Returns True if the PR was snoozed."""
        return self.snoozed.pop(url, None) is not None

    def clean_expired(self) -> int:
        """Drop expired entries; indefinite snoozes are kept. Returns the number dropped."""
        now = _now()
        expired = [url for url, entry in self.snoozed.items() if not entry.is_active(now)]
        for url in expired:
            del self.snoozed[url]
        return len(expired)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "snoozed": {url: entry.to_dict() for url, entry in self.snoozed.items()},
        }


def get_snooze_path() -> Path:
    return get_config_dir() / SNOOZE_FILENAME


def load_snooze_state(path: Path | None = None) -> SnoozeState:
    """Load snooze state; a missing file is an empty state."""
    path = path or get_snooze_path()
    if not path.exists():
        return SnoozeState()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ValueError(f"Failed to load snooze state from {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Failed to load snooze state from {path}: expected an object")

    version = data.get("version")
    if version != SNOOZE_STATE_VERSION:
        raise ValueError(f"Unsupported snooze state version: {version}")

    try:
        snoozed = {
            url: SnoozeEntry.from_dict(entry)
            for url, entry in (data.get("snoozed") or {}).items()
        }
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise ValueError(f"Failed to load snooze state from {path}: {e}") from e

    return SnoozeState(version=version, snoozed=snoozed)


def save_snooze_state(state: SnoozeState, path: Path | None = None) -> None:
    """Write snooze state atomically (temp file + rename)."""
    path = path or get_snooze_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
