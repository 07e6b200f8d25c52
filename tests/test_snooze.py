from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from prbro.snooze import SnoozeEntry, SnoozeState, load_snooze_state, save_snooze_state


URL = "https://github.com/acme/widgets/pull/1"


def test_new_state_is_empty():
    state = SnoozeState()
    assert state.version == 1
    assert state.snoozed == {}
    assert not state.is_snoozed(URL)


def test_snooze_indefinitely_and_unsnooze():
    state = SnoozeState()
    state.snooze(URL)
    assert state.is_snoozed(URL)

    assert state.unsnooze(URL) is True
    assert not state.is_snoozed(URL)
    assert state.unsnooze(URL) is False


def test_snooze_expiry():
    now = datetime.now(timezone.utc)
    state = SnoozeState()
    state.snooze(URL, now + timedelta(hours=1))
    state.snooze(URL + "2", now - timedelta(hours=1))

    assert state.is_snoozed(URL)
    assert not state.is_snoozed(URL + "2")


def test_clean_expired_keeps_indefinite():
    now = datetime.now(timezone.utc)
    state = SnoozeState()
    state.snooze("a")
    state.snooze("b", now + timedelta(hours=1))
    state.snooze("c", now - timedelta(hours=1))

    assert state.clean_expired() == 1
    assert sorted(state.snoozed) == ["a", "b"]


def test_format_remaining():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def remaining(delta):
        return SnoozeEntry(snoozed_at=now, snooze_until=now + delta).format_remaining(now)

    assert SnoozeEntry(snoozed_at=now).format_remaining(now) == "indefinite"
    assert remaining(timedelta(hours=-1)) == "expired"
    assert remaining(timedelta(seconds=30)) == "<1m left"
    assert remaining(timedelta(minutes=5)) == "5m left"
    assert remaining(timedelta(hours=3)) == "3h left"
    assert remaining(timedelta(days=2)) == "2d left"
    assert remaining(timedelta(days=15)) == "2w left"


def test_save_and_load(tmp_path):
    path = tmp_path / "pr-bro" / "snooze.json"
    until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    state = SnoozeState()
    state.snooze(URL, until)
    state.snooze(URL + "2")

    save_snooze_state(state, path)
    loaded = load_snooze_state(path)

    assert loaded.snoozed[URL].snooze_until == until
    assert loaded.snoozed[URL + "2"].snooze_until is None
    data = json.loads(path.read_text())
    assert data["version"] == 1
    assert list(tmp_path.glob("pr-bro/*.tmp")) == []


def test_load_missing_file(tmp_path):
    assert load_snooze_state(tmp_path / "snooze.json").snoozed == {}


def test_load_rejects_unknown_version(tmp_path):
    path = tmp_path / "snooze.json"
    path.write_text(json.dumps({"version": 2, "snoozed": {}}))
    with pytest.raises(ValueError, match="Unsupported snooze state version"):
        load_snooze_state(path)
