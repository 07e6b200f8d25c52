from __future__ import annotations

import json
import os
import time

import pytest

from prbro.cache import (
    CacheConfig,
    CacheStorage,
    DiskCache,
    MemoryCache,
    NullCache,
    Validator,
    clear_cache,
    create_cache,
    get_cache_path,
)


URL = "https://api.github.com/repos/acme/widgets/pulls/7"
ETAG = Validator("etag", '"abc123"')


def test_validator_prefers_etag():
    headers = {"ETag": '"abc"', "Last-Modified": "Sat, 01 Jun 2024 12:00:00 GMT"}
    validator = Validator.from_response_headers(headers)
    assert validator == Validator("etag", '"abc"')
    assert validator.request_headers() == {"If-None-Match": '"abc"'}


def test_validator_falls_back_to_last_modified():
    validator = Validator.from_response_headers({"Last-Modified": "yesterday"})
    assert validator.request_headers() == {"If-Modified-Since": "yesterday"}
    assert Validator.from_response_headers({}) is None


def test_implementations_satisfy_protocol(tmp_path):
    assert isinstance(NullCache(), CacheStorage)
    assert isinstance(MemoryCache(), CacheStorage)
    assert isinstance(DiskCache(tmp_path), CacheStorage)


def test_memory_cache_round_trip():
    cache = MemoryCache()
    assert cache.try_validator(URL) is None

    with cache.open_writer(URL, ETAG, {"ETag": ETAG.value}) as writer:
        writer.write(b'{"number": ')
        writer.write(b"7}")

    assert cache.try_validator(URL) == ETAG
    cached = cache.load(URL)
    assert cached.json() == {"number": 7}
    assert cached.headers == {"ETag": ETAG.value}


@pytest.mark.parametrize("body", [b"", b"   ", b'{"number": 7', b"<html>"])
def test_invalid_json_is_never_cached(tmp_path, body):
    cache = DiskCache(tmp_path)
    writer = cache.open_writer(URL, ETAG, {})
    writer.write(body)

    assert writer.close() is False
    assert cache.try_validator(URL) is None
    assert cache.load(URL) is None
    assert list(tmp_path.glob("*.json")) == []


def test_writer_discards_on_exception():
    cache = MemoryCache()
    with pytest.raises(RuntimeError):
        with cache.open_writer(URL, ETAG, {}) as writer:
            writer.write(b"{}")
            raise RuntimeError("connection reset")
    assert cache.load(URL) is None


def test_null_cache_drops_writes():
    cache = NullCache()
    writer = cache.open_writer(URL, ETAG, {})
    writer.write(b"{}")
    assert writer.close() is False
    assert cache.try_validator(URL) is None


def test_disk_cache_hydrates_on_validator_lookup(tmp_path):
    first = DiskCache(tmp_path)
    with first.open_writer(URL, ETAG, {"ETag": ETAG.value}) as writer:
        writer.write(b'[1, 2, 3]')

    second = DiskCache(tmp_path)
    # load() alone never touches disk
    assert second.load(URL) is None
    assert second.try_validator(URL) == ETAG
    assert second.load(URL).json() == [1, 2, 3]


def test_clear_memory_keeps_disk(tmp_path):
    cache = DiskCache(tmp_path)
    with cache.open_writer(URL, ETAG, {}) as writer:
        writer.write(b"{}")

    cache.clear_memory()

    assert cache.load(URL) is None
    assert cache.try_validator(URL) == ETAG


def test_disk_cache_ignores_corrupt_entries(tmp_path):
    cache = DiskCache(tmp_path)
    with cache.open_writer(URL, ETAG, {}) as writer:
        writer.write(b"{}")
    [entry] = tmp_path.glob("*.json")
    entry.write_text("not json")

    assert DiskCache(tmp_path).try_validator(URL) is None


def test_disk_entry_records_last_modified(tmp_path):
    validator = Validator("last_modified", "Sat, 01 Jun 2024 12:00:00 GMT")
    cache = DiskCache(tmp_path)
    with cache.open_writer(URL, validator, {}) as writer:
        writer.write(b"{}")

    [entry] = tmp_path.glob("*.json")
    data = json.loads(entry.read_text())
    assert data["url"] == URL
    assert data["etag"] is None
    assert data["last_modified"] == validator.value
    assert DiskCache(tmp_path).try_validator(URL) == validator


def test_evict_removes_old_entries(tmp_path):
    cache = DiskCache(tmp_path)
    for i in range(3):
        with cache.open_writer(f"{URL}?page={i}", ETAG, {}) as writer:
            writer.write(b"{}")

    entries = sorted(tmp_path.glob("*.json"))
    old = time.time() - 8 * 86400
    os.utime(entries[0], (old, old))

    assert cache.evict(7) == 1
    assert len(list(tmp_path.glob("*.json"))) == 2


def test_evict_missing_directory(tmp_path):
    assert DiskCache(tmp_path / "nope").evict() == 0


def test_clear_cache_removes_store(tmp_path):
    path = tmp_path / "http-cache"
    cache = DiskCache(path)
    with cache.open_writer(URL, ETAG, {}) as writer:
        writer.write(b"{}")

    clear_cache(path)
    assert not path.exists()
    # Clearing twice is fine
    clear_cache(path)


def test_cache_path_respects_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    assert get_cache_path() == tmp_path / "pr-bro" / "http-cache"


def test_create_cache(tmp_path):
    assert isinstance(create_cache(CacheConfig(enabled=False)), NullCache)
    cache = create_cache(CacheConfig(path=tmp_path))
    assert isinstance(cache, DiskCache)
    assert cache.path == tmp_path
