"""
Conditional-request HTTP cache for pr-bro.

Responses are keyed by the full request URL and stored together with their
validator (ETag or Last-Modified). The next identical request is sent with
If-None-Match / If-Modified-Since; a 304 replays the stored body and does
not count against the GitHub rate limit.

Storage:
- In memory: dicts guarded by a lock (fast path)
- On disk: one JSON file per URL, loaded lazily on the first miss

Only bodies that parse as JSON are stored, so a response cut off mid-transfer
is never replayed on later runs.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, runtime_checkable


logger = logging.getLogger(__name__)

CACHE_RETENTION_DAYS = 7
_ENTRY_VERSION = 1

ETAG = "etag"
LAST_MODIFIED = "last_modified"


@dataclass(frozen=True)
class Validator:
    """An ETag or Last-Modified token (never both)."""
    kind: str
    value: str

    @classmethod
    def from_response_headers(cls, headers: Mapping[str, str]) -> Validator | None:
        """Prefer ETag; fall back to Last-Modified; None if the response has neither."""
        etag = headers.get("ETag")
        if etag:
            return cls(ETAG, etag)
        last_modified = headers.get("Last-Modified")
        if last_modified:
            return cls(LAST_MODIFIED, last_modified)
        return None

    def request_headers(self) -> dict[str, str]:
        if self.kind == ETAG:
            return {"If-None-Match": self.value}
        return {"If-Modified-Since": self.value}


@dataclass
class CachedResponse:
    headers: dict[str, str]
    body: bytes

    def json(self) -> Any:
        return json.loads(self.body)


@dataclass
class CacheConfig:
    """HTTP cache settings (`enabled` is False under --no-cache)."""
    enabled: bool = True
    path: Path | None = None

    @property
    def resolved_path(self) -> Path:
        return self.path or get_cache_path()


def is_valid_json(body: bytes) -> bool:
    if not body.strip():
        return False
    try:
        json.loads(body)
    except ValueError:
        return False
    return True


CommitFn = Callable[[str, Validator, CachedResponse], None]


class CacheWriter:
    """
    Accumulates a response body for one URL.

    The entry is committed when the writer is closed, and only if the complete
    body is well-formed JSON. Used as a context manager; an exception inside the
    `with` block discards the entry.
    """

    def __init__(
        self,
        commit: CommitFn | None,
        url: str,
        validator: Validator,
        headers: Mapping[str, str],
    ):
        self._commit = commit
        self.url = url
        self.validator = validator
        self.headers = dict(headers)
        self._chunks: list[bytes] = []
        self._closed = False

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ValueError("write to closed cache writer")
        self._chunks.append(data)

    def close(self) -> bool:
        """Commit the entry. Returns True if it was stored."""
        if self._closed:
            return False
        self._closed = True

        body = b"".join(self._chunks)
        self._chunks = []
        if not is_valid_json(body):
            logger.debug("Not caching %s: body is not valid JSON (%d bytes)", self.url, len(body))
            return False
        if self._commit is None:
            return False

        self._commit(self.url, self.validator, CachedResponse(headers=self.headers, body=body))
        return True

    def discard(self) -> None:
        self._closed = True
        self._chunks = []

    def __enter__(self) -> CacheWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.discard()


@runtime_checkable
class CacheStorage(Protocol):
    """What the HTTP layer needs from a cache."""

    def try_validator(self, url: str) -> Validator | None:
        ...

    def load(self, url: str) -> CachedResponse | None:
        ...

    def open_writer(self, url: str, validator: Validator, headers: Mapping[str, str]) -> CacheWriter:
        ...


class NullCache:
    """Never hits, drops every write (--no-cache)."""

    def try_validator(self, url: str) -> Validator | None:
        return None

    def load(self, url: str) -> CachedResponse | None:
        return None

    def open_writer(self, url: str, validator: Validator, headers: Mapping[str, str]) -> CacheWriter:
        return CacheWriter(None, url, validator, headers)


class MemoryCache:
    """In-memory cache with no durable store. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._validators: dict[str, Validator] = {}
        self._responses: dict[str, CachedResponse] = {}

    def try_validator(self, url: str) -> Validator | None:
        with self._lock:
            return self._validators.get(url)

    def load(self, url: str) -> CachedResponse | None:
        with self._lock:
            return self._responses.get(url)

    def open_writer(self, url: str, validator: Validator, headers: Mapping[str, str]) -> CacheWriter:
        return CacheWriter(self._store, url, validator, headers)

    def clear_memory(self) -> None:
        """Drop in-memory entries so the next requests re-validate."""
        with self._lock:
            self._validators.clear()
            self._responses.clear()

    def _remember(self, url: str, validator: Validator, response: CachedResponse) -> None:
        with self._lock:
            self._validators[url] = validator
            self._responses[url] = response

    def _store(self, url: str, validator: Validator, response: CachedResponse) -> None:
        self._remember(url, validator, response)


class DiskCache(MemoryCache):
    """
    Memory cache backed by a directory of JSON entry files.

    Disk entries are read on the first validator miss for a URL and written
    best effort; disk errors never fail a request.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = path

    def try_validator(self, url: str) -> Validator | None:
        validator = super().try_validator(url)
        if validator is not None:
            return validator
        return self._load_from_disk(url)

    def evict(self, max_age_days: int = CACHE_RETENTION_DAYS) -> int:
        """Remove disk entries older than `max_age_days`. Returns the number removed."""
        cutoff = time.time() - max_age_days * 86400
        removed = 0
        try:
            entries = list(self.path.glob("*.json"))
        except OSError:
            return 0

        for entry in entries:
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError:
                continue

        if removed:
            logger.debug("Evicted %d cache entries older than %d days", removed, max_age_days)
        return removed

    def _store(self, url: str, validator: Validator, response: CachedResponse) -> None:
        self._remember(url, validator, response)
        self._write_to_disk(url, validator, response)

    def _entry_path(self, url: str) -> Path:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return self.path / f"{digest}.json"

    def _load_from_disk(self, url: str) -> Validator | None:
        entry_path = self._entry_path(url)
        try:
            data = json.loads(entry_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.debug("Unreadable cache entry for %s", url)
            return None

        if not isinstance(data, dict) or data.get("version") != _ENTRY_VERSION:
            return None
        if data.get("url") != url:
            return None

        etag = data.get("etag")
        last_modified = data.get("last_modified")
        if etag:
            validator = Validator(ETAG, str(etag))
        elif last_modified:
            validator = Validator(LAST_MODIFIED, str(last_modified))
        else:
            return None

        body = data.get("body")
        headers = data.get("headers")
        if not isinstance(body, str) or not isinstance(headers, list):
            return None
        try:
            response = CachedResponse(
                headers={str(name): str(value) for name, value in headers},
                body=body.encode("utf-8"),
            )
        except (TypeError, ValueError):
            return None

        self._remember(url, validator, response)
        logger.debug("Loaded cache entry for %s from disk", url)
        return validator

    def _write_to_disk(self, url: str, validator: Validator, response: CachedResponse) -> None:
        try:
            body = response.body.decode("utf-8")
        except UnicodeDecodeError:
            return

        payload = {
            "version": _ENTRY_VERSION,
            "url": url,
            "etag": validator.value if validator.kind == ETAG else None,
            "last_modified": validator.value if validator.kind == LAST_MODIFIED else None,
            "headers": [[name, value] for name, value in response.headers.items()],
            "body": body,
        }

        tmp_name = None
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self.path, suffix=".tmp", delete=False, encoding="utf-8"
            ) as tmp:
                tmp_name = tmp.name
                json.dump(payload, tmp)
            os.replace(tmp_name, self._entry_path(url))
        except OSError as e:
            logger.debug("Failed to persist cache entry for %s: %s", url, e)
            if tmp_name:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)


def get_cache_path() -> Path:
    """Platform cache directory for HTTP responses (~/.cache/pr-bro/http-cache)."""
    base = os.environ.get("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / "pr-bro" / "http-cache"


def clear_cache(path: Path | None = None) -> None:
    """Delete the whole durable store. A missing directory is not an error."""
    try:
        shutil.rmtree(path or get_cache_path())
    except FileNotFoundError:
        pass


def create_cache(config: CacheConfig) -> CacheStorage:
    if not config.enabled:
        return NullCache()
    return DiskCache(config.resolved_path)
