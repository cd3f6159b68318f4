"""File-per-key metadata cache with TTL expiry and atomic writes.

Each key maps to ``<base_path>/<key>.json`` holding a JSON object
``{"fetched_at": ..., "data": ...}``. In-progress paginated enumerations live
under the derived key ``<key>_partial`` and additionally carry the resumption
cursor, a completeness flag and a running item count.

Writes go to ``<file>.tmp`` in the same directory and are renamed over the
canonical path, so a crash never leaves a half-written entry behind. Entries
that fail to parse or validate are deleted and reported as a miss; expired
entries are a miss as well. Only genuine filesystem failures raise
:class:`~.errors.CacheStoreError`.

There is no locking: concurrent writers to the same key each produce a whole
file and the last rename wins.
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Optional, Tuple, Union

from pydantic import BaseModel, TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from .errors import CacheStoreError, InvalidKey
from .log_utils import logger
from .models import CacheEntry, CacheStatus, PartialCacheEntry, PartialState

DEFAULT_TTL = timedelta(days=7)
PARTIAL_TTL = timedelta(days=1)
PARTIAL_SUFFIX = "_partial"
ENTRY_SUFFIX = ".json"
TMP_SUFFIX = ".tmp"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_cache_dir() -> Path:
    """``~/.config/slack-cli/cache``."""
    return Path.home() / ".config" / "slack-cli" / "cache"


def partial_key(key: str) -> str:
    return key + PARTIAL_SUFFIX


@lru_cache(maxsize=64)
def _adapter(schema: Any) -> TypeAdapter:
    return TypeAdapter(schema)


def validate_as(schema: Any, value: Any) -> Any:
    """Validate ``value`` against ``schema`` using a cached ``TypeAdapter``."""
    return _adapter(schema).validate_python(value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _item_count(data: Any) -> int:
    if isinstance(data, (list, dict)):
        return len(data)
    return 0


class CacheStore:
    """Durable key/value cache rooted at a single directory."""

    def __init__(
        self,
        base_path: Union[str, Path],
        ttl: Optional[timedelta] = None,
        partial_ttl: Optional[timedelta] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._base_path = Path(base_path).expanduser()
        self.ttl = ttl or DEFAULT_TTL
        self.partial_ttl = partial_ttl or PARTIAL_TTL
        self._clock = clock or utc_now

    @property
    def base_path(self) -> Path:
        return self._base_path

    def path_for(self, key: str) -> Path:
        """Return the entry file for ``key``."""
        if not key or key.startswith(".") or "/" in key or "\\" in key or os.sep in key:
            raise InvalidKey(f"invalid cache key: {key!r}")
        return self._base_path / f"{key}{ENTRY_SUFFIX}"

    def load(self, key: str, schema: Any) -> Tuple[bool, Any]:
        """Return ``(found, value)`` for a fresh complete entry.

        ``schema`` is any type pydantic can validate against, e.g.
        ``List[Channel]``. Missing and expired entries return ``(False, None)``;
        expired files are left in place. Entries that fail to parse or do not
        match ``schema`` are deleted and also return ``(False, None)``.
        """
        path = self.path_for(key)
        raw = self._read(path, key)
        if raw is None:
            return False, None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            self._discard_corrupt(path, key)
            return False, None

        if self._is_expired(entry.fetched_at, self.ttl):
            logger.debug("Cache entry %s expired (fetched_at=%s)", key, entry.fetched_at)
            return False, None

        try:
            value = _adapter(schema).validate_python(entry.data)
        except ValidationError:
            self._discard_corrupt(path, key)
            return False, None
        return True, value

    def save(self, key: str, value: Any) -> None:
        """Atomically replace the complete entry for ``key`` with ``value``."""
        entry = CacheEntry(fetched_at=self._now(), data=to_jsonable_python(value))
        self._write(self.path_for(key), entry, key)
        logger.debug("Saved cache entry %s", key)

    def expire(self, key: str) -> None:
        """Delete the entry for ``key``; a missing file is not an error."""
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise CacheStoreError(f"expire cache {key}: {exc}", key) from exc
        logger.debug("Expired cache entry %s", key)

    def expire_all(self, prefix: str = "") -> None:
        """Delete every entry file whose key starts with ``prefix``."""
        try:
            names = sorted(os.listdir(self._base_path))
        except FileNotFoundError:
            return
        except OSError as exc:
            raise CacheStoreError(f"read cache dir: {exc}") from exc

        for name in names:
            if not (name.startswith(prefix) and name.endswith(ENTRY_SUFFIX)):
                continue
            try:
                (self._base_path / name).unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise CacheStoreError(f"expire cache {name}: {exc}") from exc
        logger.info("Expired cache entries with prefix %r", prefix)

    def load_partial(self, key: str, schema: Any) -> Tuple[Optional[PartialState], Any]:
        """Return ``(state, value)`` for a fresh partial entry, ``(None, None)`` on miss.

        Partial entries use the shorter ``partial_ttl``. Expired partial files
        are deleted since stale pagination progress is never resumed.
        """
        path = self.path_for(partial_key(key))
        raw = self._read(path, key)
        if raw is None:
            return None, None

        try:
            entry = PartialCacheEntry.model_validate_json(raw)
        except ValidationError:
            self._discard_corrupt(path, key)
            return None, None

        if self._is_expired(entry.fetched_at, self.partial_ttl):
            logger.info("Partial cache %s expired; discarding", key)
            self._remove_quietly(path, key)
            return None, None

        try:
            value = _adapter(schema).validate_python(entry.data)
        except ValidationError:
            self._discard_corrupt(path, key)
            return None, None

        state = PartialState(
            fetched_at=entry.fetched_at,
            next_cursor=entry.next_cursor,
            complete=entry.complete,
            count=entry.count,
        )
        return state, value

    def save_partial(
        self,
        key: str,
        value: Any,
        cursor: str,
        complete: bool,
        count: int,
    ) -> None:
        """Atomically replace the partial entry for ``key``."""
        entry = PartialCacheEntry(
            fetched_at=self._now(),
            next_cursor=cursor,
            complete=complete,
            count=count,
            data=to_jsonable_python(value),
        )
        self._write(self.path_for(partial_key(key)), entry, key)
        logger.debug(
            "Saved partial cache %s (count=%s complete=%s)", key, count, complete
        )

    def promote_partial(self, key: str, value: Any) -> None:
        """Write ``value`` as the complete entry, then drop the partial entry.

        The complete entry lands first, so a crash in between leaves a valid
        complete entry next to a redundant partial one.
        """
        self.save(key, value)
        try:
            self.expire_partial(key)
        except CacheStoreError as exc:
            logger.warning("Promoted %s but could not remove partial entry: %s", key, exc)
        logger.info("Promoted partial cache %s to complete", key)

    def expire_partial(self, key: str) -> None:
        self.expire(partial_key(key))

    def get_status(self, key: str) -> CacheStatus:
        """Describe ``key`` without mutating anything; ``status.cached`` is the found flag."""
        raw = self._peek(self.path_for(key))
        if raw is not None:
            try:
                entry = CacheEntry.model_validate_json(raw)
            except ValidationError:
                entry = None
            if entry is not None:
                fetched_at = _as_utc(entry.fetched_at)
                return CacheStatus(
                    key=key,
                    cached=True,
                    complete=True,
                    count=_item_count(entry.data),
                    fetched_at=fetched_at,
                    expires_at=fetched_at + self.ttl,
                    expired=self._is_expired(fetched_at, self.ttl),
                )

        raw = self._peek(self.path_for(partial_key(key)))
        if raw is not None:
            try:
                partial = PartialCacheEntry.model_validate_json(raw)
            except ValidationError:
                partial = None
            if partial is not None:
                fetched_at = _as_utc(partial.fetched_at)
                return CacheStatus(
                    key=key,
                    cached=True,
                    complete=partial.complete,
                    count=partial.count,
                    fetched_at=fetched_at,
                    expires_at=fetched_at + self.partial_ttl,
                    next_cursor=partial.next_cursor,
                    expired=self._is_expired(fetched_at, self.partial_ttl),
                )

        return CacheStatus(key=key)

    def _now(self) -> datetime:
        return _as_utc(self._clock())

    def _is_expired(self, fetched_at: datetime, ttl: timedelta) -> bool:
        return self._now() - _as_utc(fetched_at) > ttl

    def _read(self, path: Path, key: str) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheStoreError(f"read cache {key}: {exc}", key) from exc

    def _peek(self, path: Path) -> Optional[bytes]:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Cannot read %s for status: %s", path.name, exc)
            return None

    def _write(self, path: Path, entry: BaseModel, key: str) -> None:
        try:
            self._base_path.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheStoreError(f"create cache dir: {exc}", key) from exc

        payload = entry.model_dump_json(indent=2)
        tmp = path.with_name(path.name + TMP_SUFFIX)
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, path)
        except OSError as exc:
            self._remove_quietly(tmp, key)
            raise CacheStoreError(f"write cache {key}: {exc}", key) from exc

    def _discard_corrupt(self, path: Path, key: str) -> None:
        logger.warning("Cache entry %s is corrupt; removing %s", key, path.name)
        self._remove_quietly(path, key)

    def _remove_quietly(self, path: Path, key: str) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove %s for %s: %s", path.name, key, exc)
