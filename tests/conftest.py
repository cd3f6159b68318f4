import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src/ to sys.path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from slkcache.cache import CacheStore  # noqa: E402
from slkcache.models import Channel, User  # noqa: E402


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class ScriptedFetcher:
    """Page fetcher returning canned pages in order and recording every call.

    Each script step is ``(items, next_cursor)`` or an exception instance to
    raise.
    """

    def __init__(self, pages):
        self._pages = list(pages)
        self.calls = []

    async def __call__(self, cursor, limit):
        self.calls.append((cursor, limit))
        if not self._pages:
            raise AssertionError(f"unexpected fetch with cursor {cursor!r}")
        step = self._pages.pop(0)
        if isinstance(step, BaseException):
            raise step
        return step


def channel(cid, name):
    return Channel(id=cid, name=name)


def user(uid, name, display_name="", real_name=""):
    return User(id=uid, name=name, display_name=display_name, real_name=real_name)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def store(cache_dir, clock):
    return CacheStore(cache_dir, clock=clock)
