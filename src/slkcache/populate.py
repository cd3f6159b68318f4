"""Resumable, page-at-a-time population of collection caches.

Progress is written to the partial entry after every page, so an interrupted
run (timeout, Ctrl-C, upstream error) picks up from the saved cursor on the
next invocation instead of starting over.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, List, Optional, Protocol, Sequence, TextIO, Tuple

from .cache import CacheStore, validate_as
from .cancellation import CancelScope
from .errors import OperationCancelled, UpstreamFetchError
from .log_utils import logger
from .models import Channel, PartialState, User

CACHE_KEY_CHANNELS = "channels"
CACHE_KEY_USERS = "users"

ChannelList = List[Channel]
UserList = List[User]

DEFAULT_PAGE_SIZE = 200
DEFAULT_PAGE_DELAY = 1.0


class PageFetcher(Protocol):
    """Fetches one page: ``(items, next_cursor)``; an empty cursor marks the last page."""

    def __call__(self, cursor: str, limit: int) -> Awaitable[Tuple[Sequence[Any], str]]:
        ...


@dataclass
class PopulateConfig:
    """Populate options.

    ``page_size`` below 1 falls back to 200 and a negative ``page_delay`` falls
    back to one second. ``output`` receives human progress lines; ``None``
    keeps the run silent.
    """

    page_size: int = DEFAULT_PAGE_SIZE
    page_delay: float = DEFAULT_PAGE_DELAY
    fetch_all: bool = False
    output: Optional[TextIO] = None

    def normalized(self) -> "PopulateConfig":
        return PopulateConfig(
            page_size=self.page_size if self.page_size > 0 else DEFAULT_PAGE_SIZE,
            page_delay=self.page_delay if self.page_delay >= 0 else DEFAULT_PAGE_DELAY,
            fetch_all=self.fetch_all,
            output=self.output,
        )


@dataclass
class PopulateResult:
    count: int = 0
    complete: bool = False
    next_cursor: str = ""
    pages: int = 0
    cancelled: bool = False


def _emit(output: Optional[TextIO], message: str) -> None:
    if output is not None:
        output.write(message)


class Paginator:
    """Accumulated items and resumption cursor for one cache key.

    Every fetched page is merged and persisted before :meth:`fetch_next`
    returns: as a partial entry while more pages remain, or promoted to the
    complete entry once the cursor runs out. Failures persist the progress made
    so far before propagating.
    """

    def __init__(
        self,
        store: CacheStore,
        key: str,
        schema: Any,
        fetcher: PageFetcher,
        page_size: int = DEFAULT_PAGE_SIZE,
        items: Optional[Sequence[Any]] = None,
        cursor: str = "",
        complete: bool = False,
    ) -> None:
        self._store = store
        self._key = key
        self._schema = schema
        self._fetcher = fetcher
        self._page_size = page_size
        self.items: List[Any] = list(items or [])
        self.cursor = cursor
        self.complete = complete
        self.pages = 0

    @classmethod
    def resume(
        cls,
        store: CacheStore,
        key: str,
        schema: Any,
        fetcher: PageFetcher,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Tuple["Paginator", Optional[PartialState]]:
        """Start from the saved partial entry, or from scratch when there is none."""
        state, items = store.load_partial(key, schema)
        if state is None:
            return cls(store, key, schema, fetcher, page_size), None
        paginator = cls(
            store,
            key,
            schema,
            fetcher,
            page_size,
            items=items,
            cursor="" if state.complete else state.next_cursor,
            complete=state.complete,
        )
        return paginator, state

    def result(self, cancelled: bool = False) -> PopulateResult:
        return PopulateResult(
            count=len(self.items),
            complete=self.complete,
            next_cursor="" if self.complete else self.cursor,
            pages=self.pages,
            cancelled=cancelled,
        )

    def checkpoint(self) -> None:
        """Persist current progress as an incomplete partial entry."""
        self._store.save_partial(
            self._key, self.items, self.cursor, False, len(self.items)
        )

    def finish(self) -> None:
        """Promote the accumulated items to the complete entry."""
        self.complete = True
        self.cursor = ""
        self._store.promote_partial(self._key, self.items)

    async def fetch_next(self, scope: CancelScope) -> List[Any]:
        """Fetch, merge and persist one page; return that page's items."""
        page_number = self.pages + 1
        try:
            page, next_cursor = await scope.run(
                self._fetcher(self.cursor, self._page_size)
            )
            page = validate_as(self._schema, list(page))
        except OperationCancelled:
            self.checkpoint()
            raise
        except asyncio.CancelledError:
            self.checkpoint()
            raise
        except Exception as exc:
            logger.warning("Fetching %s page %s failed: %s", self._key, page_number, exc)
            self.checkpoint()
            raise UpstreamFetchError(self._key, page_number, self.result()) from exc

        self.items.extend(page)
        self.pages = page_number
        logger.debug(
            "Fetched %s page %s (%s items, %s total)",
            self._key,
            page_number,
            len(page),
            len(self.items),
        )
        if next_cursor:
            self.cursor = next_cursor
            self.checkpoint()
        else:
            self.finish()
        return page


async def populate(
    store: CacheStore,
    key: str,
    fetcher: PageFetcher,
    schema: Any,
    config: Optional[PopulateConfig] = None,
    scope: Optional[CancelScope] = None,
) -> PopulateResult:
    """Incrementally populate ``key`` from ``fetcher``.

    A fresh complete entry makes this a no-op. Otherwise the run resumes from
    the partial entry and fetches one page, or every remaining page when
    ``config.fetch_all`` is set, sleeping ``config.page_delay`` in between.

    When ``scope`` times out or is interrupted, progress is saved and a result
    with ``cancelled=True`` is returned. Upstream failures raise
    :class:`UpstreamFetchError` whose ``result`` describes the saved progress.
    """
    cfg = (config or PopulateConfig()).normalized()
    scope = scope or CancelScope()

    found, existing = store.load(key, schema)
    if found:
        logger.info("Cache %s already complete; nothing to populate", key)
        return PopulateResult(count=len(existing or []), complete=True)

    paginator, state = Paginator.resume(store, key, schema, fetcher, cfg.page_size)
    if paginator.complete:
        paginator.finish()
        return paginator.result()
    if state is not None:
        _emit(
            cfg.output,
            f"Resuming from {len(paginator.items)} {key} "
            f"(cursor: {paginator.cursor[:20]}...)\n",
        )

    while True:
        try:
            await paginator.fetch_next(scope)
        except OperationCancelled as exc:
            logger.info("Populating %s %s; progress saved", key, exc.reason)
            return paginator.result(cancelled=True)

        _emit(
            cfg.output,
            f"Fetched page {paginator.pages}: {len(paginator.items)} {key} total\n",
        )
        if paginator.complete or not cfg.fetch_all:
            return paginator.result()

        try:
            await scope.sleep(cfg.page_delay)
        except OperationCancelled as exc:
            logger.info("Populating %s %s during page delay", key, exc.reason)
            return paginator.result(cancelled=True)


async def populate_channels(
    store: CacheStore,
    fetcher: PageFetcher,
    config: Optional[PopulateConfig] = None,
    scope: Optional[CancelScope] = None,
) -> PopulateResult:
    return await populate(store, CACHE_KEY_CHANNELS, fetcher, ChannelList, config, scope)


async def populate_users(
    store: CacheStore,
    fetcher: PageFetcher,
    config: Optional[PopulateConfig] = None,
    scope: Optional[CancelScope] = None,
) -> PopulateResult:
    return await populate(store, CACHE_KEY_USERS, fetcher, UserList, config, scope)
