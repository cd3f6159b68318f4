"""Name to id resolution for channels and users, backed by the cache store."""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Pattern, Sequence

from .cache import CacheStore, validate_as
from .cancellation import CancelScope
from .errors import CacheIncompleteError, InvalidNameError, NameNotFoundError
from .log_utils import logger
from .models import PartialState, User
from .populate import (
    CACHE_KEY_CHANNELS,
    CACHE_KEY_USERS,
    DEFAULT_PAGE_SIZE,
    ChannelList,
    PageFetcher,
    Paginator,
    UserList,
)


class ResolvePolicy(str, Enum):
    """What a resolver does when a name is missing from an incomplete cache.

    ``explicit_refresh`` never calls the API during resolution and raises
    :class:`CacheIncompleteError` so the operator runs ``populate`` first.
    ``transparent_fetch`` keeps fetching pages until the name turns up or the
    collection is exhausted.
    """

    EXPLICIT_REFRESH = "explicit_refresh"
    TRANSPARENT_FETCH = "transparent_fetch"


class CollectionResolver:
    """Resolves human-facing names to durable ids for one cached collection.

    Subclasses set the cache ``key``, the record ``schema``, the display
    ``prefix`` stripped from input, the ``id_pattern`` recognising values that
    are already ids, and the record fields compared against the name.
    """

    kind = "item"
    key = ""
    schema: Any = None
    prefix = ""
    id_pattern: Pattern = re.compile(r"^$")
    match_fields: Sequence[str] = ("name",)

    def __init__(
        self,
        store: CacheStore,
        fetcher: Optional[PageFetcher] = None,
        policy: ResolvePolicy = ResolvePolicy.TRANSPARENT_FETCH,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        policy = ResolvePolicy(policy)
        if policy is ResolvePolicy.TRANSPARENT_FETCH and fetcher is None:
            raise ValueError("transparent_fetch resolution needs a page fetcher")
        self._store = store
        self._fetcher = fetcher
        self.policy = policy
        self._page_size = page_size if page_size > 0 else DEFAULT_PAGE_SIZE

    def looks_like_id(self, value: str) -> bool:
        return bool(self.id_pattern.match(value))

    def normalize(self, name: str) -> str:
        if self.prefix and name.startswith(self.prefix):
            name = name[len(self.prefix):]
        return name.strip().casefold()

    def find(self, records: Iterable[Any], target: str) -> Optional[Any]:
        """Return the first record whose match fields equal ``target``, by field priority."""
        records = list(records)
        for field in self.match_fields:
            for record in records:
                value = getattr(record, field, "") or ""
                if value.casefold() == target:
                    return record
        return None

    async def resolve_id(self, name: str, scope: Optional[CancelScope] = None) -> str:
        """Return the id for ``name``.

        Values already shaped like an id come back unchanged without touching
        the cache or the API. Otherwise the complete entry is consulted, then
        the partial one.

        Under ``transparent_fetch`` a miss fetches more pages and writes them
        to the cache as a side effect: each page is saved to the partial entry
        and the collection is promoted to the complete entry once the last page
        arrives. With no cached data at all the whole collection is fetched;
        when resuming a partial entry fetching stops at the page holding the
        name.
        """
        trimmed = name.strip()
        if not trimmed:
            raise InvalidNameError(self.kind)
        if self.looks_like_id(trimmed):
            return trimmed

        target = self.normalize(trimmed)
        if not target:
            raise InvalidNameError(self.kind)

        found, records = self._store.load(self.key, self.schema)
        if found:
            hit = self.find(records, target)
            if hit is not None:
                return hit.id
            raise NameNotFoundError(self.kind, trimmed)

        state, records = self._store.load_partial(self.key, self.schema)
        records = list(records or [])
        if state is not None:
            hit = self.find(records, target)
            if hit is not None:
                return hit.id

        if self.policy is ResolvePolicy.EXPLICIT_REFRESH:
            if state is not None and state.complete:
                raise NameNotFoundError(self.kind, trimmed)
            raise CacheIncompleteError(self.kind, trimmed, len(records))

        return await self._fetch_until_found(trimmed, target, state, records, scope)

    async def _fetch_until_found(
        self,
        name: str,
        target: str,
        state: Optional[PartialState],
        records: Sequence[Any],
        scope: Optional[CancelScope],
    ) -> str:
        scope = scope or CancelScope()
        paginator = Paginator(
            self._store,
            self.key,
            self.schema,
            self._fetcher,
            self._page_size,
            items=records,
            cursor=state.next_cursor if state is not None else "",
            complete=state.complete if state is not None else False,
        )
        stop_on_match = state is not None

        if paginator.complete:
            paginator.finish()
        while not paginator.complete:
            page = await paginator.fetch_next(scope)
            if stop_on_match:
                hit = self.find(page, target)
                if hit is not None:
                    logger.info(
                        "Resolved %s %s after %s page(s)", self.kind, name, paginator.pages
                    )
                    return hit.id

        hit = self.find(paginator.items, target)
        if hit is not None:
            return hit.id
        logger.info("%s %s not found in %s cached items", self.kind, name, len(paginator.items))
        raise NameNotFoundError(self.kind, name)

    async def refresh_cache(self, scope: Optional[CancelScope] = None) -> None:
        """Drop the complete and partial entries.

        Under ``transparent_fetch`` the first page is fetched straight away so
        the next resolution starts from fresh data.
        """
        self._store.expire(self.key)
        self._store.expire_partial(self.key)
        if self.policy is ResolvePolicy.TRANSPARENT_FETCH:
            paginator = Paginator(
                self._store, self.key, self.schema, self._fetcher, self._page_size
            )
            await paginator.fetch_next(scope or CancelScope())


class ChannelResolver(CollectionResolver):
    kind = "channel"
    key = CACHE_KEY_CHANNELS
    schema = ChannelList
    prefix = "#"
    id_pattern = re.compile(r"^[CGD][A-Z0-9]+$")
    match_fields = ("name",)


UserLookup = Callable[[str], Awaitable[Any]]


class UserResolver(CollectionResolver):
    kind = "user"
    key = CACHE_KEY_USERS
    schema = UserList
    prefix = "@"
    id_pattern = re.compile(r"^[UW][A-Z0-9]+$")
    match_fields = ("name", "display_name", "real_name")

    def __init__(
        self,
        store: CacheStore,
        fetcher: Optional[PageFetcher] = None,
        policy: ResolvePolicy = ResolvePolicy.TRANSPARENT_FETCH,
        page_size: int = DEFAULT_PAGE_SIZE,
        lookup: Optional[UserLookup] = None,
    ) -> None:
        super().__init__(store, fetcher, policy, page_size)
        self._lookup = lookup

    async def display_name(self, user_id: str, scope: Optional[CancelScope] = None) -> str:
        """Return a human-friendly name for ``user_id``, or the id itself.

        Cached users (complete entry, then partial) answer directly. Unknown
        ids go to the single-user ``lookup``; when a complete entry exists the
        looked-up user is appended to it and the entry is saved again.
        """
        found, users = self._store.load(self.key, self.schema)
        if not found:
            _, users = self._store.load_partial(self.key, self.schema)
        users = list(users or [])
        for user in users:
            if user.id == user_id:
                return user.preferred_name

        if self._lookup is None:
            return user_id
        try:
            raw = await (scope or CancelScope()).run(self._lookup(user_id))
            user = validate_as(User, raw)
        except Exception as exc:
            logger.info("User lookup for %s failed: %s", user_id, exc)
            return user_id

        if found:
            users.append(user)
            self._store.save(self.key, users)
        return user.preferred_name
