import asyncio
from typing import List

import pytest

from conftest import ScriptedFetcher, channel, user
from slkcache.cancellation import CancelScope
from slkcache.errors import (
    CacheIncompleteError,
    InvalidNameError,
    NameNotFoundError,
    OperationCancelled,
    UpstreamFetchError,
)
from slkcache.models import Channel, User
from slkcache.resolver import ChannelResolver, ResolvePolicy, UserResolver


class ExplodingStore:
    def __getattr__(self, name):
        raise AssertionError(f"store.{name} should not be touched")


def _channel_resolver(store, fetcher=None, policy=ResolvePolicy.TRANSPARENT_FETCH):
    return ChannelResolver(store, fetcher=fetcher, policy=policy)


@pytest.mark.parametrize("value", ["C024BE91L", "  C024BE91L  ", "G0ABC", "D12345"])
def test_channel_ids_pass_through_without_cache_or_fetch(value):
    fetcher = ScriptedFetcher([])
    resolver = ChannelResolver(ExplodingStore(), fetcher=fetcher)

    assert asyncio.run(resolver.resolve_id(value)) == value.strip()
    assert fetcher.calls == []


@pytest.mark.parametrize("value", ["", "   ", "#"])
def test_empty_names_are_rejected(store, value):
    resolver = _channel_resolver(store, ScriptedFetcher([]))

    with pytest.raises(InvalidNameError):
        asyncio.run(resolver.resolve_id(value))


def test_transparent_fetch_from_empty_cache(store):
    fetcher = ScriptedFetcher(
        [
            ([channel("C1", "general")], "c1"),
            ([], ""),
        ]
    )
    resolver = _channel_resolver(store, fetcher)

    assert asyncio.run(resolver.resolve_id("general")) == "C1"

    assert len(fetcher.calls) == 2
    found, items = store.load("channels", List[Channel])
    assert found is True
    assert items == [channel("C1", "general")]
    assert store.load_partial("channels", List[Channel]) == (None, None)


def test_partial_cache_known_and_unknown_names(store):
    store.save_partial("channels", [channel("C1", "general")], "c1", False, 1)
    fetcher = ScriptedFetcher(
        [
            ([channel("C2", "random")], "c2"),
            ([channel("C3", "dev")], ""),
        ]
    )
    resolver = _channel_resolver(store, fetcher)

    assert asyncio.run(resolver.resolve_id("#general")) == "C1"
    assert fetcher.calls == []

    with pytest.raises(NameNotFoundError) as excinfo:
        asyncio.run(resolver.resolve_id("missing"))

    assert excinfo.value.name == "missing"
    assert [cursor for cursor, _ in fetcher.calls] == ["c1", "c2"]
    found, items = store.load("channels", List[Channel])
    assert found is True
    assert [c.id for c in items] == ["C1", "C2", "C3"]
    assert store.load_partial("channels", List[Channel]) == (None, None)


def test_resuming_partial_stops_at_page_with_match(store):
    store.save_partial("channels", [channel("C1", "general")], "c1", False, 1)
    fetcher = ScriptedFetcher(
        [
            ([channel("C2", "random")], "c2"),
            ([channel("C3", "dev")], ""),
        ]
    )
    resolver = _channel_resolver(store, fetcher)

    assert asyncio.run(resolver.resolve_id("RANDOM")) == "C2"

    assert fetcher.calls == [("c1", 200)]
    state, items = store.load_partial("channels", List[Channel])
    assert state.next_cursor == "c2"
    assert state.count == 2
    assert store.load("channels", List[Channel]) == (False, None)


def test_complete_cache_hit_is_case_insensitive(store):
    store.save("channels", [channel("C1", "General")])
    fetcher = ScriptedFetcher([])

    assert asyncio.run(_channel_resolver(store, fetcher).resolve_id("#gEnErAl")) == "C1"
    assert fetcher.calls == []


def test_complete_cache_miss_does_not_fetch(store):
    store.save("channels", [channel("C1", "general")])
    fetcher = ScriptedFetcher([])

    with pytest.raises(NameNotFoundError):
        asyncio.run(_channel_resolver(store, fetcher).resolve_id("nope"))
    assert fetcher.calls == []


def test_upstream_error_during_resolution_keeps_progress(store):
    fetcher = ScriptedFetcher([([channel("C1", "general")], "c1"), RuntimeError("503")])

    with pytest.raises(UpstreamFetchError):
        asyncio.run(_channel_resolver(store, fetcher).resolve_id("random"))

    state, items = store.load_partial("channels", List[Channel])
    assert state.next_cursor == "c1"
    assert items == [channel("C1", "general")]


def test_cancelled_resolution_keeps_progress(store):
    async def fetcher(cursor, limit):
        if not cursor:
            return [channel("C1", "general")], "c1"
        await asyncio.sleep(10)

    async def scenario():
        resolver = _channel_resolver(store, fetcher)
        await resolver.resolve_id("random", CancelScope(timeout=0.2))

    with pytest.raises(OperationCancelled):
        asyncio.run(scenario())

    state, items = store.load_partial("channels", List[Channel])
    assert state.next_cursor == "c1"
    assert items == [channel("C1", "general")]


def test_transparent_policy_needs_fetcher(store):
    with pytest.raises(ValueError):
        ChannelResolver(store)


def test_explicit_refresh_reports_incomplete_cache(store):
    store.save_partial(
        "channels", [channel("C1", "general"), channel("C2", "random")], "c2", False, 2
    )
    fetcher = ScriptedFetcher([])
    resolver = _channel_resolver(store, fetcher, ResolvePolicy.EXPLICIT_REFRESH)

    assert asyncio.run(resolver.resolve_id("random")) == "C2"
    with pytest.raises(CacheIncompleteError) as excinfo:
        asyncio.run(resolver.resolve_id("dev"))

    assert excinfo.value.cached_count == 2
    assert not isinstance(excinfo.value, NameNotFoundError)
    assert fetcher.calls == []


def test_explicit_refresh_with_no_cache(store):
    resolver = ChannelResolver(store, policy="explicit_refresh")

    with pytest.raises(CacheIncompleteError) as excinfo:
        asyncio.run(resolver.resolve_id("general"))
    assert excinfo.value.cached_count == 0


def test_explicit_refresh_with_exhausted_partial(store):
    store.save_partial("channels", [channel("C1", "general")], "", True, 1)
    resolver = ChannelResolver(store, policy=ResolvePolicy.EXPLICIT_REFRESH)

    with pytest.raises(NameNotFoundError):
        asyncio.run(resolver.resolve_id("dev"))


def test_refresh_cache_transparent_fetches_first_page(store):
    store.save("channels", [channel("C1", "stale")])
    fetcher = ScriptedFetcher([([channel("C7", "fresh")], "c1")])
    resolver = _channel_resolver(store, fetcher)

    asyncio.run(resolver.refresh_cache())

    assert store.load("channels", List[Channel]) == (False, None)
    state, items = store.load_partial("channels", List[Channel])
    assert state.next_cursor == "c1"
    assert items == [channel("C7", "fresh")]
    assert fetcher.calls == [("", 200)]


def test_refresh_cache_explicit_only_clears(store, cache_dir):
    store.save("channels", [])
    store.save_partial("channels", [], "c1", False, 0)
    resolver = ChannelResolver(store, policy=ResolvePolicy.EXPLICIT_REFRESH)

    asyncio.run(resolver.refresh_cache())

    assert list(cache_dir.iterdir()) == []


def test_user_resolution_matches_handle_then_display_and_real_name(store):
    store.save(
        "users",
        [
            user("U1", "ann", display_name="Annie", real_name="Ann Smith"),
            user("U2", "bob", display_name="ann"),
            user("U3", "carl", real_name="Carl Jones"),
        ],
    )
    resolver = UserResolver(store, policy=ResolvePolicy.EXPLICIT_REFRESH)

    assert asyncio.run(resolver.resolve_id("@ann")) == "U1"
    assert asyncio.run(resolver.resolve_id("annie")) == "U1"
    assert asyncio.run(resolver.resolve_id("@carl jones")) == "U3"
    assert asyncio.run(resolver.resolve_id("W0123")) == "W0123"


def test_display_name_from_cache(store):
    store.save("users", [user("U1", "ann", display_name="Annie"), user("U2", "bob")])
    resolver = UserResolver(store, policy=ResolvePolicy.EXPLICIT_REFRESH)

    assert asyncio.run(resolver.display_name("U1")) == "Annie"
    assert asyncio.run(resolver.display_name("U2")) == "bob"
    assert asyncio.run(resolver.display_name("U9")) == "U9"


def test_display_name_lookup_updates_complete_cache(store):
    store.save("users", [user("U1", "ann")])
    lookups = []

    async def lookup(user_id):
        lookups.append(user_id)
        return user(user_id, "zed", real_name="Zed Zulu")

    resolver = UserResolver(store, policy=ResolvePolicy.EXPLICIT_REFRESH, lookup=lookup)

    assert asyncio.run(resolver.display_name("U9")) == "Zed Zulu"
    assert asyncio.run(resolver.display_name("U9")) == "Zed Zulu"

    assert lookups == ["U9"]
    found, users = store.load("users", List[User])
    assert [u.id for u in users] == ["U1", "U9"]


def test_display_name_lookup_failure_falls_back_to_id(store):
    async def lookup(user_id):
        raise RuntimeError("user_not_found")

    resolver = UserResolver(store, policy=ResolvePolicy.EXPLICIT_REFRESH, lookup=lookup)

    assert asyncio.run(resolver.display_name("U404")) == "U404"
    assert store.load("users", List[User]) == (False, None)
