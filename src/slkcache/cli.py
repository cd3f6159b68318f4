"""Operator commands: populate, inspect, clear the cache and resolve names."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional, Sequence, TextIO

from pydantic import ValidationError

from .cancellation import CancelScope
from .config import Settings
from .errors import EXIT_CONFIG, CacheIncompleteError, SlkCacheError, UpstreamFetchError
from .log_utils import configure_logging, logger
from .models import CacheStatus
from .populate import (
    CACHE_KEY_CHANNELS,
    CACHE_KEY_USERS,
    PopulateConfig,
    populate_channels,
    populate_users,
)
from .resolver import ChannelResolver, ResolvePolicy, UserResolver

TARGETS = (CACHE_KEY_CHANNELS, CACHE_KEY_USERS)


def _positive_int(value: str) -> int:
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError("value must be a positive integer")
    return ivalue


def _non_negative_float(value: str) -> float:
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError("value must be >= 0")
    return fvalue


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slk-cache",
        description="Manage the local Slack metadata cache and resolve names to ids.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging.")
    subparsers = parser.add_subparsers(dest="command", metavar="<command>", required=True)

    populate_cmd = subparsers.add_parser(
        "populate",
        help="Fetch channels or users page by page, resuming earlier progress.",
    )
    populate_cmd.add_argument("target", choices=TARGETS)
    populate_cmd.add_argument(
        "--all",
        dest="fetch_all",
        action="store_true",
        help="Keep fetching until complete (with a delay between pages).",
    )
    populate_cmd.add_argument("--page-size", type=_positive_int, default=None)
    populate_cmd.add_argument(
        "--page-delay",
        type=_non_negative_float,
        default=None,
        help="Seconds to wait between pages.",
    )
    populate_cmd.add_argument("--quiet", action="store_true", help="No progress output.")

    status_cmd = subparsers.add_parser("status", help="Show cache status.")
    status_cmd.add_argument("--json", action="store_true", help="Print JSON.")

    clear_cmd = subparsers.add_parser("clear", help="Remove cached data.")
    clear_cmd.add_argument("target", nargs="?", choices=TARGETS, default=None)

    resolve_cmd = subparsers.add_parser("resolve", help="Print the id for a channel or user name.")
    resolve_cmd.add_argument("kind", choices=("channel", "user"))
    resolve_cmd.add_argument("name")
    resolve_cmd.add_argument(
        "--refresh", action="store_true", help="Drop the cached collection first."
    )
    return parser


def _install_interrupt(scope: CancelScope) -> None:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, scope.cancel)


async def _populate(args: argparse.Namespace, settings: Settings, err: TextIO) -> int:
    timeout = settings.populate_all_timeout if args.fetch_all else settings.populate_timeout
    scope = CancelScope(timeout=timeout)
    _install_interrupt(scope)
    config = PopulateConfig(
        page_size=args.page_size or settings.page_size,
        page_delay=settings.page_delay if args.page_delay is None else args.page_delay,
        fetch_all=args.fetch_all,
        output=None if args.quiet else err,
    )
    store = settings.build_store()

    err.write(f"Populating {args.target} cache...\n")
    async with settings.build_client() as client:
        try:
            if args.target == CACHE_KEY_CHANNELS:
                result = await populate_channels(store, client.list_channels, config, scope)
            else:
                result = await populate_users(store, client.list_users, config, scope)
        except UpstreamFetchError as exc:
            if exc.result is not None:
                err.write(f"Progress saved: {exc.result.count} {args.target} cached.\n")
            raise

    state = "complete" if result.complete else "partial"
    err.write(f"\nResult: {result.count} {args.target} cached ({state})\n")
    if result.cancelled:
        err.write("Stopped early. Progress saved. Run again to continue.\n")
    elif not result.complete and result.next_cursor:
        err.write("Run again to continue fetching.\n")
    return 0


def _status_lines(items: Sequence[CacheStatus]) -> List[str]:
    lines = ["Cache Status", "============"]
    now = datetime.now(timezone.utc)
    for item in items:
        if not item.cached:
            lines.append(f"  {item.key}: not cached")
            continue
        state = "complete" if item.complete else "partial"
        if item.expired:
            state += " (expired)"
        age_minutes = 0
        if item.fetched_at is not None:
            age_minutes = int((now - item.fetched_at).total_seconds() // 60)
        lines.append(
            f"  {item.key}: {item.count} items ({state}, fetched {age_minutes}m ago)"
        )
        if not item.complete and item.next_cursor:
            lines.append(f"    next_cursor: {item.next_cursor[:20]}...")
    return lines


def _status(args: argparse.Namespace, settings: Settings, out: TextIO) -> int:
    store = settings.build_store()
    items = [store.get_status(key) for key in TARGETS]
    if args.json:
        payload = {"items": [item.model_dump(mode="json") for item in items]}
        out.write(json.dumps(payload, indent=2) + "\n")
    else:
        out.write("\n".join(_status_lines(items)) + "\n")
    return 0


def _clear(args: argparse.Namespace, settings: Settings, out: TextIO) -> int:
    store = settings.build_store()
    targets = [args.target] if args.target else list(TARGETS)
    for key in targets:
        store.expire(key)
        store.expire_partial(key)
        out.write(f"Cleared {key} cache\n")
    return 0


async def _resolve(args: argparse.Namespace, settings: Settings, out: TextIO) -> int:
    store = settings.build_store()
    scope = CancelScope(timeout=settings.populate_timeout)
    _install_interrupt(scope)
    async with settings.build_client() as client:
        if args.kind == "channel":
            resolver = ChannelResolver(
                store,
                fetcher=client.list_channels,
                policy=settings.resolve_policy,
                page_size=settings.page_size,
            )
        else:
            resolver = UserResolver(
                store,
                fetcher=client.list_users,
                policy=settings.resolve_policy,
                page_size=settings.page_size,
                lookup=client.get_user_info,
            )
        if args.refresh:
            await resolver.refresh_cache(scope)
        resolved = await resolver.resolve_id(args.name, scope)
    out.write(resolved + "\n")
    return 0


def _needs_token(args: argparse.Namespace, settings: Settings) -> bool:
    if args.command == "populate":
        return True
    if args.command == "resolve":
        return settings.resolve_policy is ResolvePolicy.TRANSPARENT_FETCH
    return False


def main(
    argv: Optional[Sequence[str]] = None,
    settings: Optional[Settings] = None,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
) -> int:
    out = out or sys.stdout
    err = err or sys.stderr
    args = build_parser().parse_args(argv)
    level = logging.WARNING
    if args.verbose > 1:
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    configure_logging(level)

    if settings is None:
        try:
            settings = Settings()
        except ValidationError as exc:
            err.write(f"error: invalid configuration: {exc}\n")
            return EXIT_CONFIG

    if _needs_token(args, settings) and not settings.user_token:
        err.write("error: SLACK_USER_TOKEN is not set\n")
        return EXIT_CONFIG

    try:
        if args.command == "populate":
            return asyncio.run(_populate(args, settings, err))
        if args.command == "status":
            return _status(args, settings, out)
        if args.command == "clear":
            return _clear(args, settings, out)
        return asyncio.run(_resolve(args, settings, out))
    except CacheIncompleteError as exc:
        err.write(f"error: {exc}\n")
        err.write(
            f"Run `slk-cache populate {exc.kind}s --all` to finish the cache, then retry.\n"
        )
        return exc.exit_code
    except SlkCacheError as exc:
        logger.debug("Command failed", exc_info=exc)
        err.write(f"error: {exc}\n")
        return exc.exit_code
