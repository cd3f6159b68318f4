"""Exception types raised by the cache, populator and resolvers."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .populate import PopulateResult

EXIT_GENERAL = 1
EXIT_CONFIG = 2
EXIT_RATE_LIMIT = 4
EXIT_NETWORK = 5
EXIT_NOT_FOUND = 7


class SlkCacheError(Exception):
    """Base class for every error raised by this package."""

    exit_code = EXIT_GENERAL


class InvalidKey(SlkCacheError, ValueError):
    """Cache key is empty or would escape the cache directory."""


class CacheStoreError(SlkCacheError):
    """A cache file could not be read, written, renamed or removed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class OperationCancelled(SlkCacheError):
    """A deadline or interrupt fired while waiting on a page or a pacing delay."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(f"operation {reason}")
        self.reason = reason


class UpstreamFetchError(SlkCacheError):
    """A page fetch failed; progress up to the failing page is already persisted."""

    def __init__(
        self,
        key: str,
        page: int,
        result: Optional["PopulateResult"] = None,
    ) -> None:
        super().__init__(f"fetch {key} page {page} failed")
        self.key = key
        self.page = page
        self.result = result

    def __str__(self) -> str:
        message = super().__str__()
        if self.__cause__ is not None:
            return f"{message}: {self.__cause__}"
        return message

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        cause = self.__cause__
        if isinstance(cause, SlkCacheError):
            return cause.exit_code
        return EXIT_GENERAL


class ResolveError(SlkCacheError):
    """Base class for name resolution failures."""


class InvalidNameError(ResolveError, ValueError):
    """The name to resolve was empty after trimming."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"{kind} is required")
        self.kind = kind


class NameNotFoundError(ResolveError):
    """The name does not exist in the exhausted collection."""

    exit_code = EXIT_NOT_FOUND

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} {name} not found")
        self.kind = kind
        self.name = name


class CacheIncompleteError(ResolveError):
    """The name was not in the cache and the cache is not complete yet."""

    def __init__(self, kind: str, name: str, cached_count: int) -> None:
        super().__init__(
            f"{kind} {name} not in cache ({cached_count} cached, cache incomplete)"
        )
        self.kind = kind
        self.name = name
        self.cached_count = cached_count


class SlackAPIError(SlkCacheError):
    """The Slack Web API answered with an error."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"{method}: {error}")
        self.method = method
        self.error = error


class SlackConnectionError(SlackAPIError):
    """The Slack Web API could not be reached."""

    exit_code = EXIT_NETWORK


class RateLimitedError(SlackAPIError):
    """The Slack Web API answered HTTP 429."""

    exit_code = EXIT_RATE_LIMIT

    def __init__(self, method: str, retry_after: float) -> None:
        super().__init__(method, f"rate limited, retry after {retry_after:g}s")
        self.retry_after = retry_after
