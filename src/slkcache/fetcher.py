"""HTTP client for the Slack Web API pages the cache is built from."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import RateLimitedError, SlackAPIError, SlackConnectionError
from .log_utils import logger
from .models import Channel, User

DEFAULT_API_BASE = "https://slack.com/api"
DEFAULT_HTTP_TIMEOUT = 12.0
DEFAULT_RATE_LIMIT_RETRIES = 2


class SlackClient:
    """Fetches cursor-paginated channel and user pages from Slack.

    ``list_channels`` and ``list_users`` match the page fetcher signature
    ``(cursor, limit) -> (items, next_cursor)`` and can be handed to the
    populator and resolvers as bound methods.
    """

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        rate_limit_retries: int = DEFAULT_RATE_LIMIT_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )
        self._rate_limit_retries = max(0, rate_limit_retries)

    async def __aenter__(self) -> "SlackClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Call a Web API method, retrying after HTTP 429 up to the configured limit."""
        attempt = 0
        while True:
            try:
                return await self._call_once(method, params)
            except RateLimitedError as exc:
                if attempt >= self._rate_limit_retries:
                    raise
                attempt += 1
                logger.info(
                    "%s rate limited; retrying in %ss (attempt %s)",
                    method,
                    exc.retry_after,
                    attempt,
                )
                await asyncio.sleep(exc.retry_after)

    async def _call_once(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("Calling %s", method)
        try:
            response = await self._client.get(f"/{method}", params=params)
        except httpx.RequestError as exc:
            logger.error("Failed to reach Slack API", exc_info=exc)
            raise SlackConnectionError(method, str(exc) or type(exc).__name__) from exc

        if response.status_code == 429:
            raise RateLimitedError(method, _retry_after(response))
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Slack API returned non-200 status: %s",
                exc.response.status_code,
                exc_info=exc,
            )
            raise SlackAPIError(method, f"HTTP {exc.response.status_code}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise SlackAPIError(method, "invalid JSON response") from exc
        if not isinstance(data, dict):
            raise SlackAPIError(method, "unexpected response format")
        if not data.get("ok"):
            raise SlackAPIError(method, str(data.get("error") or "unknown_error"))
        return data

    async def list_channels(self, cursor: str, limit: int) -> Tuple[List[Channel], str]:
        """One page of public, non-archived channels."""
        params: Dict[str, Any] = {
            "limit": limit,
            "types": "public_channel",
            "exclude_archived": "true",
        }
        if cursor:
            params["cursor"] = cursor
        data = await self.call("conversations.list", params)
        channels = [Channel.from_api(item) for item in data.get("channels") or []]
        return channels, _next_cursor(data)

    async def list_users(self, cursor: str, limit: int) -> Tuple[List[User], str]:
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        data = await self.call("users.list", params)
        users = [User.from_api(item) for item in data.get("members") or []]
        return users, _next_cursor(data)

    async def get_user_info(self, user_id: str) -> User:
        data = await self.call("users.info", {"user": user_id})
        return User.from_api(data.get("user") or {})

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def _next_cursor(data: Dict[str, Any]) -> str:
    metadata = data.get("response_metadata") or {}
    return str(metadata.get("next_cursor") or "")


def _retry_after(response: httpx.Response) -> float:
    try:
        return max(0.0, float(response.headers.get("Retry-After", "1")))
    except ValueError:
        return 1.0
