"""Application configuration and defaults."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .cache import DEFAULT_TTL, PARTIAL_TTL, CacheStore, default_cache_dir
from .fetcher import DEFAULT_API_BASE, DEFAULT_HTTP_TIMEOUT, SlackClient
from .populate import DEFAULT_PAGE_DELAY, DEFAULT_PAGE_SIZE
from .resolver import ResolvePolicy

DEFAULT_POPULATE_TIMEOUT = 30.0
DEFAULT_POPULATE_ALL_TIMEOUT = 600.0


class Settings(BaseSettings):
    """Configuration loaded from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    cache_dir: Path = Field(default_factory=default_cache_dir, alias="SLK_CACHE_DIR")
    cache_ttl: timedelta = Field(default=DEFAULT_TTL, alias="SLK_CACHE_TTL")
    partial_ttl: timedelta = Field(default=PARTIAL_TTL, alias="SLK_PARTIAL_TTL")
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, alias="SLK_PAGE_SIZE", ge=1, le=1000)
    page_delay: float = Field(default=DEFAULT_PAGE_DELAY, alias="SLK_PAGE_DELAY", ge=0)
    populate_timeout: float = Field(
        default=DEFAULT_POPULATE_TIMEOUT, alias="SLK_POPULATE_TIMEOUT", gt=0
    )
    populate_all_timeout: float = Field(
        default=DEFAULT_POPULATE_ALL_TIMEOUT, alias="SLK_POPULATE_ALL_TIMEOUT", gt=0
    )
    api_base_url: str = Field(default=DEFAULT_API_BASE, alias="SLK_API_BASE_URL")
    user_token: str = Field(default="", alias="SLACK_USER_TOKEN")
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, alias="SLK_HTTP_TIMEOUT", gt=0)
    resolve_policy: ResolvePolicy = Field(
        default=ResolvePolicy.TRANSPARENT_FETCH, alias="SLK_RESOLVE_POLICY"
    )

    @field_validator("cache_ttl", "partial_ttl", mode="before")
    @classmethod
    def _seconds_to_timedelta(cls, value: Any) -> Any:
        """Plain numbers (as env vars deliver them) are seconds; ISO 8601 passes through."""
        if isinstance(value, str):
            try:
                return timedelta(seconds=float(value))
            except (ValueError, OverflowError):
                return value
        return value

    @model_validator(mode="after")
    def _check_ttls(self) -> "Settings":
        if self.cache_ttl <= timedelta(0) or self.partial_ttl <= timedelta(0):
            raise ValueError("cache TTLs must be positive")
        if self.partial_ttl > self.cache_ttl:
            raise ValueError("partial TTL must not exceed the cache TTL")
        return self

    def build_store(self) -> CacheStore:
        return CacheStore(self.cache_dir, ttl=self.cache_ttl, partial_ttl=self.partial_ttl)

    def build_client(self) -> SlackClient:
        return SlackClient(
            token=self.user_token,
            base_url=self.api_base_url,
            timeout=self.http_timeout,
        )
