"""Pydantic models for on-disk cache entries and cached Slack records."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CacheEntry(BaseModel):
    """A timestamped snapshot of a complete collection."""

    fetched_at: datetime
    data: Any = None


class PartialCacheEntry(BaseModel):
    """A timestamped snapshot of an in-progress, cursor-paginated enumeration."""

    fetched_at: datetime
    next_cursor: str = ""
    complete: bool = False
    count: int = Field(default=0, ge=0)
    data: Any = None

    @model_validator(mode="after")
    def _complete_has_no_cursor(self) -> "PartialCacheEntry":
        if self.complete and self.next_cursor:
            raise ValueError("complete partial entry must not carry a cursor")
        return self


class PartialState(BaseModel):
    """Pagination state returned alongside partial data."""

    model_config = ConfigDict(frozen=True)

    fetched_at: datetime
    next_cursor: str = ""
    complete: bool = False
    count: int = 0


class CacheStatus(BaseModel):
    """Diagnostic view of a cache key, complete entry first then partial."""

    key: str
    cached: bool = False
    complete: bool = False
    count: int = 0
    fetched_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    next_cursor: str = ""
    expired: bool = False


class Channel(BaseModel):
    """Subset of a Slack conversation needed for name lookup and display."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    is_private: bool = False
    is_archived: bool = False
    num_members: int = 0

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Channel":
        return cls.model_validate(payload)


class User(BaseModel):
    """Subset of a Slack user profile needed for name lookup and display."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    real_name: str = ""
    display_name: str = ""
    is_bot: bool = False
    deleted: bool = False

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "User":
        profile = payload.get("profile") or {}
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            real_name=str(payload.get("real_name") or profile.get("real_name") or ""),
            display_name=str(profile.get("display_name") or ""),
            is_bot=bool(payload.get("is_bot")),
            deleted=bool(payload.get("deleted")),
        )

    @property
    def preferred_name(self) -> str:
        """Display name, then real name, then handle."""
        return self.display_name or self.real_name or self.name
