# apps/workers/models.py
#
# Wire/data model for the engine. Everything serializes with camelCase keys
# (the shape the web client already syncs) and accepts snake_case on input.

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ReferenceKind = Literal["canonical_id", "handle", "custom_url"]
RunStatus = Literal["running", "published", "failed", "cancelled"]
ResolutionOutcome = Literal["passthrough", "resolved", "merged", "unresolved"]

# sourceAdapter values that are not real adapters
SOURCE_PASSTHROUGH = "passthrough"
SOURCE_REDIRECT = "redirect"
SOURCE_NONE = "none"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ChannelReference(_Model):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    kind: ReferenceKind
    value: str
    display_hint: Optional[str] = None


class ResolvedChannel(_Model):
    canonical_id: str
    title: str
    thumbnail_url: Optional[str] = None
    source_adapter: str
    resolved_at: datetime = Field(default_factory=utc_now)

    @property
    def is_placeholder(self) -> bool:
        return self.source_adapter == SOURCE_NONE


class Resolution(_Model):
    channel: ResolvedChannel
    outcome: ResolutionOutcome
    temp_id: Optional[str] = None  # synthetic id of the input reference, if any


class VideoItem(_Model):
    id: str
    title: str
    channel_id: str
    channel_title: str = ""
    published_at: datetime
    thumbnail_url: Optional[str] = None
    description: str = ""
    duration: Optional[int] = None  # seconds


class AggregateRun(_Model):
    run_id: str
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    status: RunStatus = "running"
    trigger: Optional[str] = None
    channels_requested: int = 0
    channels_succeeded: int = 0
    channels_failed: int = 0
    items_produced: int = 0
    quota_consumed: int = 0
    unresolved_channels: List[str] = Field(default_factory=list)
    transports_used: Dict[str, int] = Field(default_factory=dict)
    stale: bool = False
    error: Optional[str] = None


class CircuitState(_Model):
    state: Literal["closed", "open", "half_open"] = "closed"
    consecutive_failures: int = 0
    opened_at: Optional[float] = None


# ---------------------------------------------------------------------------
# sync document (subscriptions + settings + redirects)
# ---------------------------------------------------------------------------

class Subscription(_Model):
    # client fields we don't know about (favorites, tags, ...) ride along
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    is_muted: Optional[bool] = None


class SyncDocument(_Model):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    subscriptions: List[Subscription] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    redirects: Dict[str, str] = Field(default_factory=dict)
    last_synced_at: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
