"""
Domain entities for the engagement analytics core.

- Event: immutable, append-only engagement event (system of record)
- RollupCounters: denormalized running totals (global + per scope)
- Identity / Scope: registry records the core reads to resolve ids

Invariants:
- Events are never mutated by the ingestion path
- Rollup counters are a read optimization; the event log is authoritative
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "DeviceInfo",
    "Event",
    "EventKind",
    "EventPayload",
    "GeoLocation",
    "Identity",
    "RollupCounters",
    "Scope",
]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EventKind(str, Enum):
    """Closed set of engagement event kinds."""

    SCAN = "scan"
    VIDEO_VIEW = "videoView"
    VIDEO_COMPLETE = "videoComplete"
    VIDEO_PROGRESS_MILESTONE = "videoProgressMilestone"
    LINK_CLICK = "linkClick"
    SOCIAL_MEDIA_CLICK = "socialMediaClick"
    PAGE_VIEW = "pageView"
    PAGE_VIEW_DURATION = "pageViewDuration"
    DOCUMENT_VIEW = "documentView"
    DOCUMENT_DOWNLOAD = "documentDownload"
    AR_EXPERIENCE_START = "arExperienceStart"
    AR_EXPERIENCE_ERROR = "arExperienceError"


# --- Payload ---


class GeoLocation(BaseModel):
    """Where the event happened (client reported)."""

    model_config = ConfigDict(frozen=True)

    latitude: float | None = None
    longitude: float | None = None
    village: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None


class DeviceInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str | None = None
    browser: str | None = None
    os: str | None = None


class EventPayload(BaseModel):
    """
    Kind-specific event details.

    Which fields are meaningful depends on the event kind; the validator
    enforces the required ones. Unrecognized fields are kept in `extra`.
    """

    model_config = ConfigDict(frozen=True)

    location: GeoLocation | None = None
    device: DeviceInfo | None = None

    # Video
    video_progress: float | None = None
    video_duration: float | None = None
    video_milestone: int | None = None
    video_id: str | None = None
    video_index: int | None = None
    video_url: str | None = None

    # Links / social
    link_type: str | None = None
    link_url: str | None = None

    # Timing
    time_spent: float | None = None

    # Documents
    document_url: str | None = None

    # AR experience
    load_time: float | None = None
    has_design: bool | None = None
    has_video: bool | None = None
    error_type: str | None = None
    error_message: str | None = None

    # Free text request context
    referrer: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None

    extra: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    """
    An accepted engagement event.

    Created once by the ingestion path and never updated.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    identity_id: str
    scope_id: str | None = None
    kind: EventKind
    payload: EventPayload = Field(default_factory=EventPayload)
    session_id: str | None = None
    occurred_at: datetime = Field(default_factory=_utcnow)


# --- Rollups ---


class RollupCounters(BaseModel):
    """Denormalized counters for one identity or one scope."""

    total_scans: int = 0
    video_views: int = 0
    video_completions: int = 0
    link_clicks: int = 0
    social_media_clicks: int = 0
    document_views: int = 0
    document_downloads: int = 0
    ar_experience_starts: int = 0

    last_scan_at: datetime | None = None
    last_video_view_at: datetime | None = None
    last_ar_experience_start_at: datetime | None = None


COUNTER_FIELDS: tuple[str, ...] = (
    "total_scans",
    "video_views",
    "video_completions",
    "link_clicks",
    "social_media_clicks",
    "document_views",
    "document_downloads",
    "ar_experience_starts",
)

TIMESTAMP_FIELDS: tuple[str, ...] = (
    "last_scan_at",
    "last_video_view_at",
    "last_ar_experience_start_at",
)


# --- Registry records ---


class Identity(BaseModel):
    """Account that owns events and the global rollup counters."""

    id: str
    username: str | None = None
    rollups: RollupCounters = Field(default_factory=RollupCounters)
    created_at: datetime = Field(default_factory=_utcnow)


class Scope(BaseModel):
    """Campaign/project under an identity, with its own counters."""

    identity_id: str
    scope_id: str
    name: str | None = None
    campaign_type: str | None = None
    rollups: RollupCounters = Field(default_factory=RollupCounters)
    created_at: datetime = Field(default_factory=_utcnow)
