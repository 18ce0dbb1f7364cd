"""
AnalyticsDedupeService - Duplicate client fire suppression.

Clients fire the same engagement event more than once (double taps,
re-renders, retries). A short-window fingerprint guard drops the repeats
before they reach the event log.

Key behaviors:
- Fingerprint from identity, scope, kind and a per-kind disambiguator
- Dedupe within configurable TTL window (default 10s, per-kind overrides)
- Store `add` is an atomic "insert unless live" check
- Fail open: a store failure accepts the event
- release() forgets a fingerprint whose event could not be stored
- Expired entries are pruned while adding
- Privacy-preserving (no IP or user agent in the fingerprint)
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from src.core.entities import Event, EventKind
from src.core.ports.time import TimePort

logger = logging.getLogger(__name__)

# --- Configuration ---


@dataclass(frozen=True)
class DedupeConfig:
    """Deduplication configuration."""

    enabled: bool = True
    window_seconds: int = 10
    window_overrides: Mapping[str, int] = field(
        default_factory=lambda: {EventKind.VIDEO_PROGRESS_MILESTONE.value: 30}
    )

    def window_for(self, kind: EventKind) -> int:
        return int(self.window_overrides.get(kind.value, self.window_seconds))


DEFAULT_CONFIG = DedupeConfig()


# --- Fingerprint ---


def _video_ref(event: Event) -> str:
    payload = event.payload
    if payload.video_id:
        return payload.video_id
    if payload.video_index is not None:
        return f"#{payload.video_index}"
    return ""


def _session(event: Event) -> str:
    return event.session_id or ""


# Per-kind disambiguator: what makes two events of the same kind distinct
DISAMBIGUATORS: dict[EventKind, Callable[[Event], tuple[str, ...]]] = {
    EventKind.SCAN: lambda e: (_session(e),),
    EventKind.PAGE_VIEW: lambda e: (_session(e),),
    EventKind.PAGE_VIEW_DURATION: lambda e: (_session(e),),
    EventKind.AR_EXPERIENCE_START: lambda e: (_session(e),),
    EventKind.VIDEO_VIEW: lambda e: (_video_ref(e), _session(e)),
    EventKind.VIDEO_COMPLETE: lambda e: (_video_ref(e), _session(e)),
    EventKind.VIDEO_PROGRESS_MILESTONE: lambda e: (
        str(e.payload.video_milestone or ""),
        _video_ref(e),
    ),
    EventKind.LINK_CLICK: lambda e: (e.payload.link_type or "", e.payload.link_url or ""),
    EventKind.SOCIAL_MEDIA_CLICK: lambda e: (
        e.payload.link_type or "",
        e.payload.link_url or "",
    ),
    EventKind.DOCUMENT_VIEW: lambda e: (e.payload.document_url or "", _session(e)),
    EventKind.DOCUMENT_DOWNLOAD: lambda e: (e.payload.document_url or "", _session(e)),
    EventKind.AR_EXPERIENCE_ERROR: lambda e: (e.payload.error_type or "", _session(e)),
}


def generate_dedupe_key(event: Event) -> str:
    """
    Generate a dedupe fingerprint for an event.

    Does NOT include any PII (IP, user agent, etc.).
    """
    disambiguator = DISAMBIGUATORS.get(event.kind, lambda e: ())(event)
    parts = [
        event.identity_id,
        event.scope_id or "",
        event.kind.value,
        *disambiguator,
    ]
    key_string = "|".join(parts)
    return hashlib.sha256(key_string.encode()).hexdigest()[:32]


# --- Dedupe Store Protocol ---


class DedupeStorePort(Protocol):
    """Dedupe store interface."""

    def add(self, key: str, ttl_seconds: int) -> bool:
        """Add key with TTL unless a live entry exists. Returns True if added (new)."""
        ...

    def remove(self, key: str) -> None:
        """Drop a key so the next add is accepted."""
        ...

    def cleanup_expired(self) -> int:
        """Remove expired entries. Returns count removed."""
        ...


# --- In-Memory Dedupe Store ---


class InMemoryDedupeStore:
    """In-memory dedupe store for testing/dev."""

    def __init__(
        self,
        time_port: TimePort | None = None,
        sweep_interval_seconds: int = 60,
    ) -> None:
        self._entries: dict[str, datetime] = {}
        self._time = time_port
        self._lock = threading.Lock()
        self._sweep_interval = timedelta(seconds=sweep_interval_seconds)
        self._next_sweep = self._now() + self._sweep_interval

    def _now(self) -> datetime:
        if self._time is not None:
            return self._time.now_utc()
        return datetime.now(UTC)

    def exists(self, key: str) -> bool:
        """Check if key exists and not expired."""
        with self._lock:
            expires_at = self._entries.get(key)
            return expires_at is not None and self._now() < expires_at

    def add(self, key: str, ttl_seconds: int) -> bool:
        """Add key with TTL. Returns True if new."""
        with self._lock:
            now = self._now()
            if now >= self._next_sweep:
                self._drop_expired_locked(now)
                self._next_sweep = now + self._sweep_interval
            expires_at = self._entries.get(key)
            if expires_at is not None and now < expires_at:
                return False
            self._entries[key] = now + timedelta(seconds=ttl_seconds)
            return True

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _drop_expired_locked(self, now: datetime) -> int:
        expired = [k for k, v in self._entries.items() if now >= v]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def cleanup_expired(self) -> int:
        """Remove expired entries."""
        with self._lock:
            return self._drop_expired_locked(self._now())

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# --- Dedupe Result ---


@dataclass(frozen=True)
class DedupeResult:
    """Result of dedupe check."""

    accepted: bool
    fingerprint: str
    window_seconds: int
    store_failed: bool = False

    @property
    def is_duplicate(self) -> bool:
        return not self.accepted


# --- Dedupe Service ---


class DedupeService:
    """
    Deduplication service.

    Detects duplicate client fires within the kind's window.
    """

    def __init__(
        self,
        store: DedupeStorePort | None = None,
        config: DedupeConfig | None = None,
    ) -> None:
        """Initialize service."""
        self._store = store or InMemoryDedupeStore()
        self._config = config or DEFAULT_CONFIG

    @property
    def config(self) -> DedupeConfig:
        return self._config

    def should_accept(self, event: Event) -> DedupeResult:
        """
        Check the event's fingerprint and record it.

        Returns DedupeResult; accepted is False only for a live duplicate.
        """
        key = generate_dedupe_key(event)
        window = self._config.window_for(event.kind)

        if not self._config.enabled:
            return DedupeResult(accepted=True, fingerprint=key, window_seconds=window)

        try:
            is_new = self._store.add(key, window)
        except Exception:
            logger.warning(
                "Dedupe store unavailable, accepting %s event for %s",
                event.kind.value,
                event.identity_id,
                exc_info=True,
            )
            return DedupeResult(
                accepted=True,
                fingerprint=key,
                window_seconds=window,
                store_failed=True,
            )

        if not is_new:
            logger.info(
                "Duplicate %s event suppressed for %s (window %ss)",
                event.kind.value,
                event.identity_id,
                window,
            )

        return DedupeResult(accepted=is_new, fingerprint=key, window_seconds=window)

    def release(self, result: DedupeResult) -> None:
        """
        Forget a recorded fingerprint so a retry of the same event is accepted.

        Used when the event could not be stored after passing the guard.
        """
        if not self._config.enabled or result.store_failed or not result.accepted:
            return
        try:
            self._store.remove(result.fingerprint)
        except Exception:
            logger.warning(
                "Could not release dedupe fingerprint %s", result.fingerprint, exc_info=True
            )

    def cleanup(self) -> int:
        """Cleanup expired dedupe entries."""
        return self._store.cleanup_expired()


# --- Factory ---


def create_dedupe_service(
    store: DedupeStorePort | None = None,
    config: DedupeConfig | None = None,
) -> DedupeService:
    """Create a DedupeService."""
    return DedupeService(store=store, config=config)
