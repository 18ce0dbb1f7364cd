"""
Event schema validation.

Turns a raw submission into a validated Event, or a list of field-level
errors. No writes happen here.

Key behaviors:
- Kind must be one of the closed EventKind set
- Per-kind required payload fields are enforced
- Numeric fields must be finite
- Wire keys may be camelCase or snake_case; unknown payload keys land in `extra`
- Timestamps accept ISO 8601 or Unix seconds/milliseconds, bounded by age limits
- All violations are reported, not just the first
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from src.core.entities import DeviceInfo, Event, EventKind, EventPayload, GeoLocation

from .models import AnalyticsValidationError

# --- Configuration ---


@dataclass(frozen=True)
class IngestConfig:
    """Ingest validation limits."""

    max_timestamp_age_seconds: int = 7 * 24 * 3600
    max_timestamp_future_seconds: int = 300


DEFAULT_CONFIG = IngestConfig()

VALID_MILESTONES: frozenset[int] = frozenset({25, 50, 75, 100})

# Payload fields each kind must carry
REQUIRED_FIELDS: dict[EventKind, tuple[str, ...]] = {
    EventKind.VIDEO_COMPLETE: ("video_duration",),
    EventKind.VIDEO_PROGRESS_MILESTONE: ("video_milestone", "video_progress", "video_duration"),
    EventKind.LINK_CLICK: ("link_type",),
    EventKind.SOCIAL_MEDIA_CLICK: ("link_type", "link_url"),
    EventKind.PAGE_VIEW_DURATION: ("time_spent",),
    EventKind.DOCUMENT_VIEW: ("document_url",),
    EventKind.DOCUMENT_DOWNLOAD: ("document_url",),
}

# Short wire names used by the landing page client
PAYLOAD_ALIASES: dict[str, str] = {
    "platform": "link_type",
    "url": "link_url",
    "milestone": "video_milestone",
    "progress": "video_progress",
    "duration": "video_duration",
    "device_info": "device",
    "location_data": "location",
}

FLOAT_FIELDS: frozenset[str] = frozenset(
    {"video_progress", "video_duration", "time_spent", "load_time"}
)
STRING_FIELDS: frozenset[str] = frozenset(
    {
        "video_id",
        "video_url",
        "link_type",
        "link_url",
        "document_url",
        "error_type",
        "error_message",
        "referrer",
        "user_agent",
        "ip_address",
    }
)
BOOL_FIELDS: frozenset[str] = frozenset({"has_design", "has_video"})

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


@dataclass(frozen=True)
class ValidatedEvent:
    """Validated submission, ready for dedupe and append."""

    event: Event
    identity_ref: str


# --- Helpers ---


def to_snake(name: str) -> str:
    """Normalize a camelCase wire key to snake_case."""
    return _CAMEL_RE.sub("_", name).lower()


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Snake-case every top-level key. Snake keys win over camel duplicates."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        snake = to_snake(key)
        if snake in result and snake == key:
            result[snake] = value
        elif snake not in result:
            result[snake] = value
    return result


def parse_number(
    value: Any, field_name: str
) -> tuple[float | None, list[AnalyticsValidationError]]:
    """Parse a finite number (numeric strings allowed)."""
    if isinstance(value, bool):
        return None, [
            AnalyticsValidationError(
                code="invalid_number",
                message=f"Field '{field_name}' must be a number",
                field_name=field_name,
            )
        ]

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None, [
                AnalyticsValidationError(
                    code="invalid_number",
                    message=f"Field '{field_name}' must be a number",
                    field_name=field_name,
                )
            ]
    else:
        return None, [
            AnalyticsValidationError(
                code="invalid_number",
                message=f"Field '{field_name}' must be a number",
                field_name=field_name,
            )
        ]

    if not math.isfinite(number):
        return None, [
            AnalyticsValidationError(
                code="not_finite",
                message=f"Field '{field_name}' must be a finite number",
                field_name=field_name,
            )
        ]

    return number, []


def parse_uuid(value: Any, field_name: str) -> tuple[UUID | None, list[AnalyticsValidationError]]:
    """Parse and validate UUID field."""
    if value is None:
        return None, []

    if isinstance(value, UUID):
        return value, []

    if isinstance(value, str):
        try:
            return UUID(value), []
        except ValueError:
            pass

    return None, [
        AnalyticsValidationError(
            code="invalid_uuid",
            message=f"Field '{field_name}' must be a valid UUID",
            field_name=field_name,
        )
    ]


def validate_timestamp(
    ts: Any,
    now: datetime,
    config: IngestConfig = DEFAULT_CONFIG,
) -> tuple[datetime | None, list[AnalyticsValidationError]]:
    """Validate and parse timestamp. Missing means server time."""
    errors: list[AnalyticsValidationError] = []

    if ts is None:
        return now, []

    parsed: datetime | None = None

    if isinstance(ts, datetime):
        parsed = ts
    elif isinstance(ts, str):
        try:
            parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        except ValueError:
            errors.append(
                AnalyticsValidationError(
                    code="invalid_timestamp",
                    message="Timestamp must be ISO 8601 format",
                    field_name="occurred_at",
                )
            )
            return None, errors
    elif isinstance(ts, (int, float)) and not isinstance(ts, bool):
        try:
            # Unix timestamp (seconds or milliseconds)
            if ts > 1e12:
                parsed = datetime.fromtimestamp(ts / 1000, tz=UTC)
            else:
                parsed = datetime.fromtimestamp(ts, tz=UTC)
        except (ValueError, OSError, OverflowError):
            errors.append(
                AnalyticsValidationError(
                    code="invalid_timestamp",
                    message="Invalid Unix timestamp",
                    field_name="occurred_at",
                )
            )
            return None, errors
    else:
        errors.append(
            AnalyticsValidationError(
                code="invalid_timestamp",
                message="Timestamp must be ISO string or Unix timestamp",
                field_name="occurred_at",
            )
        )
        return None, errors

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    else:
        parsed = parsed.astimezone(UTC)

    age = (now - parsed).total_seconds()
    if age > config.max_timestamp_age_seconds:
        errors.append(
            AnalyticsValidationError(
                code="timestamp_too_old",
                message=f"Timestamp is too old (max {config.max_timestamp_age_seconds}s)",
                field_name="occurred_at",
            )
        )
    elif age < -config.max_timestamp_future_seconds:
        max_future = config.max_timestamp_future_seconds
        errors.append(
            AnalyticsValidationError(
                code="timestamp_in_future",
                message=f"Timestamp is too far in future (max {max_future}s)",
                field_name="occurred_at",
            )
        )

    return parsed, errors


def validate_kind(kind: Any) -> tuple[EventKind | None, list[AnalyticsValidationError]]:
    if kind is None or kind == "":
        return None, [
            AnalyticsValidationError(
                code="kind_required",
                message="Event kind is required",
                field_name="kind",
            )
        ]

    try:
        return EventKind(kind), []
    except ValueError:
        allowed = ", ".join(k.value for k in EventKind)
        return None, [
            AnalyticsValidationError(
                code="invalid_kind",
                message=f"Event kind '{kind}' is not allowed (one of: {allowed})",
                field_name="kind",
            )
        ]


def _validate_location(
    raw: Any,
) -> tuple[GeoLocation | None, list[AnalyticsValidationError]]:
    if raw is None:
        return None, []
    if not isinstance(raw, dict):
        return None, [
            AnalyticsValidationError(
                code="invalid_type",
                message="Location must be an object",
                field_name="payload.location",
            )
        ]

    errors: list[AnalyticsValidationError] = []
    values: dict[str, Any] = {}

    for key, bound in (("latitude", 90.0), ("longitude", 180.0)):
        value = raw.get(key)
        if value is None:
            continue
        number, errs = parse_number(value, f"payload.location.{key}")
        if errs:
            errors.extend(errs)
        elif number is not None and abs(number) > bound:
            errors.append(
                AnalyticsValidationError(
                    code="out_of_range",
                    message=f"Field '{key}' must be between -{bound:g} and {bound:g}",
                    field_name=f"payload.location.{key}",
                )
            )
        else:
            values[key] = number

    for key in ("village", "city", "state", "country"):
        value = raw.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            errors.append(
                AnalyticsValidationError(
                    code="invalid_type",
                    message=f"Field '{key}' must be a string",
                    field_name=f"payload.location.{key}",
                )
            )
        else:
            values[key] = value

    if errors:
        return None, errors
    return GeoLocation(**values), []


def _validate_device(raw: Any) -> tuple[DeviceInfo | None, list[AnalyticsValidationError]]:
    if raw is None:
        return None, []
    if not isinstance(raw, dict):
        return None, [
            AnalyticsValidationError(
                code="invalid_type",
                message="Device must be an object",
                field_name="payload.device",
            )
        ]

    errors: list[AnalyticsValidationError] = []
    values: dict[str, Any] = {}
    for key in ("type", "browser", "os"):
        value = raw.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            errors.append(
                AnalyticsValidationError(
                    code="invalid_type",
                    message=f"Field '{key}' must be a string",
                    field_name=f"payload.device.{key}",
                )
            )
        else:
            values[key] = value

    if errors:
        return None, errors
    return DeviceInfo(**values), []


# --- Payload ---


def validate_payload(
    kind: EventKind,
    raw_payload: Any,
) -> tuple[EventPayload | None, list[AnalyticsValidationError]]:
    """
    Validate the kind-specific payload.

    Returns (payload, errors); payload is None when any error was found.
    """
    if raw_payload is None:
        raw_payload = {}
    if not isinstance(raw_payload, dict):
        return None, [
            AnalyticsValidationError(
                code="invalid_type",
                message="Payload must be an object",
                field_name="payload",
            )
        ]

    errors: list[AnalyticsValidationError] = []
    values: dict[str, Any] = {}
    extra: dict[str, Any] = {}

    for key, value in normalize_keys(raw_payload).items():
        name = PAYLOAD_ALIASES.get(key, key)
        if name in values:
            continue
        field_name = f"payload.{name}"

        if value is None:
            continue

        if name == "location":
            location, errs = _validate_location(value)
            errors.extend(errs)
            values[name] = location
        elif name == "device":
            device, errs = _validate_device(value)
            errors.extend(errs)
            values[name] = device
        elif name in FLOAT_FIELDS:
            number, errs = parse_number(value, field_name)
            errors.extend(errs)
            if number is not None and number < 0 and name == "time_spent":
                errors.append(
                    AnalyticsValidationError(
                        code="out_of_range",
                        message="Time spent cannot be negative",
                        field_name=field_name,
                    )
                )
            values[name] = number
        elif name == "video_milestone":
            number, errs = parse_number(value, field_name)
            errors.extend(errs)
            if number is not None:
                if number.is_integer() and int(number) in VALID_MILESTONES:
                    values[name] = int(number)
                else:
                    errors.append(
                        AnalyticsValidationError(
                            code="invalid_milestone",
                            message="Milestone must be one of 25, 50, 75, 100",
                            field_name=field_name,
                        )
                    )
        elif name == "video_index":
            number, errs = parse_number(value, field_name)
            errors.extend(errs)
            if number is not None:
                if number.is_integer() and number >= 0:
                    values[name] = int(number)
                else:
                    errors.append(
                        AnalyticsValidationError(
                            code="invalid_index",
                            message="Video index must be a non-negative integer",
                            field_name=field_name,
                        )
                    )
        elif name in STRING_FIELDS:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            if not isinstance(value, str):
                errors.append(
                    AnalyticsValidationError(
                        code="invalid_type",
                        message=f"Field '{name}' must be a string",
                        field_name=field_name,
                    )
                )
            elif value:
                values[name] = value
        elif name in BOOL_FIELDS:
            if not isinstance(value, bool):
                errors.append(
                    AnalyticsValidationError(
                        code="invalid_type",
                        message=f"Field '{name}' must be a boolean",
                        field_name=field_name,
                    )
                )
            else:
                values[name] = value
        else:
            extra[key] = value

    for required in REQUIRED_FIELDS.get(kind, ()):
        already_failed = any(e.field_name == f"payload.{required}" for e in errors)
        if values.get(required) is None and not already_failed:
            errors.append(
                AnalyticsValidationError(
                    code="field_required",
                    message=f"Field '{required}' is required for {kind.value} events",
                    field_name=f"payload.{required}",
                )
            )

    if errors:
        return None, errors

    return EventPayload(**values, extra=extra), []


# --- Event ---


def _optional_string(
    data: dict[str, Any], key: str
) -> tuple[str | None, list[AnalyticsValidationError]]:
    value = data.get(key)
    if value is None or value == "":
        return None, []
    if isinstance(value, str):
        return value, []
    return None, [
        AnalyticsValidationError(
            code="invalid_type",
            message=f"Field '{key}' must be a string",
            field_name=key,
        )
    ]


def validate_event(
    data: Any,
    now: datetime,
    config: IngestConfig = DEFAULT_CONFIG,
) -> tuple[ValidatedEvent | None, list[AnalyticsValidationError]]:
    """
    Validate a raw event submission.

    Accepted keys (camelCase or snake_case): identityId, scopeId, kind,
    payload, sessionId, occurredAt, eventId.

    Returns:
        Tuple of (validated, errors). validated is None if any error occurred.
    """
    if not isinstance(data, dict):
        return None, [
            AnalyticsValidationError(
                code="invalid_type",
                message="Event must be an object",
            )
        ]

    errors: list[AnalyticsValidationError] = []
    fields = normalize_keys(data)

    identity_ref = fields.get("identity_id")
    if isinstance(identity_ref, str):
        identity_ref = identity_ref.strip()
    if not identity_ref or not isinstance(identity_ref, str):
        errors.append(
            AnalyticsValidationError(
                code="identity_required",
                message="identity_id is required",
                field_name="identity_id",
            )
        )

    scope_id, errs = _optional_string(fields, "scope_id")
    errors.extend(errs)

    session_id, errs = _optional_string(fields, "session_id")
    errors.extend(errs)

    kind, errs = validate_kind(fields.get("kind"))
    errors.extend(errs)

    payload: EventPayload | None = None
    if kind is not None:
        payload, errs = validate_payload(kind, fields.get("payload"))
        errors.extend(errs)

    occurred_at, errs = validate_timestamp(fields.get("occurred_at"), now, config)
    errors.extend(errs)

    event_id, errs = parse_uuid(fields.get("event_id"), "event_id")
    errors.extend(errs)

    if errors:
        return None, errors

    assert kind is not None and payload is not None and isinstance(identity_ref, str)

    event_kwargs: dict[str, Any] = {
        "identity_id": identity_ref,
        "scope_id": scope_id,
        "kind": kind,
        "payload": payload,
        "session_id": session_id,
        "occurred_at": occurred_at or now,
    }
    if event_id is not None:
        event_kwargs["id"] = event_id

    return ValidatedEvent(event=Event(**event_kwargs), identity_ref=identity_ref), []
