"""
Analytics Ingestion API Routes.

Public endpoints that receive engagement events from campaign pages.

Status mapping:
- 202: event stored
- 200: duplicate of a recent event, nothing stored
- 400: validation failed (field errors in detail)
- 404: unknown identity or scope
- 503: event log unavailable, client should retry
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Response, status
from pydantic import BaseModel

from src.api.deps import get_ingestion_service
from src.components.analytics import (
    AnalyticsIngestionService,
    AnalyticsValidationError,
    EventLogWriteError,
    IngestOutput,
    NotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Response Models ---


class EventResponse(BaseModel):
    """Ingest outcome."""

    ok: bool = True
    accepted: bool
    duplicate: bool = False
    event_id: str | None = None


class ErrorResponse(BaseModel):
    """Error response."""

    ok: bool = False
    errors: list[dict[str, Any]]


def _error_items(errors: list[AnalyticsValidationError]) -> list[dict[str, Any]]:
    return [{"code": e.code, "message": e.message, "field": e.field_name} for e in errors]


def _not_found_item(error: NotFoundError) -> dict[str, Any]:
    return {"code": "not_found", "message": str(error), "field": None}


def _to_response(outcome: IngestOutput) -> EventResponse:
    return EventResponse(
        accepted=outcome.accepted,
        duplicate=outcome.duplicate,
        event_id=str(outcome.event.id) if outcome.accepted and outcome.event else None,
    )


# --- Routes ---


@router.post(
    "/event",
    response_model=EventResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        200: {"model": EventResponse, "description": "Duplicate suppressed"},
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        503: {"description": "Event log unavailable"},
    },
)
def ingest_event(
    response: Response,
    body: dict[str, Any] = Body(...),
    service: AnalyticsIngestionService = Depends(get_ingestion_service),
) -> EventResponse:
    """Ingest one engagement event."""
    try:
        outcome = service.ingest(body)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"ok": False, "errors": [_not_found_item(e)]},
        ) from e
    except EventLogWriteError as e:
        logger.error("Event log write failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event storage temporarily unavailable",
        ) from e

    if not outcome.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"ok": False, "errors": _error_items(outcome.errors)},
        )

    if outcome.duplicate:
        response.status_code = status.HTTP_200_OK

    return _to_response(outcome)


@router.post("/batch", response_model=dict[str, Any])
def ingest_batch(
    events: list[dict[str, Any]] = Body(...),
    service: AnalyticsIngestionService = Depends(get_ingestion_service),
) -> dict[str, Any]:
    """
    Ingest several events.

    Each event is handled independently; results are reported per index.
    """
    results: list[dict[str, Any]] = []
    for i, outcome in enumerate(service.ingest_batch(events)):
        if isinstance(outcome, NotFoundError):
            results.append({"index": i, "ok": False, "errors": [_not_found_item(outcome)]})
        elif isinstance(outcome, EventLogWriteError):
            results.append(
                {
                    "index": i,
                    "ok": False,
                    "errors": [{"code": "storage_unavailable", "message": str(outcome)}],
                }
            )
        elif isinstance(outcome, Exception):
            raise outcome
        elif not outcome.success:
            results.append({"index": i, "ok": False, "errors": _error_items(outcome.errors)})
        else:
            results.append({"index": i, **_to_response(outcome).model_dump()})

    return {
        "ok": all(r["ok"] for r in results),
        "results": results,
    }
