from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from ...logging_config import get_logger
from ...places import (
    InvalidQueryError,
    PlaceSearchService,
    PlacesNotConfigured,
    PlacesUpstreamError,
)
from ...schemas import ErrorResponse, PlacesResponse, UpstreamErrorResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["places"])

INTERNAL_ERROR = "Internal server error"


async def _read_query(request: Request) -> Any:
    """Return ``body["query"]``; a missing or malformed JSON body yields None."""
    try:
        body = await request.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    return body.get("query")


def _error(status_code: int, payload: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=payload)


@router.post(
    "/places",
    response_model=PlacesResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or non-string query"},
        500: {"model": ErrorResponse, "description": "Missing API key or internal failure"},
        502: {"model": UpstreamErrorResponse, "description": "Places API rejected the search"},
    },
    summary="Search places from a free-text query",
)
async def search_places(request: Request):
    service: PlaceSearchService = request.app.state.place_search
    try:
        query = await _read_query(request)
        return await service.handle(query)
    except InvalidQueryError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, {"error": exc.message})
    except PlacesNotConfigured as exc:
        logger.error("places_not_configured")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": exc.message})
    except PlacesUpstreamError as exc:
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            {"error": exc.error, "status": exc.status, "message": exc.message},
        )
    except Exception:
        logger.exception("places_search_failed")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, {"error": INTERNAL_ERROR})


__all__ = ["router"]
