from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_PLACE_TYPE = "restaurant"


class SearchDescriptor(BaseModel):
    """Normalized form of a free-text query, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    query_text: str
    location_hint: str = ""
    place_type: str = DEFAULT_PLACE_TYPE

    @classmethod
    def naive(cls, raw_query: str) -> SearchDescriptor:
        """Treat the whole query as a restaurant search."""
        return cls(query_text=raw_query, location_hint="", place_type=DEFAULT_PLACE_TYPE)


class DerivedPlace(BaseModel):
    name: str | None = None
    address: str | None = None
    lat: int | float | None = None
    lng: int | float | None = None
    rating: float | None = None
    user_ratings_total: int | None = None
    place_id: str | None = None
    google_maps_url: str
    directions_url: str | None = None
    map_embed_url: str | None = None


class PlacesResponse(BaseModel):
    original_query: str
    search_query: str
    parsed: SearchDescriptor
    count: int
    places: list[DerivedPlace] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str


class UpstreamErrorResponse(ErrorResponse):
    status: str | None = None
    message: str | None = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    service: str
    timestamp: str
    checks: dict[str, str] = Field(default_factory=dict)
