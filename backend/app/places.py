from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx

from .logging_config import get_logger
from .metrics import places_requests_total, places_results_returned
from .normalizer import QueryNormalizer
from .schemas import DerivedPlace, PlacesResponse, SearchDescriptor
from .settings import Settings

logger = get_logger(__name__)

ACCEPTED_STATUSES = frozenset({"OK", "ZERO_RESULTS"})

MAPS_SEARCH_URL = "https://www.google.com/maps/search/?api=1&query={query}"
MAPS_DIRECTIONS_URL = "https://www.google.com/maps/dir/?api=1&destination={lat},{lng}"
MAPS_EMBED_URL = "https://www.google.com/maps/embed/v1/place?key={key}&q={lat},{lng}"

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"


class InvalidQueryError(ValueError):
    message = "query is required as string"


class PlacesNotConfigured(RuntimeError):
    message = "Google Maps API key is not configured"


class PlacesUpstreamError(RuntimeError):
    """The provider answered with a status other than OK / ZERO_RESULTS."""

    error = "Error from Google Places API"

    def __init__(self, status: str | None, message: str | None = None) -> None:
        super().__init__(f"Places API status {status}: {message}")
        self.status = status
        self.message = message


def build_search_query(descriptor: SearchDescriptor) -> str:
    parts = [descriptor.place_type, descriptor.query_text, descriptor.location_hint]
    return " ".join(part for part in parts if part).strip()


def format_coordinate(value: int | float) -> str:
    """Render a coordinate the way it arrived on the wire (no trailing ``.0``)."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coordinates(result: dict[str, Any]) -> tuple[int | float | None, int | float | None]:
    geometry = result.get("geometry")
    location = geometry.get("location") if isinstance(geometry, dict) else None
    if not isinstance(location, dict):
        return None, None
    lat = location.get("lat")
    lng = location.get("lng")
    if isinstance(lat, bool) or not isinstance(lat, int | float):
        lat = None
    if isinstance(lng, bool) or not isinstance(lng, int | float):
        lng = None
    return lat, lng


def derive_place(result: dict[str, Any], api_key: str) -> DerivedPlace:
    name = result.get("name")
    address = result.get("formatted_address")
    lat, lng = _coordinates(result)

    search_text = f"{name or ''} {address or ''}"
    maps_url = MAPS_SEARCH_URL.format(query=quote(search_text, safe=_URI_COMPONENT_SAFE))

    directions_url = None
    embed_url = None
    if lat is not None and lng is not None:
        lat_s, lng_s = format_coordinate(lat), format_coordinate(lng)
        directions_url = MAPS_DIRECTIONS_URL.format(lat=lat_s, lng=lng_s)
        embed_url = MAPS_EMBED_URL.format(key=api_key, lat=lat_s, lng=lng_s)

    return DerivedPlace(
        name=name,
        address=address,
        lat=lat,
        lng=lng,
        rating=result.get("rating"),
        user_ratings_total=result.get("user_ratings_total"),
        place_id=result.get("place_id"),
        google_maps_url=maps_url,
        directions_url=directions_url,
        map_embed_url=embed_url,
    )


class PlacesClient:
    """Google Places Text Search; one GET per call, no retries."""

    def __init__(
        self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.PLACES_TIMEOUT_SECONDS),
                transport=self._transport,
            )
        return self._client

    async def text_search(self, query: str) -> dict[str, Any]:
        client = self._get_client()
        resp = await client.get(
            self._settings.PLACES_TEXT_SEARCH_URL,
            params={"query": query, "key": self._settings.GOOGLE_MAPS_API_KEY},
        )
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("Places API returned a non-object body")
        return data

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class PlaceSearchService:
    """Raw query in, ResponsePayload out."""

    def __init__(
        self, settings: Settings, normalizer: QueryNormalizer, client: PlacesClient
    ) -> None:
        self._settings = settings
        self._normalizer = normalizer
        self._client = client

    async def handle(self, raw_query: Any) -> PlacesResponse:
        if not raw_query or not isinstance(raw_query, str):
            raise InvalidQueryError(InvalidQueryError.message)
        api_key = self._settings.GOOGLE_MAPS_API_KEY
        if not api_key:
            raise PlacesNotConfigured(PlacesNotConfigured.message)

        normalized = await self._normalizer.normalize_with_outcome(raw_query)
        descriptor = normalized.descriptor
        search_query = build_search_query(descriptor)

        data = await self._client.text_search(search_query)
        status = data.get("status")
        places_requests_total.labels(status=str(status)).inc()
        if status not in ACCEPTED_STATUSES:
            logger.warning(
                "places_upstream_error",
                status=status,
                error_message=data.get("error_message"),
            )
            raise PlacesUpstreamError(status, data.get("error_message"))

        results = data.get("results") or []
        places = [
            derive_place(result, api_key)
            for result in results[: self._settings.PLACES_MAX_RESULTS]
            if isinstance(result, dict)
        ]
        places_results_returned.observe(len(places))
        logger.info(
            "places_search_completed",
            normalization=normalized.outcome.value,
            provider_status=status,
            provider_results=len(results),
            count=len(places),
        )
        return PlacesResponse(
            original_query=raw_query,
            search_query=search_query,
            parsed=descriptor,
            count=len(places),
            places=places,
        )
