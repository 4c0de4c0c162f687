from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import quote

import httpx

from loadhunter.core.metrics import MetricsRegistry
from loadhunter.schemas.loads import Coordinates, GeocodeCacheEntry
from loadhunter.services.downstream import BackgroundDispatcher
from loadhunter.services.repository import RepositoryError

logger = logging.getLogger(__name__)

GEOCODE_FAILURE_CODES = (
    "missing_credentials",
    "missing_input",
    "http_error",
    "empty_result",
    "timeout",
    "transport_error",
    "cache_error",
)


class GeocodingError(Exception):
    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


@dataclass(slots=True)
class GeocodeResult:
    coordinates: Coordinates | None
    error_code: str | None = None
    cache_hit: bool = False

    @property
    def ok(self) -> bool:
        return self.coordinates is not None


def location_key(city: str, state: str) -> str:
    return f"{city.strip().lower()}, {state.strip().lower()}"


class MapboxGeocoder:
    def __init__(
        self,
        base_url: str,
        token: str | None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def forward(self, city: str, state: str) -> Coordinates:
        data = await self._query(f"{city}, {state}, USA", {"limit": 1})
        features = data.get("features") or []
        center = features[0].get("center") if features and isinstance(features[0], dict) else None
        if not isinstance(center, list) or len(center) < 2:
            raise GeocodingError("empty_result", f"no coordinates for {city}, {state}")
        return Coordinates(lat=float(center[1]), lng=float(center[0]))

    async def postcode(self, zip_code: str, state: str | None = None) -> tuple[str, str] | None:
        data = await self._query(f"{zip_code}, USA", {"types": "postcode", "limit": 1})
        features = data.get("features") or []
        if not features or not isinstance(features[0], dict):
            return None
        feature = features[0]
        city = ""
        found_state = state or ""
        for context in feature.get("context") or []:
            context_id = str(context.get("id") or "")
            if context_id.startswith("place.") and context.get("text"):
                city = str(context["text"])
            if context_id.startswith("region.") and context.get("short_code"):
                found_state = str(context["short_code"]).replace("US-", "")
        place_name = feature.get("place_name")
        if not city and isinstance(place_name, str):
            parts = place_name.split(",")
            if len(parts) >= 2:
                city = parts[0].replace(zip_code, "").strip()
        if city and found_state:
            return city, found_state
        return None

    async def _query(self, search: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.token:
            raise GeocodingError("missing_credentials", "mapbox token is not configured")
        url = f"{self.base_url}/geocoding/v5/mapbox.places/{quote(search, safe='')}.json"
        query = {"access_token": self.token, **params}
        try:
            if self._client is not None:
                response = await self._client.get(url, params=query)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=query)
        except httpx.TimeoutException as exc:
            raise GeocodingError("timeout", str(exc)) from exc
        except httpx.HTTPError as exc:
            raise GeocodingError("transport_error", str(exc)) from exc
        if response.status_code >= 400:
            raise GeocodingError("http_error", f"mapbox returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise GeocodingError("http_error", "mapbox returned invalid json") from exc
        return payload if isinstance(payload, dict) else {}


class GeocodeCache:
    """Write-through cache in front of the geocoding provider."""

    def __init__(
        self,
        repository: Any,
        geocoder: MapboxGeocoder,
        *,
        dispatcher: BackgroundDispatcher | None = None,
        metrics: MetricsRegistry | None = None,
        timeout_seconds: float = 10.0,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.geocoder = geocoder
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def resolve(self, city: str | None, state: str | None) -> GeocodeResult:
        if not city or not city.strip() or not state or not state.strip():
            return self._failed("missing_input", city, state)
        try:
            result = await asyncio.wait_for(self._resolve(city, state), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return self._failed("timeout", city, state)
        except GeocodingError as exc:
            return self._failed(exc.code, city, state, detail=str(exc))
        self._count("hit" if result.cache_hit else "miss")
        return result

    async def resolve_city_from_zip(self, zip_code: str | None, state: str | None = None) -> tuple[str, str] | None:
        if not zip_code or not self.geocoder.configured:
            return None
        try:
            found = await asyncio.wait_for(self.geocoder.postcode(zip_code, state), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("zip lookup timed out zip=%s", zip_code)
            return None
        except GeocodingError as exc:
            logger.warning("zip lookup failed zip=%s code=%s", zip_code, exc.code)
            return None
        if found:
            logger.info("zip lookup resolved zip=%s city=%s state=%s", zip_code, found[0], found[1])
        return found

    async def _resolve(self, city: str, state: str) -> GeocodeResult:
        if not self.geocoder.configured:
            raise GeocodingError("missing_credentials")

        key = location_key(city, state)
        try:
            cached = await self.repository.get_geocode_cache(key)
        except RepositoryError as exc:
            raise GeocodingError("cache_error", str(exc)) from exc

        if cached is not None:
            self._schedule_hit_bump(key)
            logger.debug("geocode cache hit key=%s", key)
            return GeocodeResult(Coordinates(lat=float(cached.latitude), lng=float(cached.longitude)), cache_hit=True)

        coordinates = await self.geocoder.forward(city, state)
        entry = GeocodeCacheEntry(
            location_key=key,
            city=city.strip(),
            state=state.strip(),
            latitude=coordinates.lat,
            longitude=coordinates.lng,
            month_created=self._now().strftime("%Y-%m"),
        )
        try:
            await self.repository.upsert_geocode_cache(entry)
        except RepositoryError as exc:
            logger.warning("geocode cache write failed key=%s error=%s", key, exc)
        logger.debug("geocode cache miss stored key=%s", key)
        return GeocodeResult(coordinates)

    def _schedule_hit_bump(self, key: str) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.spawn(self.repository.bump_geocode_hit(key), name="geocode_hit_bump")

    def _failed(self, code: str, city: str | None, state: str | None, *, detail: str | None = None) -> GeocodeResult:
        logger.warning("geocode failed code=%s city=%s state=%s detail=%s", code, city, state, detail)
        self._count(code)
        return GeocodeResult(None, error_code=code)

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_geocode(result)
