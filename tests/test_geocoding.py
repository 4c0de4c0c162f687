from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
from asyncpg import exceptions as pg_exc

from loadhunter.core.metrics import MetricsRegistry
from loadhunter.schemas.loads import GeocodeCacheEntry
from loadhunter.services.downstream import BackgroundDispatcher
from loadhunter.services.geocoding import GeocodeCache, MapboxGeocoder, location_key
from loadhunter.services.repository import PostgresRepository, RepositoryError
from loadhunter.services.store import InMemoryRepository

MAPBOX_URL = "https://api.mapbox.com"
CREATED = datetime(2026, 1, 19, 12, 0, tzinfo=timezone.utc)


def _dallas(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"features": [{"center": [-96.797, 32.7767]}]})


def _cache(repository, handler, *, token: str | None = "pk.test", **kwargs) -> tuple[GeocodeCache, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    geocoder = MapboxGeocoder(MAPBOX_URL, token, client=client)
    return GeocodeCache(repository, geocoder, now=lambda: CREATED, **kwargs), client


def test_location_key_is_trimmed_and_lowercased() -> None:
    assert location_key(" Dallas ", "tx") == "dallas, tx"


def test_miss_then_hit_queries_provider_once() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return _dallas(request)

    async def scenario():
        repository = InMemoryRepository()
        dispatcher = BackgroundDispatcher()
        cache, client = _cache(repository, handler, dispatcher=dispatcher)
        async with client:
            first = await cache.resolve("Dallas", "TX")
            second = await cache.resolve(" dallas ", "tx")
        await dispatcher.drain(1.0)
        return repository, first, second

    repository, first, second = asyncio.run(scenario())

    assert len(requests) == 1
    assert requests[0].url.params["access_token"] == "pk.test"
    assert "mapbox.places" in requests[0].url.path
    assert first.ok and first.cache_hit is False
    assert second.ok and second.cache_hit is True
    assert (second.coordinates.lat, second.coordinates.lng) == (32.7767, -96.797)
    entry = repository.geocode_cache["dallas, tx"]
    assert entry.city == "Dallas"
    assert entry.month_created == "2026-01"
    assert entry.hit_count == 2


def _failure_code(handler, *, token: str | None = "pk.test", available: bool = True, city: str | None = "Dallas") -> str:
    async def scenario():
        repository = InMemoryRepository()
        repository.available = available
        cache, client = _cache(repository, handler, token=token)
        async with client:
            return await cache.resolve(city, "TX")

    result = asyncio.run(scenario())
    assert result.coordinates is None
    return result.error_code


def test_failures_map_to_error_codes() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"features": []})

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _failure_code(_dallas, token=None) == "missing_credentials"
    assert _failure_code(server_error) == "http_error"
    assert _failure_code(empty) == "empty_result"
    assert _failure_code(slow) == "timeout"
    assert _failure_code(refused) == "transport_error"
    assert _failure_code(_dallas, available=False) == "cache_error"
    assert _failure_code(_dallas, city="  ") == "missing_input"


def test_cache_write_failure_still_returns_coordinates() -> None:
    class ReadOnlyCache(InMemoryRepository):
        async def upsert_geocode_cache(self, entry: GeocodeCacheEntry) -> None:
            raise RepositoryError("read only")

    async def scenario():
        cache, client = _cache(ReadOnlyCache(), _dallas)
        async with client:
            return await cache.resolve("Dallas", "TX")

    result = asyncio.run(scenario())

    assert result.ok
    assert result.error_code is None


def test_lookups_are_counted_by_result() -> None:
    metrics = MetricsRegistry()

    async def scenario():
        cache, client = _cache(InMemoryRepository(), _dallas, metrics=metrics)
        async with client:
            await cache.resolve("Dallas", "TX")
            await cache.resolve("Dallas", "TX")
            await cache.resolve(None, "TX")

    asyncio.run(scenario())

    exposition = metrics.render_prometheus()
    assert b'loadhunter_geocode_lookups_total{result="miss"} 1.0' in exposition
    assert b'loadhunter_geocode_lookups_total{result="hit"} 1.0' in exposition
    assert b'loadhunter_geocode_lookups_total{result="missing_input"} 1.0' in exposition


def test_zip_lookup_reads_place_and_region_context() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["types"] == "postcode"
        return httpx.Response(
            200,
            json={
                "features": [
                    {
                        "place_name": "75201, Dallas, Texas, United States",
                        "context": [{"id": "place.42", "text": "Dallas"}, {"id": "region.7", "short_code": "US-TX"}],
                    }
                ]
            },
        )

    async def scenario():
        cache, client = _cache(InMemoryRepository(), handler)
        async with client:
            return await cache.resolve_city_from_zip("75201")

    assert asyncio.run(scenario()) == ("Dallas", "TX")


def test_zip_lookup_falls_back_to_place_name() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"features": [{"place_name": "Dallas, Texas 75201, United States"}]})

    async def scenario():
        cache, client = _cache(InMemoryRepository(), handler)
        async with client:
            return await cache.resolve_city_from_zip("75201", "TX")

    assert asyncio.run(scenario()) == ("Dallas", "TX")


def test_zip_lookup_without_token_is_skipped() -> None:
    async def scenario():
        cache, client = _cache(InMemoryRepository(), _dallas, token=None)
        async with client:
            return await cache.resolve_city_from_zip("75201")

    assert asyncio.run(scenario()) is None


class _BrokenCachePool:
    def __init__(self, *, read_error: Exception | None = None, write_error: Exception | None = None) -> None:
        self.read_error = read_error
        self.write_error = write_error
        self.writes = 0

    async def fetchrow(self, query: str, *args):
        if self.read_error is not None:
            raise self.read_error
        return None

    async def execute(self, query: str, *args) -> str:
        self.writes += 1
        if self.write_error is not None:
            raise self.write_error
        return "INSERT 0 1"


def _postgres_repository(pool: _BrokenCachePool) -> PostgresRepository:
    repository = PostgresRepository("postgresql://worker@db.test/loads", 1, 2)
    repository._pool = pool  # type: ignore[assignment]
    return repository


def test_postgres_cache_read_error_collapses_to_cache_error() -> None:
    pool = _BrokenCachePool(read_error=pg_exc.UndefinedTableError('relation "geocode_cache" does not exist'))

    async def scenario():
        cache, client = _cache(_postgres_repository(pool), _dallas)
        async with client:
            return await cache.resolve("Dallas", "TX")

    result = asyncio.run(scenario())

    assert result.coordinates is None
    assert result.error_code == "cache_error"


def test_postgres_cache_write_error_still_returns_coordinates() -> None:
    pool = _BrokenCachePool(write_error=pg_exc.ConnectionDoesNotExistError("connection was closed"))

    async def scenario():
        cache, client = _cache(_postgres_repository(pool), _dallas)
        async with client:
            return await cache.resolve("Dallas", "TX")

    result = asyncio.run(scenario())

    assert result.ok
    assert (result.coordinates.lat, result.coordinates.lng) == (32.7767, -96.797)
    assert pool.writes == 1
