from __future__ import annotations

from urllib.parse import quote

import httpx


class StorageError(Exception):
    """Raised when the blob store cannot serve an object."""


class StorageNotFoundError(StorageError):
    """Raised when the referenced object does not exist."""


class StorageClient:
    def __init__(
        self,
        base_url: str,
        service_key: str | None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers: dict[str, str] = {}
        if service_key:
            self.headers = {
                "Authorization": f"Bearer {service_key}",
                "apikey": service_key,
            }
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def get(self, bucket: str, path: str) -> bytes:
        url = f"{self.base_url}/storage/v1/object/{quote(bucket)}/{quote(path.lstrip('/'))}"
        if self._client is not None:
            return await self._fetch(self._client, url)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._fetch(client, url)

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> bytes:
        try:
            response = await client.get(url, headers=self.headers)
        except httpx.HTTPError as exc:
            raise StorageError(f"blob fetch failed: {exc}") from exc
        if response.status_code == 404:
            raise StorageNotFoundError(f"blob not found: {url}")
        if response.status_code >= 400:
            raise StorageError(f"blob fetch failed with status {response.status_code}")
        return response.content
