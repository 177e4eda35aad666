"""Best-effort fetch of token metadata documents."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"


class MetadataFetcher:
    """Fetches the JSON document a TokenCreated event points at.

    Any failure (timeout, non-200, invalid JSON, non-object body) is logged
    and reported as None; metadata never fails a sweep.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        ipfs_gateway: str = DEFAULT_IPFS_GATEWAY,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._ipfs_gateway = ipfs_gateway if ipfs_gateway.endswith("/") else ipfs_gateway + "/"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)

    def resolve_uri(self, uri: str) -> str | None:
        """Map a metadata URI to an HTTP(S) URL, or None if it is not fetchable."""
        uri = uri.strip()
        if uri.startswith("ipfs://"):
            path = uri[len("ipfs://") :]
            if path.startswith("ipfs/"):
                path = path[len("ipfs/") :]
            return self._ipfs_gateway + path if path else None
        if uri.startswith(("http://", "https://")):
            return uri
        return None

    async def fetch(self, uri: str) -> dict[str, Any] | None:
        url = self.resolve_uri(uri)
        if url is None:
            logger.warning("Skipping metadata fetch for unsupported uri=%r", uri)
            return None

        try:
            response = await self._client.get(url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to fetch token metadata uri=%s: %s", uri, e)
            return None

        if not isinstance(data, dict):
            logger.warning("Token metadata at uri=%s is not a JSON object", uri)
            return None
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
