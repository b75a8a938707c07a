"""
Network fetch capability for the offline cache.

Uses a requests.Session run in a worker thread so the cache manager can
await network I/O on the event loop without blocking it.
"""
import asyncio
import logging
from typing import Optional, Protocol

import requests

from .core import (
    CachedResponse,
    CacheRequest,
    NetworkError,
    RequestMode,
    ResponseType,
    origin_of,
)

logger = logging.getLogger("cache.network")


class Fetcher(Protocol):
    """Anything that can turn a CacheRequest into a response snapshot."""

    async def fetch(self, request: CacheRequest) -> CachedResponse:
        """
        Perform the request.

        Raises:
            NetworkError: The request could not complete (DNS, refused,
                timeout, ...). HTTP error statuses are NOT failures.
        """
        ...


def classify_response(request: CacheRequest, final_url: str, origin: str) -> ResponseType:
    """Decide basic/cors/opaque the way a browser would for this request."""
    if origin_of(final_url) == origin_of(origin):
        return ResponseType.BASIC
    if request.mode == RequestMode.NO_CORS:
        return ResponseType.OPAQUE
    return ResponseType.CORS


class RequestsFetcher:
    """
    Fetcher backed by requests.

    Relative request URLs are not supported; every CacheRequest carries an
    absolute URL.
    """

    def __init__(
        self,
        origin: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.origin = origin
        self.timeout = timeout
        self._session = session or requests.Session()

    def _fetch_sync(self, request: CacheRequest) -> CachedResponse:
        try:
            resp = self._session.request(
                request.method,
                request.url,
                headers=request.headers or None,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.RequestException as e:
            raise NetworkError(f"{request.method} {request.url} failed: {e}") from e

        response_type = classify_response(request, resp.url or request.url, self.origin)
        if response_type == ResponseType.OPAQUE:
            # Opaque responses expose neither status nor body
            return CachedResponse(status=0, type=ResponseType.OPAQUE, url=resp.url or request.url)

        return CachedResponse(
            status=resp.status_code,
            body=resp.content,
            headers=dict(resp.headers),
            type=response_type,
            url=resp.url or request.url,
        )

    async def fetch(self, request: CacheRequest) -> CachedResponse:
        logger.debug(f"Network fetch: {request.method} {request.url}")
        return await asyncio.to_thread(self._fetch_sync, request)

    def close(self) -> None:
        self._session.close()
