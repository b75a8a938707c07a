"""
Offline cache orchestration: install / activate / fetch lifecycle.

One OfflineCacheManager owns exactly one cache generation. The host
drives it through install() then activate(), after which every request
goes through handle_fetch() and is answered cache-first.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Set
from urllib.parse import urljoin

from config.settings import Settings, settings as default_settings

from .clients import ClientRegistry
from .core import (
    CachedResponse,
    CacheError,
    CacheRequest,
    LifecycleError,
    LifecycleState,
    NetworkError,
    ResponseType,
    network_error_response,
)
from .network import Fetcher, RequestsFetcher
from .storage import CacheStorage, DirectoryCacheStorage, MemoryCacheStorage

logger = logging.getLogger("cache.manager")


class OfflineCacheManager:
    """
    Cache-aside request interceptor with generation-based invalidation.

    - install(): create this generation's store and pre-cache the app shell
    - activate(): delete every other generation, claim open client views
    - handle_fetch(): serve same-origin GETs from cache, else network,
      writing successful basic responses back in the background

    Cached entries are served without any freshness check; a new
    generation replaces them wholesale.
    """

    def __init__(
        self,
        storage: CacheStorage,
        fetcher: Fetcher,
        generation: str,
        origin: str,
        precache_urls: Sequence[str] = ("/",),
        clients: Optional[ClientRegistry] = None,
    ):
        """
        Initialize the cache manager.

        Args:
            storage: Cache Store capability holding all generations
            fetcher: Network fetch capability
            generation: Name of the generation this manager owns
            origin: Origin whose requests are intercepted
            precache_urls: Paths (or absolute URLs) cached at install time
            clients: Registry of open client views to claim on activate
        """
        self.storage = storage
        self.fetcher = fetcher
        self.generation = generation
        self.origin = origin
        self.precache_urls = list(precache_urls)
        self.clients = clients or ClientRegistry()

        self.state = LifecycleState.UNINSTALLED
        self.skip_waiting = False
        # Created by activate() so it binds to the loop running the lifecycle
        self._activated: Optional[asyncio.Event] = None
        self._pending_writes: Set[asyncio.Task] = set()

        self._stats = {
            "hits": 0,
            "misses": 0,
            "passthrough": 0,
            "network_errors": 0,
            "fallbacks": 0,
            "writes": 0,
            "write_failures": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def install(self) -> List[str]:
        """
        Open this generation's store and pre-populate it.

        A resource that fails to download is logged and skipped; a partial
        cache still counts as installed.

        Returns:
            The precache URLs that were actually stored

        Raises:
            LifecycleError: If already installed
            CacheError: If the store itself cannot be opened
        """
        if self.state != LifecycleState.UNINSTALLED:
            raise LifecycleError(f"Cannot install from state {self.state.value}")

        self.state = LifecycleState.INSTALLING
        logger.info(f"Installing cache generation {self.generation}")

        try:
            store = await self.storage.open(self.generation)
        except Exception as e:
            self.state = LifecycleState.REDUNDANT
            logger.error(f"Could not open cache generation {self.generation}: {e}")
            raise CacheError(f"Install of {self.generation} failed: {e}") from e

        async def precache(url: str) -> bool:
            request = CacheRequest(url=self._absolute(url))
            try:
                response = await self.fetcher.fetch(request)
                if not response.ok:
                    raise NetworkError(f"status {response.status}")
                await store.put(request, response)
                return True
            except Exception as e:
                logger.warning(f"Precache skipped for {url}: {e}")
                return False

        results = await asyncio.gather(*(precache(url) for url in self.precache_urls))
        cached = [url for url, ok in zip(self.precache_urls, results) if ok]

        # Take over from any previous generation without waiting
        self.skip_waiting = True
        self.state = LifecycleState.INSTALLED
        logger.info(
            f"Installed {self.generation} "
            f"({len(cached)}/{len(self.precache_urls)} resources cached)"
        )
        return cached

    async def activate(self) -> List[str]:
        """
        Delete superseded generations and claim all open client views.

        Safe to call again once active; the second run finds nothing to delete.

        Returns:
            Names of the generations that were deleted

        Raises:
            LifecycleError: If install() has not completed
        """
        if self.state not in (LifecycleState.INSTALLED, LifecycleState.ACTIVE):
            raise LifecycleError(f"Cannot activate from state {self.state.value}")

        self._activated = asyncio.Event()
        self.state = LifecycleState.ACTIVATING
        logger.info(f"Activating cache generation {self.generation}")

        deleted: List[str] = []
        try:
            names = await self.storage.keys()
            stale = [name for name in names if name != self.generation]
            results = await asyncio.gather(
                *(self.storage.delete(name) for name in stale),
                return_exceptions=True,
            )
            for name, result in zip(stale, results):
                if isinstance(result, Exception):
                    logger.warning(f"Failed to delete old generation {name}: {result}")
                else:
                    deleted.append(name)
            self.clients.claim(self.generation)
        finally:
            self.state = LifecycleState.ACTIVE
            self._activated.set()

        if deleted:
            logger.info(f"Removed old cache generations: {', '.join(deleted)}")
        return deleted

    # =========================================================================
    # Fetch interception
    # =========================================================================

    async def handle_fetch(self, request: CacheRequest) -> Optional[CachedResponse]:
        """
        Answer a request from cache or network.

        Returns:
            The response to give the client, or None if the request is not
            intercepted and should go to the network untouched
        """
        if self.state == LifecycleState.ACTIVATING and self._activated is not None:
            await self._activated.wait()
        if self.state != LifecycleState.ACTIVE:
            self._stats["passthrough"] += 1
            return None

        if request.method.upper() != "GET":
            self._stats["passthrough"] += 1
            return None

        if not request.is_same_origin(self.origin):
            self._stats["passthrough"] += 1
            return None

        try:
            return await self._respond(request)
        except Exception as e:
            logger.error(f"Fetch failed for {request.key}: {e}")
            return await self._fallback(request)

    async def fetch(self, request: CacheRequest) -> CachedResponse:
        """Fetch as a client would: through the cache when intercepted."""
        response = await self.handle_fetch(request)
        if response is None:
            response = await self.fetcher.fetch(request)
        return response

    async def _respond(self, request: CacheRequest) -> CachedResponse:
        store = await self.storage.open(self.generation)

        cached = await store.match(request)
        if cached is not None:
            logger.debug(f"CACHE HIT: {request.key}")
            self._stats["hits"] += 1
            return cached

        logger.debug(f"CACHE MISS: {request.key}")
        self._stats["misses"] += 1

        try:
            response = await self.fetcher.fetch(request)
        except NetworkError:
            self._stats["network_errors"] += 1
            if request.is_navigation:
                root = await self._match_root()
                if root is not None:
                    self._stats["fallbacks"] += 1
                    return root
            raise

        if response.status != 200 or response.type != ResponseType.BASIC:
            return response

        self._schedule_write(request, response.clone())
        return response

    async def _fallback(self, request: CacheRequest) -> CachedResponse:
        if request.is_navigation:
            try:
                root = await self._match_root()
            except Exception as e:
                logger.warning(f"Cached root lookup failed: {e}")
                root = None
            if root is not None:
                self._stats["fallbacks"] += 1
                return root
        return network_error_response()

    async def _match_root(self) -> Optional[CachedResponse]:
        return await self.storage.match(CacheRequest(url=self._absolute("/")))

    # =========================================================================
    # Background writes
    # =========================================================================

    def _schedule_write(self, request: CacheRequest, response: CachedResponse) -> None:
        """Write to the store without delaying the response."""
        task = asyncio.create_task(self._write(request, response))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write(self, request: CacheRequest, response: CachedResponse) -> None:
        try:
            store = await self.storage.open(self.generation)
            await store.put(request, response)
            self._stats["writes"] += 1
        except Exception as e:
            self._stats["write_failures"] += 1
            logger.warning(f"Cache write failed for {request.key}: {e}")

    async def drain(self) -> None:
        """Wait for all in-flight background cache writes."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _absolute(self, url: str) -> str:
        return urljoin(self.origin.rstrip("/") + "/", url)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        served = self._stats["hits"] + self._stats["misses"]
        hit_rate = (self._stats["hits"] / served * 100) if served > 0 else 0
        return {
            "state": self.state.value,
            "generation": self.generation,
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "pending_writes": len(self._pending_writes),
        }


def build_storage(config: Settings) -> CacheStorage:
    """Create the storage backend selected by configuration."""
    if config.cache_backend == "disk":
        return DirectoryCacheStorage(config.cache_directory)
    if config.cache_backend != "memory":
        logger.warning(f"Unknown cache_backend {config.cache_backend!r}, using memory")
    return MemoryCacheStorage()


def create_cache_manager(config: Settings) -> OfflineCacheManager:
    """Wire an OfflineCacheManager from configuration."""
    return OfflineCacheManager(
        storage=build_storage(config),
        fetcher=RequestsFetcher(config.app_origin, timeout=config.request_timeout_seconds),
        generation=config.cache_generation,
        origin=config.app_origin,
        precache_urls=config.precache_urls,
    )


# Global cache manager instance
_cache_manager: Optional[OfflineCacheManager] = None


def get_cache_manager() -> OfflineCacheManager:
    """Get or create the global cache manager."""
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = create_cache_manager(default_settings)
    return _cache_manager
