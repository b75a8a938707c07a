"""
Offline cache: generation-versioned, cache-aside request interception.
"""
from .core import (
    CachedResponse,
    CacheError,
    CacheRequest,
    LifecycleError,
    LifecycleState,
    NetworkError,
    RequestMode,
    ResponseType,
    network_error_response,
)
from .storage import (
    CacheStorage,
    CacheStore,
    DirectoryCacheStorage,
    MemoryCacheStorage,
)
from .network import Fetcher, RequestsFetcher
from .clients import ClientRegistry, ClientView
from .manager import (
    OfflineCacheManager,
    build_storage,
    create_cache_manager,
    get_cache_manager,
)

__all__ = [
    # Core types
    "CachedResponse",
    "CacheError",
    "CacheRequest",
    "LifecycleError",
    "LifecycleState",
    "NetworkError",
    "RequestMode",
    "ResponseType",
    "network_error_response",
    # Storage
    "CacheStorage",
    "CacheStore",
    "DirectoryCacheStorage",
    "MemoryCacheStorage",
    # Network
    "Fetcher",
    "RequestsFetcher",
    # Clients
    "ClientRegistry",
    "ClientView",
    # Manager
    "OfflineCacheManager",
    "build_storage",
    "create_cache_manager",
    "get_cache_manager",
]
