"""
Core offline cache data structures.

Requests and responses are plain snapshots so they can be stored,
cloned, and compared without holding on to any live connection.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit


class LifecycleState(Enum):
    """States of one cache generation, driven by install/activate."""
    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    INSTALLED = "installed"     # Idle, waiting for activate
    ACTIVATING = "activating"
    ACTIVE = "active"           # Intercepting fetches
    REDUNDANT = "redundant"     # Install failed outright


class RequestMode(Enum):
    """How the client issued the request."""
    NAVIGATE = "navigate"       # Top-level document load
    SAME_ORIGIN = "same-origin"
    CORS = "cors"
    NO_CORS = "no-cors"


class ResponseType(Enum):
    """Response classification used to decide cacheability."""
    BASIC = "basic"     # Same-origin, fully readable
    CORS = "cors"       # Cross-origin, readable
    OPAQUE = "opaque"   # Cross-origin no-cors, unreadable
    ERROR = "error"


class CacheError(Exception):
    """Base class for offline cache failures."""


class LifecycleError(CacheError):
    """Raised when install/activate are called out of order."""


class NetworkError(CacheError):
    """Raised by a fetcher when the network request could not complete."""


_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """
    Normalize an absolute URL for use as a cache identity.

    Lower-cases scheme and host, drops default ports and the fragment.
    Path and query are kept exactly as given.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    netloc = host
    if parts.port is not None and parts.port != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{parts.port}"
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def origin_of(url: str) -> str:
    """Return 'scheme://host[:port]' for an absolute URL."""
    parts = urlsplit(normalize_url(url))
    return f"{parts.scheme}://{parts.netloc}"


@dataclass(frozen=True)
class CacheRequest:
    """A request as seen by the cache manager."""
    url: str
    method: str = "GET"
    mode: RequestMode = RequestMode.SAME_ORIGIN
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Request identity: method + normalized absolute URL."""
        return f"{self.method.upper()} {normalize_url(self.url)}"

    @property
    def is_navigation(self) -> bool:
        return self.mode == RequestMode.NAVIGATE

    def is_same_origin(self, origin: str) -> bool:
        return origin_of(self.url) == origin_of(origin)


@dataclass(frozen=True)
class CachedResponse:
    """
    Snapshot of an HTTP response.

    Entries are never mutated once written; refreshing an entry replaces
    the whole snapshot.
    """
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    type: ResponseType = ResponseType.BASIC
    url: str = ""
    stored_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def clone(self) -> "CachedResponse":
        """Independent copy suitable for writing to the store."""
        return replace(self, headers=dict(self.headers))

    def to_dict(self) -> dict:
        """Metadata for JSON persistence (body is stored separately)."""
        return {
            "status": self.status,
            "headers": self.headers,
            "type": self.type.value,
            "url": self.url,
            "storedAt": self.stored_at.isoformat() if self.stored_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict, body: bytes) -> "CachedResponse":
        stored_at = data.get("storedAt")
        return cls(
            status=data["status"],
            body=body,
            headers=dict(data.get("headers") or {}),
            type=ResponseType(data.get("type", ResponseType.BASIC.value)),
            url=data.get("url", ""),
            stored_at=datetime.fromisoformat(stored_at) if stored_at else None,
        )


# Returned when interception fails and no cached document can stand in
NETWORK_ERROR_STATUS = 408


def network_error_response() -> CachedResponse:
    """Synthesized response for a failed non-navigation request."""
    return CachedResponse(
        status=NETWORK_ERROR_STATUS,
        body=b"Network error",
        headers={"Content-Type": "text/plain"},
        type=ResponseType.ERROR,
    )
