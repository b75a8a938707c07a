"""
Cache Store capability: named generations of request -> response entries.

Two backends are provided:
- MemoryCacheStorage: process-local dicts (tests, short-lived clients)
- DirectoryCacheStorage: one directory per generation on local disk

Every operation is async so callers suspend on store I/O the same way
they suspend on network I/O. Writes are last-write-wins; entries are
snapshots of idempotent GET results so racing writers store equivalent
content.
"""
import asyncio
import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .core import CachedResponse, CacheRequest

logger = logging.getLogger("cache.storage")


class CacheStore(Protocol):
    """One generation of cached entries."""

    name: str

    async def match(self, request: CacheRequest) -> Optional[CachedResponse]:
        """Return the stored response for this request identity, if any."""
        ...

    async def put(self, request: CacheRequest, response: CachedResponse) -> None:
        """Store (or overwrite) the response for this request identity."""
        ...

    async def delete(self, request: CacheRequest) -> bool:
        ...

    async def keys(self) -> List[str]:
        """Request identities stored in this generation."""
        ...


class CacheStorage(Protocol):
    """
    Collection of named cache generations.

    Implementations:
    - MemoryCacheStorage
    - DirectoryCacheStorage
    """

    async def open(self, name: str) -> CacheStore:
        """Open a generation, creating it if absent."""
        ...

    async def delete(self, name: str) -> bool:
        """Delete a whole generation. Returns True if it existed."""
        ...

    async def keys(self) -> List[str]:
        """Names of all existing generations."""
        ...

    async def match(self, request: CacheRequest) -> Optional[CachedResponse]:
        """Search every generation for this request."""
        ...


def _stamp(response: CachedResponse) -> CachedResponse:
    return replace(response.clone(), stored_at=datetime.now(timezone.utc))


# =============================================================================
# In-memory backend
# =============================================================================

class MemoryCacheStore:
    """A generation held in a plain dict."""

    def __init__(self, name: str):
        self.name = name
        self._entries: Dict[str, CachedResponse] = {}

    async def match(self, request: CacheRequest) -> Optional[CachedResponse]:
        return self._entries.get(request.key)

    async def put(self, request: CacheRequest, response: CachedResponse) -> None:
        self._entries[request.key] = _stamp(response)

    async def delete(self, request: CacheRequest) -> bool:
        return self._entries.pop(request.key, None) is not None

    async def keys(self) -> List[str]:
        return list(self._entries)


class MemoryCacheStorage:
    """All generations live in this process; nothing survives a restart."""

    def __init__(self):
        self._stores: Dict[str, MemoryCacheStore] = {}

    async def open(self, name: str) -> MemoryCacheStore:
        store = self._stores.get(name)
        if store is None:
            store = MemoryCacheStore(name)
            self._stores[name] = store
            logger.debug(f"Created cache generation {name}")
        return store

    async def delete(self, name: str) -> bool:
        existed = self._stores.pop(name, None) is not None
        if existed:
            logger.info(f"Deleted cache generation {name}")
        return existed

    async def keys(self) -> List[str]:
        return list(self._stores)

    async def match(self, request: CacheRequest) -> Optional[CachedResponse]:
        for store in list(self._stores.values()):
            response = await store.match(request)
            if response is not None:
                return response
        return None


# =============================================================================
# On-disk backend
# =============================================================================

def _entry_id(request: CacheRequest) -> str:
    return hashlib.sha256(request.key.encode("utf-8")).hexdigest()


def _atomic_write(path: Path, data: bytes) -> None:
    """Write via temp file + rename so readers never see partial data."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class DirectoryCacheStore:
    """
    A generation stored as a directory.

    Layout:
        <root>/<name>/<sha256(key)>.json   metadata (status, headers, type, url, key)
        <root>/<name>/<sha256(key)>.body   raw body bytes
    """

    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = path

    def _read(self, entry_id: str) -> Optional[CachedResponse]:
        meta_path = self.path / f"{entry_id}.json"
        body_path = self.path / f"{entry_id}.body"
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            body = body_path.read_bytes()
        except FileNotFoundError:
            return None
        return CachedResponse.from_dict(meta, body)

    def _write(self, request: CacheRequest, response: CachedResponse) -> None:
        entry_id = _entry_id(request)
        meta = response.to_dict()
        meta["key"] = request.key
        self.path.mkdir(parents=True, exist_ok=True)
        # Body first: a metadata file always points at a complete body
        _atomic_write(self.path / f"{entry_id}.body", response.body)
        _atomic_write(
            self.path / f"{entry_id}.json",
            json.dumps(meta).encode("utf-8"),
        )

    def _remove(self, entry_id: str) -> bool:
        removed = False
        for suffix in (".json", ".body"):
            try:
                (self.path / f"{entry_id}{suffix}").unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    def _list_keys(self) -> List[str]:
        keys = []
        for meta_path in sorted(self.path.glob("*.json")):
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable cache entry {meta_path}: {e}")
                continue
            keys.append(meta.get("key", meta_path.stem))
        return keys

    async def match(self, request: CacheRequest) -> Optional[CachedResponse]:
        return await asyncio.to_thread(self._read, _entry_id(request))

    async def put(self, request: CacheRequest, response: CachedResponse) -> None:
        await asyncio.to_thread(self._write, request, _stamp(response))

    async def delete(self, request: CacheRequest) -> bool:
        return await asyncio.to_thread(self._remove, _entry_id(request))

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._list_keys)


class DirectoryCacheStorage:
    """Generations persisted under a root directory (one subdirectory each)."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _generation_path(self, name: str) -> Path:
        # Generation names are config values, not paths
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"Invalid cache generation name: {name!r}")
        return self.root / name

    def _list_generations(self) -> List[str]:
        if not self.root.exists():
            return []
        dirs = [p for p in self.root.iterdir() if p.is_dir()]
        dirs.sort(key=lambda p: p.name)
        return [p.name for p in dirs]

    async def open(self, name: str) -> DirectoryCacheStore:
        path = self._generation_path(name)
        if not path.exists():
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
            logger.debug(f"Created cache generation {name} at {path}")
        return DirectoryCacheStore(name, path)

    async def delete(self, name: str) -> bool:
        path = self._generation_path(name)
        if not path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, path)
        logger.info(f"Deleted cache generation {name}")
        return True

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._list_generations)

    async def match(self, request: CacheRequest) -> Optional[CachedResponse]:
        for name in await self.keys():
            response = await DirectoryCacheStore(name, self.root / name).match(request)
            if response is not None:
                return response
        return None
