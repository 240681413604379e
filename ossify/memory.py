from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterable, AsyncIterator, Optional

from .backend import DEFAULT_CHUNK_SIZE, DEFAULT_PAGE_SIZE, ListPage, RawEntry
from .errors import NotFound, OssifyError


@dataclass
class _StoredObject:
    data: bytes
    last_modified: datetime
    etag: str


class MemoryBackend:
    """Flat key/value object store kept in memory.

    Listings are flat and paginated like a bucket listed without a
    delimiter: every key under the prefix is returned, and directories exist
    only as ``key/`` markers or implicitly through deeper keys. Failures can
    be injected per operation and key, and every call is recorded in
    ``calls``.
    """

    def __init__(
        self,
        objects: Optional[dict[str, bytes]] = None,
        supports_rename: bool = False,
        page_size: int = DEFAULT_PAGE_SIZE,
        latency: float = 0.0,
    ) -> None:
        self.name = "memory://"
        self.supports_rename = supports_rename
        self.page_size = page_size
        self.latency = latency
        self.objects: dict[str, _StoredObject] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], OssifyError] = {}
        for key, data in (objects or {}).items():
            self.put(key, data)

    def put(self, key: str, data: bytes = b"") -> None:
        self.objects[key] = _StoredObject(
            data=data,
            last_modified=datetime.now(timezone.utc),
            etag=hashlib.md5(data).hexdigest(),
        )

    def inject_failure(self, operation: str, key: str, error: OssifyError) -> None:
        self._failures[(operation, key)] = error

    async def _enter(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        error = self._failures.get((operation, key))
        if error is not None:
            raise error

    def _entry(self, key: str) -> RawEntry:
        stored = self.objects[key]
        return RawEntry(
            key=key,
            is_dir=key.endswith("/"),
            size=0 if key.endswith("/") else len(stored.data),
            last_modified=stored.last_modified,
            etag=stored.etag,
        )

    async def list(self, prefix: str, page_token: Optional[str] = None) -> ListPage:
        await self._enter("list", prefix)
        keys = sorted(key for key in self.objects if key.startswith(prefix))
        if prefix and not keys:
            raise NotFound(f"No such directory: {prefix}", path=prefix)
        if page_token:
            keys = [key for key in keys if key > page_token]
        page = keys[: self.page_size]
        next_token = page[-1] if len(keys) > self.page_size else None
        return ListPage(entries=[self._entry(key) for key in page], next_token=next_token)

    async def stat(self, key: str) -> RawEntry:
        await self._enter("stat", key)
        if not key:
            return RawEntry(key="", is_dir=True)
        if key not in self.objects:
            raise NotFound(f"No such object: {key}", path=key)
        return self._entry(key)

    async def read(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        await self._enter("read", key)
        if key not in self.objects:
            raise NotFound(f"No such object: {key}", path=key)
        data = self.objects[key].data
        for offset in range(0, len(data), chunk_size):
            yield data[offset : offset + chunk_size]

    async def write(self, key: str, chunks: AsyncIterable[bytes]) -> int:
        await self._enter("write", key)
        parts = [chunk async for chunk in chunks]
        self.put(key, b"".join(parts))
        return sum(len(part) for part in parts)

    async def delete(self, key: str) -> None:
        await self._enter("delete", key)
        if key not in self.objects:
            raise NotFound(f"No such object: {key}", path=key)
        del self.objects[key]

    async def create_dir(self, key: str) -> None:
        await self._enter("create_dir", key)
        if not key:
            return
        marker = key if key.endswith("/") else f"{key}/"
        if marker not in self.objects:
            self.put(marker)

    async def rename(self, src: str, dst: str) -> None:
        await self._enter("rename", src)
        if not self.supports_rename:
            raise NotImplementedError("rename is disabled for this store")
        if src not in self.objects:
            raise NotFound(f"No such object: {src}", path=src)
        self.objects[dst] = self.objects.pop(src)
