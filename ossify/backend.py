"""Storage backend capability interface.

Each provider ships its own class implementing this protocol; the engine only
ever talks to a backend through these coroutines. Keys are the plain string
form of a ``StoragePath`` (``""`` for the root, trailing ``/`` for
directories). Backends raise the errors from ``ossify.errors``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterable, AsyncIterator, Optional, Protocol, runtime_checkable

from .config import Provider, StorageConfig

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True)
class RawEntry:
    key: str
    is_dir: bool = False
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None
    # Directory reported by the backend without an object behind it
    # (an S3 common prefix).
    implied: bool = False


@dataclass(frozen=True)
class ListPage:
    entries: list[RawEntry]
    next_token: Optional[str] = None


@runtime_checkable
class StorageBackend(Protocol):
    name: str
    supports_rename: bool

    async def list(self, prefix: str, page_token: Optional[str] = None) -> ListPage:
        """Return one page of entries whose keys start with ``prefix``.

        Entries may be immediate children or deeper keys; directories that
        are only implied by deeper keys need not be returned. Raises
        ``NotFound`` when nothing exists under a non-root prefix.
        """
        ...

    async def stat(self, key: str) -> RawEntry:
        ...

    def read(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        ...

    async def write(self, key: str, chunks: AsyncIterable[bytes]) -> int:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def create_dir(self, key: str) -> None:
        ...

    async def rename(self, src: str, dst: str) -> None:
        ...


def create_backend(config: StorageConfig) -> StorageBackend:
    """Build the backend selected by ``config``; called once at startup."""
    if config.provider == Provider.FS:
        from .local import LocalBackend

        return LocalBackend(config.root_path or "./storage", create=True)
    if config.provider == Provider.MEMORY:
        from .memory import MemoryBackend

        return MemoryBackend()
    from .s3 import S3Backend

    return S3Backend.from_config(config)
