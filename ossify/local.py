from __future__ import annotations

import asyncio
import errno
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Optional

from .backend import DEFAULT_CHUNK_SIZE, DEFAULT_PAGE_SIZE, ListPage, RawEntry
from .errors import (
    AlreadyExists,
    BackendUnavailable,
    IsADirectory,
    NotADirectory,
    NotFound,
    OssifyError,
    PermissionDenied,
)

logger = logging.getLogger(__name__)


class LocalBackend:
    """Local filesystem rooted at a directory.

    Used both as the ``fs`` provider and as the local side of ``get``/``put``.
    Writes go to a temporary sibling file that is renamed into place, so an
    interrupted transfer never leaves a half-written destination.
    """

    supports_rename = True

    def __init__(self, root: str | Path, create: bool = False, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.root = Path(root).expanduser().resolve()
        self.name = str(self.root)
        self.page_size = page_size
        if create:
            self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        key = key.strip("/")
        return self.root / key if key else self.root

    def _map_error(self, exc: OSError, key: str) -> OssifyError:
        location = str(self._path(key))
        if isinstance(exc, FileNotFoundError):
            return NotFound(f"No such file or directory: {location}", path=key)
        if isinstance(exc, PermissionError):
            return PermissionDenied(f"Permission denied: {location}", path=key)
        if isinstance(exc, IsADirectoryError):
            return IsADirectory(f"Is a directory: {location}", path=key)
        if isinstance(exc, NotADirectoryError):
            return NotADirectory(f"Not a directory: {location}", path=key)
        if isinstance(exc, FileExistsError):
            return AlreadyExists(f"Already exists: {location}", path=key)
        if exc.errno == errno.ENOTEMPTY:
            return BackendUnavailable(f"Directory not empty: {location}", path=key)
        return BackendUnavailable(f"{location}: {exc}", path=key)

    async def _run(self, key: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except OssifyError:
            raise
        except OSError as exc:
            raise self._map_error(exc, key) from exc

    def _entry(self, key: str, path: Path) -> RawEntry:
        info = path.stat()
        modified = datetime.fromtimestamp(info.st_mtime, tz=timezone.utc)
        if path.is_dir():
            if key and not key.endswith("/"):
                key = f"{key}/"
            return RawEntry(key=key, is_dir=True, last_modified=modified)
        return RawEntry(key=key, size=info.st_size, last_modified=modified)

    async def list(self, prefix: str, page_token: Optional[str] = None) -> ListPage:
        return await self._run(prefix, self._list_page, prefix, page_token)

    def _list_page(self, prefix: str, page_token: Optional[str]) -> ListPage:
        directory = self._path(prefix)
        if not directory.exists():
            raise NotFound(f"No such directory: {directory}", path=prefix)
        if not directory.is_dir():
            raise NotADirectory(f"Not a directory: {directory}", path=prefix)
        names = sorted(os.listdir(directory))
        start = int(page_token) if page_token else 0
        end = start + self.page_size
        base = prefix if not prefix or prefix.endswith("/") else f"{prefix}/"
        entries = []
        for name in names[start:end]:
            entry = self._listed_entry(f"{base}{name}", directory / name)
            if entry is not None:
                entries.append(entry)
        next_token = str(end) if end < len(names) else None
        return ListPage(entries=entries, next_token=next_token)

    def _listed_entry(self, key: str, path: Path) -> Optional[RawEntry]:
        try:
            return self._entry(key, path)
        except OSError as exc:
            # Dangling symlinks cannot be followed; list the link itself.
            try:
                info = path.lstat()
            except OSError:
                logger.warning("Skipping %s: %s", path, exc)
                return None
        modified = datetime.fromtimestamp(info.st_mtime, tz=timezone.utc)
        return RawEntry(key=key, size=info.st_size, last_modified=modified)

    async def stat(self, key: str) -> RawEntry:
        return await self._run(key, self._stat, key)

    def _stat(self, key: str) -> RawEntry:
        path = self._path(key)
        if key.endswith("/") and path.is_file():
            raise NotADirectory(f"Not a directory: {path}", path=key)
        return self._entry(key, path)

    async def read(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        handle = await self._run(key, open, self._path(key), "rb")
        try:
            while True:
                chunk = await self._run(key, handle.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def write(self, key: str, chunks: AsyncIterable[bytes]) -> int:
        path = self._path(key)
        if path.is_dir():
            raise IsADirectory(f"Is a directory: {path}", path=key)
        await self._run(key, path.parent.mkdir, 0o777, True, True)
        fd, temp_name = await self._run(
            key, tempfile.mkstemp, "", f".{path.name}.", str(path.parent)
        )
        total = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                async for chunk in chunks:
                    await self._run(key, handle.write, chunk)
                    total += len(chunk)
            await self._run(key, os.replace, temp_name, path)
        except BaseException:
            # Also covers task cancellation; the partial file never becomes visible.
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise
        return total

    async def delete(self, key: str) -> None:
        await self._run(key, self._delete, key)

    def _delete(self, key: str) -> None:
        path = self._path(key)
        if path == self.root:
            return
        if path.is_dir() and not path.is_symlink():
            path.rmdir()
        else:
            path.unlink()

    async def create_dir(self, key: str) -> None:
        await self._run(key, self._path(key).mkdir, 0o777, True, True)

    async def rename(self, src: str, dst: str) -> None:
        target = self._path(dst)
        await self._run(dst, target.parent.mkdir, 0o777, True, True)
        await self._run(src, os.replace, self._path(src), target)
