"""Paginated directory listing on top of a backend.

Backends may return only immediate children (a delimited bucket listing, a
local directory) or every key under a prefix (a flat listing). The lister
folds both into the immediate children of the prefix, inventing directory
entries for prefixes that are only implied by deeper keys.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from .backend import RawEntry, StorageBackend
from .errors import InvalidPath
from .models import EntryKind, ObjectMetadata
from .paths import StoragePath, is_ancestor, join, relative_to, same_location, sanitize_key

logger = logging.getLogger(__name__)


def metadata_from_raw(raw: RawEntry, path: StoragePath, synthetic: bool = False) -> ObjectMetadata:
    if raw.is_dir or path.is_dir:
        return ObjectMetadata(
            path=path.as_dir(),
            kind=EntryKind.DIRECTORY,
            last_modified=raw.last_modified,
            etag=raw.etag,
            synthetic=synthetic or raw.implied,
        )
    return ObjectMetadata(
        path=path,
        kind=EntryKind.FILE,
        size=raw.size,
        last_modified=raw.last_modified,
        etag=raw.etag,
        content_type=raw.content_type,
    )


class EntryLister:
    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend
        self.warnings: list[str] = []

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    async def list_page(
        self, prefix: StoragePath, page_token: Optional[str] = None
    ) -> tuple[list[ObjectMetadata], Optional[str]]:
        """Fetch one page of the immediate children of ``prefix``.

        Restartable from any returned token. Raises ``NotFound`` when the
        prefix does not exist.
        """
        page = await self.backend.list(prefix.as_dir().key, page_token)
        return self._fold(prefix.as_dir(), page.entries, {}), page.next_token

    async def iter_entries(self, prefix: StoragePath) -> AsyncIterator[ObjectMetadata]:
        """Yield every immediate child of ``prefix`` across all pages."""
        prefix = prefix.as_dir()
        seen: dict[StoragePath, bool] = {}
        token: Optional[str] = None
        while True:
            page = await self.backend.list(prefix.key, token)
            for entry in self._fold(prefix, page.entries, seen):
                yield entry
            token = page.next_token
            if not token:
                break

    async def stat(self, path: StoragePath) -> ObjectMetadata:
        raw = await self.backend.stat(path.key)
        return metadata_from_raw(raw, path.as_dir() if raw.is_dir else path)

    def _sanitize(self, raw: RawEntry) -> Optional[StoragePath]:
        try:
            path, changed = sanitize_key(raw.key)
        except InvalidPath as exc:
            self.warn(f"Skipping unusable key {raw.key!r}: {exc}")
            return None
        if changed:
            self.warn(f"Sanitized malformed key {raw.key!r} to {path.key!r}")
        if raw.is_dir:
            path = path.as_dir()
        return path

    def _fold(
        self,
        prefix: StoragePath,
        raw_entries: list[RawEntry],
        seen: dict[StoragePath, bool],
    ) -> list[ObjectMetadata]:
        # ``seen`` maps each yielded directory to whether it came from an
        # explicit marker; an explicit marker replaces a synthetic entry
        # still on the current page.
        folded: list[ObjectMetadata] = []
        positions: dict[StoragePath, int] = {}
        for raw in raw_entries:
            path = self._sanitize(raw)
            if path is None:
                continue
            if same_location(path, prefix):
                continue
            if not is_ancestor(prefix, path):
                self.warn(f"Skipping key {raw.key!r} listed outside {prefix.key!r}")
                continue
            first, _, rest = relative_to(path, prefix).partition("/")
            if rest:
                metadata = ObjectMetadata(
                    path=join(prefix, f"{first}/"),
                    kind=EntryKind.DIRECTORY,
                    synthetic=True,
                )
            else:
                metadata = metadata_from_raw(raw, path)
            if not metadata.is_dir:
                folded.append(metadata)
                continue
            explicit = not metadata.synthetic
            if metadata.path in seen:
                if explicit and not seen[metadata.path] and metadata.path in positions:
                    folded[positions[metadata.path]] = metadata
                    seen[metadata.path] = True
                continue
            seen[metadata.path] = explicit
            positions[metadata.path] = len(folded)
            folded.append(metadata)
        return folded
