"""Recursive traversal of a storage namespace."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from .errors import NotFound, OssifyError
from .executor import CancellationToken
from .lister import EntryLister
from .models import EntryKind, ObjectMetadata, TraversalItem
from .paths import ROOT, StoragePath

logger = logging.getLogger(__name__)


async def walk(
    lister: EntryLister,
    root: StoragePath,
    recursive: bool = False,
    max_depth: Optional[int] = None,
    token: Optional[CancellationToken] = None,
) -> AsyncIterator[TraversalItem]:
    """Yield the entries below ``root`` depth-first.

    A directory is yielded before its descendants, and all of its
    descendants are yielded before its next sibling. ``root`` itself is not
    yielded. ``max_depth`` caps the depth of yielded items, 1 being the
    immediate children.

    A listing failure on ``root`` is raised. A failure below it yields a
    single item with ``error`` set for the directory that could not be
    listed, and the walk carries on with the remaining siblings. Once
    ``token`` is cancelled the walk stops without yielding anything more.
    """
    if max_depth is not None and max_depth < 1:
        raise ValueError("max_depth must be at least 1")
    root = root.as_dir()
    stack = [(root, lister.iter_entries(root), 1)]
    try:
        while stack:
            if token is not None and token.cancelled:
                logger.info("Walk of %s stopped: %s", root.key or "/", token.reason)
                break
            directory, entries, depth = stack[-1]
            try:
                metadata = await entries.__anext__()
            except StopAsyncIteration:
                stack.pop()
                continue
            except OssifyError as exc:
                stack.pop()
                if not stack:
                    raise
                logger.warning("Failed to list %s: %s", directory.key, exc)
                yield TraversalItem(
                    metadata=ObjectMetadata(path=directory, kind=EntryKind.DIRECTORY),
                    depth=depth - 1,
                    parent=directory.parent,
                    error=exc,
                )
                continue
            yield TraversalItem(metadata=metadata, depth=depth, parent=directory)
            if (
                recursive
                and metadata.is_dir
                and (max_depth is None or depth < max_depth)
            ):
                stack.append((metadata.path, lister.iter_entries(metadata.path), depth + 1))
    finally:
        for _, entries, _ in stack:
            await entries.aclose()


async def resolve(lister: EntryLister, path: StoragePath) -> ObjectMetadata:
    """Find out what ``path`` names: a file, a real directory or a synthetic one.

    Tries ``stat`` first, then a directory marker, then a prefix listing for
    directories that exist only through the keys below them.
    """
    if path.is_root:
        return ObjectMetadata(path=ROOT, kind=EntryKind.DIRECTORY)
    candidates = [path] if path.is_dir else [path, path.as_dir()]
    for candidate in candidates:
        try:
            return await lister.stat(candidate)
        except NotFound:
            continue
    try:
        await lister.list_page(path.as_dir())
    except NotFound:
        raise NotFound(f"No such file or directory: {path.key}", path=path.key) from None
    return ObjectMetadata(path=path.as_dir(), kind=EntryKind.DIRECTORY, synthetic=True)
