"""Storage path normalization.

Every key that reaches the engine is a ``StoragePath``: slash separated,
relative to the configured root, with no leading ``/`` or ``./``, no empty
segments, and a trailing slash exactly when it names a directory-like prefix.
The root itself is the empty string.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidPath


@dataclass(frozen=True, order=True)
class StoragePath:
    key: str = ""

    def __str__(self) -> str:
        return self.key

    @property
    def is_root(self) -> bool:
        return self.key == ""

    @property
    def is_dir(self) -> bool:
        return self.key == "" or self.key.endswith("/")

    @property
    def name(self) -> str:
        return basename(self)

    @property
    def segments(self) -> list[str]:
        return [part for part in self.key.split("/") if part]

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def parent(self) -> StoragePath:
        parts = self.segments
        if len(parts) <= 1:
            return ROOT
        return StoragePath("/".join(parts[:-1]) + "/")

    def as_dir(self) -> StoragePath:
        if self.is_dir:
            return self
        return StoragePath(f"{self.key}/")

    def as_file(self) -> StoragePath:
        return StoragePath(self.key.rstrip("/"))


ROOT = StoragePath("")


def _check_control_characters(raw: str) -> None:
    for char in raw:
        if ord(char) < 0x20 or ord(char) == 0x7F:
            raise InvalidPath(
                f"Invalid path {raw!r}: contains control characters", path=raw
            )


def normalize(raw: str | None) -> StoragePath:
    """Normalize a user supplied path into a ``StoragePath``.

    ``..`` segments are resolved; one that would climb above the root raises
    ``InvalidPath``. A trailing slash (or a trailing ``.``/``..`` segment)
    marks directory intent.
    """
    if raw is None:
        raw = ""
    _check_control_characters(raw)
    segments: list[str] = []
    parts = raw.split("/")
    for part in parts:
        if part in ("", "."):
            continue
        if part == "..":
            if not segments:
                raise InvalidPath(
                    f"Invalid path {raw!r}: escapes the storage root", path=raw
                )
            segments.pop()
            continue
        segments.append(part)
    if not segments:
        return ROOT
    key = "/".join(segments)
    directory = raw.endswith("/") or parts[-1] in (".", "..")
    return StoragePath(f"{key}/" if directory else key)


def sanitize_key(raw: str) -> tuple[StoragePath, bool]:
    """Recover a ``StoragePath`` from a key returned by a backend.

    Doubled slashes and empty or ``.`` segments are dropped rather than
    rejected. The second element tells whether the key had to be rewritten.
    Keys that cannot be represented (``..`` segments, control characters)
    raise ``InvalidPath``.
    """
    _check_control_characters(raw)
    segments = [part for part in raw.split("/") if part not in ("", ".")]
    if ".." in segments:
        raise InvalidPath(f"Key {raw!r} contains a '..' segment", path=raw)
    if not segments:
        return ROOT, raw != ""
    key = "/".join(segments)
    if raw.endswith("/"):
        key = f"{key}/"
    return StoragePath(key), key != raw


def join(base: StoragePath, child: str) -> StoragePath:
    child_path = normalize(child)
    if child_path.is_root:
        return base.as_dir()
    return StoragePath(base.as_dir().key + child_path.key)


def same_location(a: StoragePath, b: StoragePath) -> bool:
    return a.key.rstrip("/") == b.key.rstrip("/")


def is_ancestor(a: StoragePath, b: StoragePath) -> bool:
    """True when ``b`` lies strictly below ``a``."""
    a_name = a.key.rstrip("/")
    b_name = b.key.rstrip("/")
    if not a_name:
        return bool(b_name)
    return b_name.startswith(f"{a_name}/")


def relative_to(path: StoragePath, base: StoragePath) -> str:
    if same_location(path, base):
        return ""
    if not is_ancestor(base, path):
        raise InvalidPath(f"{path.key!r} is not below {base.key!r}", path=path.key)
    return path.key[len(base.as_dir().key) :]


def rebase(path: StoragePath, src_root: StoragePath, dst_root: StoragePath) -> StoragePath:
    """Map ``path`` under ``src_root`` to the same place under ``dst_root``."""
    relative = relative_to(path, src_root)
    if not relative:
        return dst_root.as_dir() if path.is_dir else dst_root
    return join(dst_root, relative)


def basename(path: StoragePath) -> str:
    name = path.key.rstrip("/")
    return name.rsplit("/", 1)[-1]


def lineage(path: StoragePath) -> list[StoragePath]:
    """Directory prefixes from the top level down to ``path`` itself."""
    parts = path.segments
    return [StoragePath("/".join(parts[: index + 1]) + "/") for index in range(len(parts))]
