from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .errors import ErrorKind, OssifyError
from .paths import StoragePath


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "dir"


@dataclass(frozen=True)
class ObjectMetadata:
    path: StoragePath
    kind: EntryKind
    size: int = 0
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None
    synthetic: bool = False

    @property
    def is_dir(self) -> bool:
        return self.kind == EntryKind.DIRECTORY


@dataclass(frozen=True)
class TraversalItem:
    metadata: ObjectMetadata
    depth: int
    parent: StoragePath
    error: Optional[OssifyError] = None

    @property
    def path(self) -> StoragePath:
        return self.metadata.path

    @property
    def failed(self) -> bool:
        return self.error is not None


class TaskKind(str, Enum):
    COPY = "copy"
    MOVE = "move"
    DELETE = "delete"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    CREATE_DIR = "mkdir"
    # Only used to report a directory whose listing failed during a walk.
    LIST = "list"


@dataclass(frozen=True)
class OperationTask:
    kind: TaskKind
    source: StoragePath
    destination: Optional[StoragePath] = None
    metadata: Optional[ObjectMetadata] = None

    @property
    def target(self) -> StoragePath:
        """Path reported for this task: the destination when it has one."""
        if self.kind == TaskKind.CREATE_DIR and self.destination is not None:
            return self.destination
        return self.source


@dataclass(frozen=True)
class OperationOutcome:
    index: int
    task: OperationTask
    bytes_transferred: int = 0
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None


@dataclass(frozen=True)
class FailureEntry:
    path: StoragePath
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class BatchReport:
    total_items: int = 0
    succeeded: int = 0
    failed: tuple[FailureEntry, ...] = ()
    total_bytes: int = 0
    cancelled: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def exit_status(self) -> int:
        return 0 if self.ok else 1
