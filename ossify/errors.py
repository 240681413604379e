from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_PATH = "InvalidPath"
    INVALID_TARGET = "InvalidTarget"
    NOT_FOUND = "NotFound"
    IS_A_DIRECTORY = "IsADirectory"
    NOT_A_DIRECTORY = "NotADirectory"
    BACKEND_UNAVAILABLE = "BackendUnavailable"
    PARTIAL_MOVE = "PartialMove"
    PERMISSION_DENIED = "PermissionDenied"
    ALREADY_EXISTS = "AlreadyExists"
    CONFIG = "ConfigError"


class OssifyError(Exception):
    """Base error carrying the kind reported in batch results."""

    kind = ErrorKind.BACKEND_UNAVAILABLE

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        return self.message


class InvalidPath(OssifyError):
    kind = ErrorKind.INVALID_PATH


class InvalidTarget(OssifyError):
    kind = ErrorKind.INVALID_TARGET


class NotFound(OssifyError):
    kind = ErrorKind.NOT_FOUND


class IsADirectory(OssifyError):
    kind = ErrorKind.IS_A_DIRECTORY


class NotADirectory(OssifyError):
    kind = ErrorKind.NOT_A_DIRECTORY


class BackendUnavailable(OssifyError):
    """Transient backend failure; callers may retry with backoff."""

    kind = ErrorKind.BACKEND_UNAVAILABLE


class PartialMove(OssifyError):
    """The copy half of a move succeeded but the source could not be deleted."""

    kind = ErrorKind.PARTIAL_MOVE


class PermissionDenied(OssifyError):
    kind = ErrorKind.PERMISSION_DENIED


class AlreadyExists(OssifyError):
    kind = ErrorKind.ALREADY_EXISTS


class ConfigError(OssifyError):
    kind = ErrorKind.CONFIG
