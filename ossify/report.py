"""Outcome aggregation and progress accounting for batch operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .models import BatchReport, FailureEntry, OperationOutcome
from .paths import StoragePath

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    items_completed: int
    items_total: int
    bytes_transferred: int
    path: Optional[StoragePath] = None


ProgressCallback = Callable[[ProgressEvent], None]


class BatchAggregator:
    """Collect outcomes from concurrent workers into one ``BatchReport``.

    Outcomes are only ever appended, under a lock. Progress counters only
    grow; every change is pushed to the subscribed callbacks.
    """

    def __init__(self, items_total: int = 0) -> None:
        self.items_total = items_total
        self.items_completed = 0
        self.bytes_transferred = 0
        self.lock = asyncio.Lock()
        self._outcomes: list[OperationOutcome] = []
        self._cancelled = 0
        self._warnings: list[str] = []
        self._subscribers: list[ProgressCallback] = []
        self._report: Optional[BatchReport] = None

    def subscribe(self, callback: ProgressCallback) -> None:
        self._subscribers.append(callback)

    def expect(self, count: int) -> None:
        self.items_total += count
        self._emit(None)

    def add_warnings(self, warnings: list[str]) -> None:
        self._ensure_open()
        self._warnings.extend(warnings)

    def add_bytes(self, path: StoragePath, count: int) -> None:
        if count <= 0:
            return
        self.bytes_transferred += count
        self._emit(path)

    async def record(self, outcome: OperationOutcome) -> None:
        async with self.lock:
            self._ensure_open()
            self._outcomes.append(outcome)
            self.items_completed += 1
            if not outcome.succeeded:
                logger.debug(
                    "Task %s on %s failed: %s",
                    outcome.task.kind.value,
                    outcome.task.target.key,
                    outcome.message,
                )
        self._emit(outcome.task.target)

    async def mark_cancelled(self, count: int) -> None:
        async with self.lock:
            self._ensure_open()
            self._cancelled += count

    def finalize(self) -> BatchReport:
        if self._report is not None:
            return self._report
        ordered = sorted(self._outcomes, key=lambda outcome: outcome.index)
        failed = tuple(
            FailureEntry(
                path=outcome.task.target,
                kind=outcome.error_kind,
                message=outcome.message,
            )
            for outcome in ordered
            if not outcome.succeeded
        )
        self._report = BatchReport(
            total_items=len(ordered) + self._cancelled,
            succeeded=len(ordered) - len(failed),
            failed=failed,
            total_bytes=sum(outcome.bytes_transferred for outcome in ordered),
            cancelled=self._cancelled,
            warnings=tuple(self._warnings),
        )
        return self._report

    def _ensure_open(self) -> None:
        if self._report is not None:
            raise RuntimeError("batch report already finalized")

    def _emit(self, path: Optional[StoragePath]) -> None:
        if not self._subscribers:
            return
        event = ProgressEvent(
            items_completed=self.items_completed,
            items_total=self.items_total,
            bytes_transferred=self.bytes_transferred,
            path=path,
        )
        for callback in self._subscribers:
            callback(event)
