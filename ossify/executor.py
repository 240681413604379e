"""Bounded-concurrency execution of per-item storage operations."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import AsyncIterator, Iterable, Optional

from .backend import DEFAULT_CHUNK_SIZE, StorageBackend
from .errors import AlreadyExists, ErrorKind, OssifyError, PartialMove
from .models import BatchReport, OperationOutcome, OperationTask, TaskKind
from .paths import StoragePath
from .report import BatchAggregator

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared stop flag: once set, no new task starts; running ones finish."""

    def __init__(self) -> None:
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: str = "cancelled") -> None:
        if self.reason is None:
            logger.info("Stopping batch: %s", reason)
            self.reason = reason


class BatchExecutor:
    """Run operation tasks against a source and a destination backend.

    Copy, upload and download all read from ``source`` and write to
    ``destination``; for operations inside one store both are the same
    backend. Up to ``concurrency`` tasks run at once and they start in
    submission order. A failing task is recorded and the batch goes on,
    unless ``fail_fast`` is set, in which case the shared token is cancelled
    and tasks that have not started yet are counted as cancelled.
    """

    def __init__(
        self,
        source: StorageBackend,
        destination: Optional[StorageBackend] = None,
        concurrency: int = 8,
        fail_fast: bool = False,
        token: Optional[CancellationToken] = None,
        ignore_missing: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be a positive integer")
        self.source = source
        self.destination = destination if destination is not None else source
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self.token = token or CancellationToken()
        self.ignore_missing = ignore_missing
        self.chunk_size = chunk_size

    async def execute(
        self,
        tasks: Iterable[OperationTask],
        aggregator: Optional[BatchAggregator] = None,
    ) -> BatchReport:
        aggregator = aggregator or BatchAggregator()
        await self.submit(list(tasks), aggregator)
        return aggregator.finalize()

    async def run_stages(
        self,
        stages: Iterable[Iterable[OperationTask]],
        aggregator: Optional[BatchAggregator] = None,
    ) -> BatchReport:
        """Run each stage to completion before the next one starts."""
        aggregator = aggregator or BatchAggregator()
        index = 0
        for stage in stages:
            tasks = list(stage)
            await self.submit(tasks, aggregator, start_index=index)
            index += len(tasks)
        return aggregator.finalize()

    async def submit(
        self,
        tasks: list[OperationTask],
        aggregator: BatchAggregator,
        start_index: int = 0,
    ) -> list[OperationOutcome]:
        """Run ``tasks`` and record their outcomes without finalizing."""
        aggregator.expect(len(tasks))
        pending = deque(enumerate(tasks, start_index))
        outcomes: list[OperationOutcome] = []

        async def worker() -> None:
            while pending and not self.token.cancelled:
                index, task = pending.popleft()
                outcome = await self._perform(index, task, aggregator)
                outcomes.append(outcome)
                await aggregator.record(outcome)
                if self.fail_fast and not outcome.succeeded:
                    self.token.cancel(f"{outcome.task.target.key}: {outcome.message}")

        workers = min(self.concurrency, len(tasks))
        results = await asyncio.gather(
            *(worker() for _ in range(workers)), return_exceptions=True
        )
        if pending:
            await aggregator.mark_cancelled(len(pending))
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return outcomes

    async def _perform(
        self, index: int, task: OperationTask, aggregator: BatchAggregator
    ) -> OperationOutcome:
        started = time.monotonic()
        try:
            transferred = await self._dispatch(task, aggregator)
        except OssifyError as exc:
            if (
                self.ignore_missing
                and task.kind == TaskKind.DELETE
                and exc.kind == ErrorKind.NOT_FOUND
            ):
                transferred = 0
            else:
                return OperationOutcome(
                    index=index,
                    task=task,
                    error_kind=exc.kind,
                    message=str(exc),
                    duration=time.monotonic() - started,
                )
        return OperationOutcome(
            index=index,
            task=task,
            bytes_transferred=transferred,
            duration=time.monotonic() - started,
        )

    async def _dispatch(self, task: OperationTask, aggregator: BatchAggregator) -> int:
        if task.kind in (TaskKind.COPY, TaskKind.UPLOAD, TaskKind.DOWNLOAD):
            return await self._transfer(task.source, _destination(task), aggregator)
        if task.kind == TaskKind.MOVE:
            return await self._move(task, aggregator)
        if task.kind == TaskKind.DELETE:
            await self.source.delete(task.source.key)
            return 0
        if task.kind == TaskKind.CREATE_DIR:
            try:
                await self.destination.create_dir(_destination(task).key)
            except AlreadyExists:
                pass
            return 0
        raise ValueError(f"unknown task kind: {task.kind}")

    async def _transfer(
        self, source: StoragePath, destination: StoragePath, aggregator: BatchAggregator
    ) -> int:
        async def chunks() -> AsyncIterator[bytes]:
            async for chunk in self.source.read(source.key, self.chunk_size):
                aggregator.add_bytes(destination, len(chunk))
                yield chunk

        written = await self.destination.write(destination.key, chunks())
        logger.debug("Copied %s to %s (%d bytes)", source.key, destination.key, written)
        return written

    async def _move(self, task: OperationTask, aggregator: BatchAggregator) -> int:
        destination = _destination(task)
        if self.source is self.destination and self.source.supports_rename:
            await self.source.rename(task.source.key, destination.key)
            size = task.metadata.size if task.metadata is not None else 0
            aggregator.add_bytes(destination, size)
            return size
        written = await self._transfer(task.source, destination, aggregator)
        try:
            await self.source.delete(task.source.key)
        except OssifyError as exc:
            raise PartialMove(
                f"Copied {task.source.key} to {destination.key} but could not "
                f"delete the source: {exc}",
                path=task.source.key,
            ) from exc
        return written


def _destination(task: OperationTask) -> StoragePath:
    if task.destination is None:
        raise ValueError(f"{task.kind.value} task for {task.source.key} has no destination")
    return task.destination
