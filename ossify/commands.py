"""Command policies built on the lister, walker and batch executor.

Every method takes raw path strings, normalizes them, and returns either a
result carrying a ``BatchReport`` or, for single-object commands, the
metadata or byte stream directly. Per-item failures land in the report;
errors about the command's own arguments are raised.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

from .backend import DEFAULT_CHUNK_SIZE, StorageBackend
from .errors import (
    AlreadyExists,
    BackendUnavailable,
    InvalidPath,
    InvalidTarget,
    IsADirectory,
    NotADirectory,
    NotFound,
    OssifyError,
)
from .executor import BatchExecutor, CancellationToken
from .lister import EntryLister
from .local import LocalBackend
from .models import (
    BatchReport,
    EntryKind,
    ObjectMetadata,
    OperationOutcome,
    OperationTask,
    TaskKind,
)
from .paths import (
    ROOT,
    StoragePath,
    basename,
    is_ancestor,
    join,
    lineage,
    normalize,
    rebase,
    relative_to,
    same_location,
)
from .report import BatchAggregator, ProgressCallback
from .walker import resolve, walk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListResult:
    entries: tuple[ObjectMetadata, ...]
    report: BatchReport


@dataclass(frozen=True)
class UsageRow:
    path: StoragePath
    size: int
    file_count: int
    is_dir: bool


@dataclass(frozen=True)
class UsageResult:
    rows: tuple[UsageRow, ...]
    total_size: int
    file_count: int
    report: BatchReport


class _Run:
    """Index bookkeeping for one command.

    Walk failures and the tasks of every executed stage share one submission
    sequence, so the final report lists failures in the order they arose.
    """

    def __init__(
        self,
        aggregator: BatchAggregator,
        token: Optional[CancellationToken] = None,
        fail_fast: bool = False,
    ) -> None:
        self.aggregator = aggregator
        self.token = token
        self.fail_fast = fail_fast
        self.next_index = 0

    async def fail(self, path: StoragePath, error: OssifyError, kind: TaskKind) -> None:
        self.aggregator.expect(1)
        await self.aggregator.record(
            OperationOutcome(
                index=self.next_index,
                task=OperationTask(kind=kind, source=path),
                error_kind=error.kind,
                message=str(error),
            )
        )
        self.next_index += 1
        if self.fail_fast and self.token is not None:
            self.token.cancel(f"{path.key or '/'}: {error}")

    async def execute(
        self, executor: BatchExecutor, tasks: list[OperationTask]
    ) -> list[OperationOutcome]:
        if not tasks:
            return []
        outcomes = await executor.submit(tasks, self.aggregator, start_index=self.next_index)
        self.next_index += len(tasks)
        return outcomes

    def finish(self, *listers: EntryLister) -> BatchReport:
        if self.token is not None and self.token.cancelled:
            self.aggregator.add_warnings([f"Stopped early: {self.token.reason}"])
        for lister in listers:
            self.aggregator.add_warnings(lister.warnings)
            lister.warnings.clear()
        return self.aggregator.finalize()


class StorageShell:
    """HDFS-style commands over one configured backend."""

    def __init__(
        self,
        backend: StorageBackend,
        concurrency: int = 8,
        fail_fast: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.backend = backend
        self.lister = EntryLister(backend)
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self.chunk_size = chunk_size
        self.progress = progress
        self.token = token or CancellationToken()

    def _executor(
        self,
        source: Optional[StorageBackend] = None,
        destination: Optional[StorageBackend] = None,
        concurrency: Optional[int] = None,
        fail_fast: Optional[bool] = None,
        ignore_missing: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> BatchExecutor:
        return BatchExecutor(
            source or self.backend,
            destination,
            concurrency=concurrency or self.concurrency,
            fail_fast=self.fail_fast if fail_fast is None else fail_fast,
            token=token or self.token,
            ignore_missing=ignore_missing,
            chunk_size=self.chunk_size,
        )

    def _start(self) -> _Run:
        aggregator = BatchAggregator()
        if self.progress is not None:
            aggregator.subscribe(self.progress)
        return _Run(aggregator, token=self.token, fail_fast=self.fail_fast)

    async def _lookup(
        self, path: StoragePath, lister: Optional[EntryLister] = None
    ) -> Optional[ObjectMetadata]:
        try:
            return await resolve(lister or self.lister, path)
        except NotFound:
            return None

    # -- listing -----------------------------------------------------------

    async def ls(
        self, path: str = "", recursive: bool = False, max_depth: Optional[int] = None
    ) -> ListResult:
        run = self._start()
        metadata = await resolve(self.lister, normalize(path))
        if not metadata.is_dir:
            return ListResult(entries=(metadata,), report=run.finish(self.lister))
        entries: list[ObjectMetadata] = []
        async for item in walk(
            self.lister,
            metadata.path,
            recursive=recursive or max_depth is not None,
            max_depth=max_depth,
            token=self.token,
        ):
            if item.failed:
                await run.fail(item.path, item.error, TaskKind.LIST)
                continue
            entries.append(item.metadata)
        return ListResult(entries=tuple(entries), report=run.finish(self.lister))

    async def du(self, path: str = "", summary: bool = False) -> UsageResult:
        run = self._start()
        metadata = await resolve(self.lister, normalize(path))
        if not metadata.is_dir:
            row = UsageRow(path=metadata.path, size=metadata.size, file_count=1, is_dir=False)
            return UsageResult(
                rows=(row,),
                total_size=metadata.size,
                file_count=1,
                report=run.finish(self.lister),
            )

        root = metadata.path
        children: dict[StoragePath, ObjectMetadata] = {}
        sizes: dict[StoragePath, int] = defaultdict(int)
        counts: dict[StoragePath, int] = defaultdict(int)
        async for item in walk(self.lister, root, recursive=True, token=self.token):
            if item.failed:
                await run.fail(item.path, item.error, TaskKind.LIST)
                continue
            first, _, rest = relative_to(item.path, root).partition("/")
            top = join(root, f"{first}/") if rest else item.path
            if item.depth == 1:
                children[top] = item.metadata
            if not item.metadata.is_dir:
                sizes[top] += item.metadata.size
                counts[top] += 1

        total_size = sum(sizes.values())
        file_count = sum(counts.values())
        if summary:
            rows = (UsageRow(path=root, size=total_size, file_count=file_count, is_dir=True),)
        else:
            rows = tuple(
                UsageRow(
                    path=child.path,
                    size=sizes[top],
                    file_count=counts[top],
                    is_dir=child.is_dir,
                )
                for top, child in children.items()
            )
        return UsageResult(
            rows=rows,
            total_size=total_size,
            file_count=file_count,
            report=run.finish(self.lister),
        )

    async def stat(self, path: str) -> ObjectMetadata:
        return await resolve(self.lister, normalize(path))

    async def cat(self, path: str) -> AsyncIterator[bytes]:
        metadata = await self.stat(path)
        if metadata.is_dir:
            raise IsADirectory(f"{metadata.path.key or '/'}: is a directory", path=metadata.path.key)
        async for chunk in self.backend.read(metadata.path.key, self.chunk_size):
            yield chunk

    # -- transfers ---------------------------------------------------------

    async def _plan(
        self,
        run: _Run,
        lister: EntryLister,
        source: ObjectMetadata,
        target: StoragePath,
        kind: TaskKind,
        exclude: Optional[StoragePath] = None,
    ) -> tuple[list[OperationTask], list[ObjectMetadata], set[StoragePath]]:
        """Enumerate ``source`` into tasks writing below ``target``.

        Returns the tasks, the directories seen (in walk order) and the
        directories whose listing failed. Directories without descendants get
        a ``CREATE_DIR`` task so they survive the transfer.
        """
        if not source.is_dir:
            return [OperationTask(kind, source.path, target, metadata=source)], [], set()

        tasks: list[OperationTask] = []
        directories: list[ObjectMetadata] = []
        broken: set[StoragePath] = set()
        populated: set[StoragePath] = set()
        async for item in walk(lister, source.path, recursive=True, token=self.token):
            if exclude is not None and (
                same_location(item.path, exclude) or is_ancestor(exclude, item.path)
            ):
                continue
            if item.failed:
                await run.fail(item.path, item.error, kind)
                broken.add(item.path)
                continue
            populated.add(item.parent)
            if item.metadata.is_dir:
                directories.append(item.metadata)
                continue
            tasks.append(
                OperationTask(
                    kind,
                    item.path,
                    rebase(item.path, source.path, target),
                    metadata=item.metadata,
                )
            )

        empty = [source] if source.path.as_dir() not in populated else []
        empty += [
            directory
            for directory in directories
            if directory.path not in populated and directory.path not in broken
        ]
        for directory in empty:
            destination = rebase(directory.path, source.path, target.as_dir())
            if destination.is_root:
                continue
            tasks.append(
                OperationTask(TaskKind.CREATE_DIR, directory.path, destination, metadata=directory)
            )
        return tasks, directories, broken

    async def _target(
        self,
        source: ObjectMetadata,
        destination: StoragePath,
        name: Optional[str],
        lister: Optional[EntryLister] = None,
    ) -> StoragePath:
        """Work out where ``source`` lands when copied to ``destination``.

        An existing directory, or a destination ending in ``/``, receives the
        source under its own ``name``; ``name`` is None when the source is a
        namespace root, which is never nested that way.
        """
        existing = await self._lookup(destination, lister)
        if existing is not None and not existing.is_dir and source.is_dir:
            raise NotADirectory(
                f"Cannot overwrite non-directory {destination.key} with a directory",
                path=destination.key,
            )
        into_directory = destination.is_dir or (existing is not None and existing.is_dir)
        if not into_directory:
            return destination.as_dir() if source.is_dir else destination
        if existing is None and not source.is_dir:
            raise InvalidPath(
                f"Destination directory does not exist: {destination.key}",
                path=destination.key,
            )
        if name is None:
            return destination.as_dir()
        target = join(destination, name)
        return target.as_dir() if source.is_dir else target

    async def _copy_within(self, src: str, dst: str, kind: TaskKind) -> BatchReport:
        run = self._start()
        source = await resolve(self.lister, normalize(src))
        name = None if source.path.is_root else basename(source.path)
        target = await self._target(source, normalize(dst), name)
        if same_location(source.path, target) or (
            not source.path.is_root and is_ancestor(source.path, target)
        ):
            raise InvalidTarget(
                f"Cannot {kind.value} {source.path.key or '/'} into itself ({target.key or '/'})",
                path=target.key,
            )
        exclude = None
        if source.path.is_root:
            # The destination lives inside the root; leave it out of the walk.
            exclude = target
        tasks, directories, broken = await self._plan(
            run, self.lister, source, target, kind, exclude=exclude
        )
        outcomes = await run.execute(self._executor(), tasks)
        if kind == TaskKind.MOVE and source.is_dir:
            failed = [outcome.task.source for outcome in outcomes if not outcome.succeeded]
            failed += list(broken)
            if not source.path.is_root:
                directories = directories + [source]
            await self._remove_directories(run, directories, failed, report_blocked=False)
        return run.finish(self.lister)

    async def cp(self, src: str, dst: str) -> BatchReport:
        return await self._copy_within(src, dst, TaskKind.COPY)

    async def mv(self, src: str, dst: str) -> BatchReport:
        return await self._copy_within(src, dst, TaskKind.MOVE)

    async def get(self, remote: str, local: str) -> BatchReport:
        run = self._start()
        source = await resolve(self.lister, normalize(remote))
        local_path = Path(local).expanduser()
        if local_path.is_dir() or local.endswith(("/", "\\")):
            local_backend = LocalBackend(local_path, create=True)
            if source.path.is_root:
                target = ROOT
            else:
                target = normalize(basename(source.path))
        else:
            local_backend = LocalBackend(local_path.parent)
            target = normalize(local_path.name)
        if source.is_dir:
            target = target.as_dir()
        local_lister = EntryLister(local_backend)
        existing = await self._lookup(target, local_lister)
        if existing is not None and not existing.is_dir and source.is_dir:
            raise NotADirectory(f"Not a directory: {local_path}", path=str(local_path))
        tasks, _, _ = await self._plan(run, self.lister, source, target, TaskKind.DOWNLOAD)
        executor = self._executor(source=self.backend, destination=local_backend)
        await run.execute(executor, tasks)
        return run.finish(self.lister, local_lister)

    async def put(self, local: str, remote: str, recursive: bool = False) -> BatchReport:
        run = self._start()
        local_path = Path(local).expanduser()
        if not local_path.exists():
            raise NotFound(f"No such file or directory: {local}", path=local)
        if local_path.is_dir():
            if not recursive:
                raise IsADirectory(f"{local}: is a directory (use -R)", path=local)
            local_backend = LocalBackend(local_path)
            source = ObjectMetadata(path=ROOT, kind=EntryKind.DIRECTORY)
            name = local_backend.root.name or None
        else:
            local_backend = LocalBackend(local_path.parent)
            name = local_path.name
            source = await resolve(EntryLister(local_backend), normalize(name))
        local_lister = EntryLister(local_backend)
        target = await self._target(source, normalize(remote), name)
        tasks, _, _ = await self._plan(run, local_lister, source, target, TaskKind.UPLOAD)
        executor = self._executor(source=local_backend, destination=self.backend)
        await run.execute(executor, tasks)
        return run.finish(self.lister, local_lister)

    # -- removal -----------------------------------------------------------

    async def _remove_directories(
        self,
        run: _Run,
        directories: Iterable[ObjectMetadata],
        failed: list[StoragePath],
        report_blocked: bool = True,
        ignore_missing: bool = False,
    ) -> None:
        """Delete ``directories`` deepest first, one depth level per stage.

        A directory with a failed path at or below it is kept; with
        ``report_blocked`` that is recorded as a failure of its own.
        Synthetic directories may still have a marker object (S3 reports
        every directory as a common prefix), so their delete tolerates
        ``NotFound``.
        """
        strict = self._executor(ignore_missing=ignore_missing)
        lenient = self._executor(ignore_missing=True)
        by_depth: dict[int, list[ObjectMetadata]] = defaultdict(list)
        for directory in directories:
            by_depth[directory.path.depth].append(directory)

        for depth in sorted(by_depth, reverse=True):
            explicit: list[OperationTask] = []
            synthetic: list[OperationTask] = []
            for directory in by_depth[depth]:
                blocked = [
                    path
                    for path in failed
                    if same_location(path, directory.path) or is_ancestor(directory.path, path)
                ]
                if blocked:
                    if report_blocked and not any(
                        same_location(path, directory.path) for path in blocked
                    ):
                        await run.fail(
                            directory.path,
                            BackendUnavailable(
                                f"Directory not empty: {directory.path.key} "
                                f"({len(blocked)} item(s) below it could not be deleted)",
                                path=directory.path.key,
                            ),
                            TaskKind.DELETE,
                        )
                    if directory.path not in failed:
                        failed.append(directory.path)
                    continue
                task = OperationTask(TaskKind.DELETE, directory.path, metadata=directory)
                (synthetic if directory.synthetic else explicit).append(task)
            outcomes = await run.execute(strict, explicit)
            outcomes += await run.execute(lenient, synthetic)
            failed.extend(outcome.task.source for outcome in outcomes if not outcome.succeeded)

    async def rm(
        self, paths: Iterable[str], recursive: bool = False, force: bool = False
    ) -> BatchReport:
        run = self._start()
        executor = self._executor(ignore_missing=force)
        for raw in paths:
            target = normalize(raw)
            try:
                metadata = await resolve(self.lister, target)
            except NotFound as exc:
                if not force:
                    await run.fail(target, exc, TaskKind.DELETE)
                continue
            if not metadata.is_dir:
                await run.execute(
                    executor, [OperationTask(TaskKind.DELETE, metadata.path, metadata=metadata)]
                )
                continue
            if not recursive:
                await run.fail(
                    metadata.path,
                    IsADirectory(
                        f"{metadata.path.key or '/'}: is a directory (use -R)",
                        path=metadata.path.key,
                    ),
                    TaskKind.DELETE,
                )
                continue
            await self._remove_tree(run, executor, metadata, force)
        return run.finish(self.lister)

    async def _remove_tree(
        self, run: _Run, executor: BatchExecutor, root: ObjectMetadata, force: bool = False
    ) -> None:
        files: list[OperationTask] = []
        directories: list[ObjectMetadata] = []
        failed: list[StoragePath] = []
        async for item in walk(self.lister, root.path, recursive=True, token=self.token):
            if item.failed:
                await run.fail(item.path, item.error, TaskKind.DELETE)
                failed.append(item.path)
            elif item.metadata.is_dir:
                directories.append(item.metadata)
            else:
                files.append(OperationTask(TaskKind.DELETE, item.path, metadata=item.metadata))
        if not root.path.is_root:
            directories.append(root)
        outcomes = await run.execute(executor, files)
        failed.extend(outcome.task.source for outcome in outcomes if not outcome.succeeded)
        await self._remove_directories(run, directories, failed, ignore_missing=force)

    # -- directories -------------------------------------------------------

    async def mkdir(self, path: str, parents: bool = False) -> BatchReport:
        run = self._start()
        target = normalize(path).as_dir()
        if target.is_root:
            if not parents:
                raise AlreadyExists("Cannot create the root directory: it already exists")
            return run.finish(self.lister)

        missing: list[StoragePath] = []
        if parents:
            for ancestor in lineage(target):
                if not missing:
                    existing = await self._lookup(ancestor.as_file())
                    if existing is not None:
                        if not existing.is_dir:
                            raise NotADirectory(
                                f"Not a directory: {ancestor.as_file().key}",
                                path=ancestor.key,
                            )
                        continue
                missing.append(ancestor)
        else:
            if await self._lookup(target.as_file()) is not None:
                raise AlreadyExists(f"Already exists: {target.key}", path=target.key)
            parent = target.parent
            if not parent.is_root:
                existing = await self._lookup(parent.as_file())
                if existing is None:
                    raise NotFound(
                        f"Parent directory does not exist: {parent.key}", path=parent.key
                    )
                if not existing.is_dir:
                    raise NotADirectory(f"Not a directory: {parent.as_file().key}", path=parent.key)
            missing.append(target)

        tasks = [
            OperationTask(TaskKind.CREATE_DIR, directory, directory) for directory in missing
        ]
        # Ancestors must exist before their children, so one at a time.
        executor = self._executor(concurrency=1, fail_fast=True, token=CancellationToken())
        await run.execute(executor, tasks)
        return run.finish(self.lister)
