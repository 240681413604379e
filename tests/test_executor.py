import asyncio
import unittest

from ossify.errors import BackendUnavailable, ErrorKind, PermissionDenied
from ossify.executor import BatchExecutor, CancellationToken
from ossify.memory import MemoryBackend
from ossify.models import OperationOutcome, OperationTask, TaskKind
from ossify.paths import StoragePath
from ossify.report import BatchAggregator


def _copy_tasks(keys, prefix="copy/"):
    return [
        OperationTask(TaskKind.COPY, StoragePath(key), StoragePath(f"{prefix}{key}"))
        for key in keys
    ]


def _delete_tasks(keys):
    return [OperationTask(TaskKind.DELETE, StoragePath(key)) for key in keys]


class _SlowDeleteBackend(MemoryBackend):
    """Tracks how many deletes are in flight at once."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.active = 0
        self.peak = 0

    async def delete(self, key: str) -> None:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
            await super().delete(key)
        finally:
            self.active -= 1


class TestBatchExecutor(unittest.TestCase):
    def test_partial_failures_are_reported_in_submission_order(self) -> None:
        keys = [f"data/file{index:02d}.txt" for index in range(12)]
        backend = MemoryBackend({key: key.encode() for key in keys})
        backend.inject_failure("read", keys[9], BackendUnavailable("timeout"))
        backend.inject_failure("read", keys[3], PermissionDenied("denied"))

        report = asyncio.run(BatchExecutor(backend, concurrency=4).execute(_copy_tasks(keys)))

        self.assertEqual(report.total_items, 12)
        self.assertEqual(report.succeeded, 10)
        self.assertEqual([failure.path.key for failure in report.failed], [keys[3], keys[9]])
        self.assertEqual(
            [failure.kind for failure in report.failed],
            [ErrorKind.PERMISSION_DENIED, ErrorKind.BACKEND_UNAVAILABLE],
        )
        self.assertEqual(report.exit_status, 1)
        self.assertEqual(backend.objects["copy/data/file00.txt"].data, b"data/file00.txt")
        self.assertNotIn(f"copy/{keys[3]}", backend.objects)

    def test_copy_counts_bytes(self) -> None:
        backend = MemoryBackend({"a": b"x" * 10, "b": b"y" * 5})
        report = asyncio.run(BatchExecutor(backend, chunk_size=4).execute(_copy_tasks(["a", "b"])))

        self.assertTrue(report.ok)
        self.assertEqual(report.exit_status, 0)
        self.assertEqual(report.total_bytes, 15)

    def test_concurrency_is_bounded(self) -> None:
        keys = [f"k{index}" for index in range(10)]
        backend = _SlowDeleteBackend({key: b"" for key in keys})

        report = asyncio.run(BatchExecutor(backend, concurrency=3).execute(_delete_tasks(keys)))

        self.assertEqual(report.succeeded, 10)
        self.assertEqual(backend.peak, 3)

    def test_tasks_start_in_submission_order(self) -> None:
        keys = ["c", "a", "b", "e", "d"]
        backend = MemoryBackend({key: b"" for key in keys})

        asyncio.run(BatchExecutor(backend, concurrency=2).execute(_delete_tasks(keys)))

        self.assertEqual([key for op, key in backend.calls if op == "delete"], keys)

    def test_fail_fast_stops_scheduling(self) -> None:
        keys = ["a", "b", "c", "d", "e"]
        backend = MemoryBackend({key: b"" for key in keys})
        backend.inject_failure("delete", "b", BackendUnavailable("boom"))
        token = CancellationToken()

        report = asyncio.run(
            BatchExecutor(backend, concurrency=1, fail_fast=True, token=token).execute(
                _delete_tasks(keys)
            )
        )

        self.assertTrue(token.cancelled)
        self.assertEqual(report.succeeded, 1)
        self.assertEqual(len(report.failed), 1)
        self.assertEqual(report.cancelled, 3)
        self.assertEqual(report.total_items, 5)
        self.assertEqual(report.exit_status, 1)
        self.assertIn("c", backend.objects)

    def test_cancelled_token_drains_without_starting(self) -> None:
        backend = MemoryBackend({"a": b"", "b": b""})
        token = CancellationToken()
        token.cancel("interrupted")

        report = asyncio.run(BatchExecutor(backend, token=token).execute(_delete_tasks(["a", "b"])))

        self.assertEqual(report.cancelled, 2)
        self.assertEqual(report.succeeded, 0)
        self.assertFalse(report.ok)
        self.assertEqual(set(backend.objects), {"a", "b"})

    def test_move_falls_back_to_copy_and_delete(self) -> None:
        backend = MemoryBackend({"src.txt": b"payload"})
        task = OperationTask(TaskKind.MOVE, StoragePath("src.txt"), StoragePath("dst.txt"))

        report = asyncio.run(BatchExecutor(backend).execute([task]))

        self.assertTrue(report.ok)
        self.assertNotIn("src.txt", backend.objects)
        self.assertEqual(backend.objects["dst.txt"].data, b"payload")

    def test_move_reports_partial_move_when_delete_fails(self) -> None:
        backend = MemoryBackend({"src.txt": b"payload"})
        backend.inject_failure("delete", "src.txt", PermissionDenied("read-only"))
        task = OperationTask(TaskKind.MOVE, StoragePath("src.txt"), StoragePath("dst.txt"))

        report = asyncio.run(BatchExecutor(backend).execute([task]))

        self.assertEqual(report.succeeded, 0)
        self.assertEqual(report.failed[0].kind, ErrorKind.PARTIAL_MOVE)
        self.assertEqual(backend.objects["src.txt"].data, b"payload")
        self.assertEqual(backend.objects["dst.txt"].data, b"payload")

    def test_move_uses_rename_when_supported(self) -> None:
        backend = MemoryBackend({"src.txt": b"payload"}, supports_rename=True)
        task = OperationTask(TaskKind.MOVE, StoragePath("src.txt"), StoragePath("dst.txt"))

        report = asyncio.run(BatchExecutor(backend).execute([task]))

        self.assertTrue(report.ok)
        self.assertIn(("rename", "src.txt"), backend.calls)
        self.assertNotIn(("read", "src.txt"), backend.calls)

    def test_delete_ignores_missing_when_asked(self) -> None:
        backend = MemoryBackend()
        tasks = _delete_tasks(["gone"])

        strict = asyncio.run(BatchExecutor(backend).execute(tasks))
        lenient = asyncio.run(BatchExecutor(backend, ignore_missing=True).execute(tasks))

        self.assertEqual(strict.failed[0].kind, ErrorKind.NOT_FOUND)
        self.assertTrue(lenient.ok)

    def test_create_dir_tolerates_existing(self) -> None:
        backend = MemoryBackend({"a/": b""})
        task = OperationTask(TaskKind.CREATE_DIR, StoragePath("a/"), StoragePath("a/"))

        report = asyncio.run(BatchExecutor(backend).execute([task, task]))

        self.assertEqual(report.succeeded, 2)

    def test_upload_and_download_cross_backends(self) -> None:
        local = MemoryBackend({"report.csv": b"1,2,3"})
        remote = MemoryBackend()
        upload = OperationTask(TaskKind.UPLOAD, StoragePath("report.csv"), StoragePath("in/report.csv"))

        report = asyncio.run(BatchExecutor(local, remote).execute([upload]))

        self.assertTrue(report.ok)
        self.assertEqual(remote.objects["in/report.csv"].data, b"1,2,3")

        download = OperationTask(TaskKind.DOWNLOAD, StoragePath("in/report.csv"), StoragePath("back.csv"))
        asyncio.run(BatchExecutor(remote, local).execute([download]))
        self.assertEqual(local.objects["back.csv"].data, b"1,2,3")

    def test_run_stages_waits_for_each_stage(self) -> None:
        backend = _SlowDeleteBackend({"d/x": b"", "d/y": b"", "d/": b""})
        stages = [_delete_tasks(["d/x", "d/y"]), _delete_tasks(["d/"])]

        report = asyncio.run(BatchExecutor(backend, concurrency=4).run_stages(stages))

        self.assertEqual(report.succeeded, 3)
        self.assertEqual([key for op, key in backend.calls if op == "delete"][-1], "d/")
        self.assertEqual(backend.objects, {})

    def test_rejects_invalid_concurrency(self) -> None:
        with self.assertRaises(ValueError):
            BatchExecutor(MemoryBackend(), concurrency=0)


class TestBatchAggregator(unittest.TestCase):
    def _make_outcome(self, index, failed=False):
        task = OperationTask(TaskKind.DELETE, StoragePath(f"k{index}"))
        if failed:
            return OperationOutcome(
                index=index, task=task, error_kind=ErrorKind.NOT_FOUND, message="missing"
            )
        return OperationOutcome(index=index, task=task, bytes_transferred=index)

    def test_finalize_is_idempotent(self) -> None:
        aggregator = BatchAggregator()

        async def record():
            for index in (2, 0, 1):
                await aggregator.record(self._make_outcome(index, failed=index != 1))

        asyncio.run(record())
        first = aggregator.finalize()
        second = aggregator.finalize()

        self.assertIs(first, second)
        self.assertEqual([failure.path.key for failure in first.failed], ["k0", "k2"])
        self.assertEqual(first.total_bytes, 1)

    def test_record_after_finalize_raises(self) -> None:
        aggregator = BatchAggregator()
        aggregator.finalize()
        with self.assertRaises(RuntimeError):
            asyncio.run(aggregator.record(self._make_outcome(0)))

    def test_progress_events_only_grow(self) -> None:
        keys = [f"f{index}" for index in range(6)]
        backend = MemoryBackend({key: b"z" * 3 for key in keys})
        aggregator = BatchAggregator()
        events = []
        aggregator.subscribe(events.append)

        asyncio.run(
            BatchExecutor(backend, concurrency=3, chunk_size=1).execute(
                _copy_tasks(keys), aggregator
            )
        )

        self.assertTrue(events)
        for previous, current in zip(events, events[1:]):
            self.assertGreaterEqual(current.items_completed, previous.items_completed)
            self.assertGreaterEqual(current.bytes_transferred, previous.bytes_transferred)
        self.assertEqual(events[-1].items_completed, 6)
        self.assertEqual(events[-1].items_total, 6)
        self.assertEqual(events[-1].bytes_transferred, 18)


if __name__ == "__main__":
    unittest.main()
