import asyncio
import io
import json
import os
import signal
import tempfile
import unittest
from types import SimpleNamespace
from unittest.mock import patch

from rich.console import Console

from ossify.app import build_parser, confirm_deletion, main
from ossify.errors import PermissionDenied
from ossify.memory import MemoryBackend


class _InterruptingBackend(MemoryBackend):
    """Sends SIGINT to this process during the first write."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.interrupted = False
        self.handler_after_interrupt = None

    async def write(self, key, chunks):
        if not self.interrupted:
            self.interrupted = True
            os.kill(os.getpid(), signal.SIGINT)
            # Let the event loop run its signal handler.
            await asyncio.sleep(0.1)
            self.handler_after_interrupt = signal.getsignal(signal.SIGINT)
        return await super().write(key, chunks)


class TestCliDispatch(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.backend = MemoryBackend(
            {
                "docs/a.txt": b"a" * 100,
                "docs/b.txt": b"b" * 200,
                "docs/sub/c.txt": b"c" * 300,
            }
        )

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def _main(self, argv, answer="y"):
        err = Console(file=io.StringIO(), width=200, color_system=None)
        with patch.dict(os.environ, {"XDG_CONFIG_HOME": self._temp_dir.name}, clear=True), patch(
            "ossify.app.create_backend", return_value=self.backend
        ) as create, patch("ossify.app.err_console", err), patch(
            "builtins.input", return_value=answer
        ), patch("builtins.print") as printed:
            code = main(["--provider", "memory", *argv])
        lines = [" ".join(str(arg) for arg in call.args) for call in printed.call_args_list]
        return code, lines, err.file.getvalue(), create

    def test_ls_long(self) -> None:
        code, lines, _, _ = self._main(["ls", "-L", "docs"])

        self.assertEqual(code, 0)
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[0].startswith("FILE"))
        self.assertTrue(lines[0].endswith("docs/a.txt"))
        self.assertTrue(lines[2].startswith("DIR"))

    def test_du_summary(self) -> None:
        code, lines, _, _ = self._main(["du", "-s", "docs"])

        self.assertEqual(code, 0)
        self.assertEqual(lines, ["600 B docs/", "Total files: 3"])

    def test_stat_json(self) -> None:
        code, lines, _, _ = self._main(["stat", "--format", "json", "docs/a.txt"])

        self.assertEqual(code, 0)
        payload = json.loads(lines[0])
        self.assertEqual(payload["path"], "docs/a.txt")
        self.assertEqual(payload["size"], 100)

    def test_cat_writes_raw_bytes(self) -> None:
        stdout = SimpleNamespace(buffer=io.BytesIO())
        with patch("ossify.app.sys.stdout", stdout):
            code, _, _, _ = self._main(["cat", "docs/a.txt"])

        self.assertEqual(code, 0)
        self.assertEqual(stdout.buffer.getvalue(), b"a" * 100)

    def test_missing_path_exits_one(self) -> None:
        code, _, err, _ = self._main(["stat", "nope"])

        self.assertEqual(code, 1)
        self.assertIn("error: NotFound", err)

    def test_invalid_path_exits_one(self) -> None:
        code, _, err, _ = self._main(["ls", "../outside"])

        self.assertEqual(code, 1)
        self.assertIn("InvalidPath", err)

    def test_cp_reports_summary(self) -> None:
        code, _, err, _ = self._main(["cp", "docs", "copy"])

        self.assertEqual(code, 0)
        self.assertIn("Copied 3/3 item(s)", err)
        self.assertIn("copy/sub/c.txt", self.backend.objects)

    @unittest.skipUnless(os.name == "posix", "needs POSIX signals")
    def test_ctrl_c_drains_running_copy_and_exits_130(self) -> None:
        self.backend = _InterruptingBackend({f"docs/f{index}": b"x" * 10 for index in range(5)})

        code, lines, err, _ = self._main(["-c", "1", "cp", "docs", "copy"])

        self.assertEqual(code, 130)
        self.assertIn("Interrupted; waiting for running transfers to finish...", lines)
        copied = sorted(key for key in self.backend.objects if key.startswith("copy/"))
        self.assertEqual(copied, ["copy/f0"])
        self.assertEqual(self.backend.objects["copy/f0"].data, b"x" * 10)
        self.assertIn("Copied 1/5 item(s), 10 B, 4 cancelled", err)
        self.assertIn("Stopped early: interrupted", err)
        # A second Ctrl-C would raise KeyboardInterrupt.
        self.assertIs(self.backend.handler_after_interrupt, signal.default_int_handler)

    def test_partial_failure_exits_one(self) -> None:
        self.backend.inject_failure("delete", "docs/b.txt", PermissionDenied("locked"))

        code, _, err, _ = self._main(["rm", "-R", "-f", "docs"])

        self.assertEqual(code, 1)
        self.assertIn("failed: docs/b.txt: PermissionDenied: locked", err)
        self.assertNotIn("docs/a.txt", self.backend.objects)
        self.assertIn("docs/b.txt", self.backend.objects)

    def test_rm_declined_touches_nothing(self) -> None:
        code, lines, _, create = self._main(["rm", "docs/a.txt"], answer="n")

        self.assertEqual(code, 0)
        self.assertIn("Operation cancelled.", lines)
        create.assert_not_called()
        self.assertIn("docs/a.txt", self.backend.objects)

    def test_rm_confirmed(self) -> None:
        code, lines, _, _ = self._main(["rm", "docs/a.txt"], answer="yes")

        self.assertEqual(code, 0)
        self.assertEqual(lines[0], "About to delete 1 item(s):")
        self.assertNotIn("docs/a.txt", self.backend.objects)

    def test_mkdir_parents(self) -> None:
        code, _, _, _ = self._main(["mkdir", "-p", "x/y"])

        self.assertEqual(code, 0)
        self.assertIn("x/y/", self.backend.objects)

    def test_config_error_exits_two(self) -> None:
        err = Console(file=io.StringIO(), width=200, color_system=None)
        with patch.dict(os.environ, {"XDG_CONFIG_HOME": self._temp_dir.name}, clear=True), patch(
            "ossify.app.err_console", err
        ):
            code = main(["--provider", "oss", "ls"])

        self.assertEqual(code, 2)
        self.assertIn("STORAGE_BUCKET", err.file.getvalue())

    def test_usage_error_exits_two(self) -> None:
        with patch("sys.stderr", io.StringIO()):
            with self.assertRaises(SystemExit) as caught:
                main(["ls", "--max-depth", "0"])
        self.assertEqual(caught.exception.code, 2)


class TestCliHelpers(unittest.TestCase):
    def test_parser_defaults(self) -> None:
        args = build_parser().parse_args(["ls"])
        self.assertEqual(args.path, "")
        self.assertFalse(args.recursive)
        self.assertIsNone(args.concurrency)

    def test_confirm_deletion_preview(self) -> None:
        paths = [f"file{index}" for index in range(8)]
        with patch("builtins.input", return_value="y"), patch("builtins.print") as printed:
            self.assertTrue(confirm_deletion(paths, force=False))
        lines = [call.args[0] for call in printed.call_args_list]
        self.assertEqual(lines[0], "About to delete 8 item(s):")
        self.assertEqual(lines[-1], "  ... and 3 more")

    def test_confirm_deletion_eof_declines(self) -> None:
        with patch("builtins.input", side_effect=EOFError), patch("builtins.print"):
            self.assertFalse(confirm_deletion(["a"], force=False))
        self.assertTrue(confirm_deletion(["a"], force=True))


if __name__ == "__main__":
    unittest.main()
