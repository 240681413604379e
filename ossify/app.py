from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.logging import RichHandler

from .backend import create_backend
from .commands import StorageShell
from .config import Provider, StorageConfig, load_config
from .errors import ConfigError, IsADirectory, OssifyError
from .executor import CancellationToken
from .output import (
    STAT_FORMATS,
    ProgressDisplay,
    format_entry,
    format_usage,
    print_report,
    render_stat,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

ONE_MB = 1024 * 1024
CAT_CONFIRM_SIZE = 10 * ONE_MB
RM_PREVIEW_LIMIT = 5

TRANSFER_VERBS = {
    "get": "Downloaded",
    "put": "Uploaded",
    "cp": "Copied",
    "mv": "Moved",
    "rm": "Deleted",
}

err_console = Console(stderr=True)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    # botocore is very chatty at DEBUG.
    logging.getLogger("botocore").setLevel(logging.WARNING)


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ossify",
        description="HDFS-style file operations over object storage (OSS, S3, MinIO, local)",
    )
    parser.add_argument(
        "--provider",
        choices=[provider.value for provider in Provider],
        help="Storage provider (defaults to STORAGE_PROVIDER, then oss)",
    )
    parser.add_argument("--bucket", help="Bucket name override")
    parser.add_argument("--endpoint", help="Endpoint URL override")
    parser.add_argument("--region", help="Region override")
    parser.add_argument("--profile", help="AWS profile for the s3 provider")
    parser.add_argument("--root", help="Root directory for the fs provider")
    parser.add_argument(
        "-c",
        "--concurrency",
        type=_positive_int,
        help="Maximum number of concurrent transfers (default 8)",
    )
    parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop scheduling new work after the first failure",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    ls_cmd = sub.add_parser("ls", help="List directory contents")
    ls_cmd.add_argument("path", nargs="?", default="")
    ls_cmd.add_argument("-L", "--long", action="store_true", help="Show type, size and modified time")
    ls_cmd.add_argument("-R", "--recursive", action="store_true", help="List subdirectories recursively")
    ls_cmd.add_argument("--max-depth", type=_positive_int, help="Limit recursion depth")

    get_cmd = sub.add_parser("get", help="Download files to the local filesystem")
    get_cmd.add_argument("remote")
    get_cmd.add_argument("local")

    put_cmd = sub.add_parser("put", help="Upload local files")
    put_cmd.add_argument("local")
    put_cmd.add_argument("remote")
    put_cmd.add_argument("-R", "--recursive", action="store_true", help="Upload directories recursively")

    cp_cmd = sub.add_parser("cp", help="Copy files or directories within storage")
    cp_cmd.add_argument("src")
    cp_cmd.add_argument("dst")

    mv_cmd = sub.add_parser("mv", help="Move files or directories within storage")
    mv_cmd.add_argument("src")
    mv_cmd.add_argument("dst")

    rm_cmd = sub.add_parser("rm", help="Remove files or directories")
    rm_cmd.add_argument("paths", nargs="+")
    rm_cmd.add_argument("-R", "--recursive", action="store_true", help="Remove directories and their contents")
    rm_cmd.add_argument("-f", "--force", action="store_true", help="Skip confirmation and ignore missing paths")

    du_cmd = sub.add_parser("du", help="Show disk usage")
    du_cmd.add_argument("path", nargs="?", default="")
    du_cmd.add_argument("-s", "--summary", action="store_true", help="Show only the total")

    mkdir_cmd = sub.add_parser("mkdir", help="Create a directory")
    mkdir_cmd.add_argument("path")
    mkdir_cmd.add_argument("-p", "--parents", action="store_true", help="Create missing parent directories")

    stat_cmd = sub.add_parser("stat", help="Show metadata for one path")
    stat_cmd.add_argument("path")
    stat_cmd.add_argument("--format", choices=STAT_FORMATS, default="human", dest="stat_format")

    cat_cmd = sub.add_parser("cat", help="Print a file to stdout")
    cat_cmd.add_argument("path")
    return parser


def confirm_deletion(paths: list[str], force: bool) -> bool:
    if force:
        return True
    print(f"About to delete {len(paths)} item(s):")
    for path in paths[:RM_PREVIEW_LIMIT]:
        print(f"  {path or '/'}")
    if len(paths) > RM_PREVIEW_LIMIT:
        print(f"  ... and {len(paths) - RM_PREVIEW_LIMIT} more")
    try:
        answer = input("Continue? (y/N): ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def confirm_large_file(size: int) -> bool:
    if not sys.stdin.isatty():
        print(
            f"File is large ({size // ONE_MB} MB). "
            "Skipping display in non-interactive mode."
        )
        return False
    try:
        answer = input(f"File is large ({size // ONE_MB} MB). Do you want to display it? (y/N) ")
    except EOFError:
        answer = ""
    if answer.strip().lower() in ("y", "yes"):
        return True
    print("Display cancelled.")
    return False


async def _run_ls(args: argparse.Namespace, shell: StorageShell) -> int:
    result = await shell.ls(args.path, recursive=args.recursive, max_depth=args.max_depth)
    for entry in result.entries:
        print(format_entry(entry, long=args.long))
    print_report(result.report, err_console)
    return result.report.exit_status


async def _run_du(args: argparse.Namespace, shell: StorageShell) -> int:
    result = await shell.du(args.path, summary=args.summary)
    for row in result.rows:
        print(format_usage(row.size, row.path))
    if args.summary:
        print(f"Total files: {result.file_count}")
    print_report(result.report, err_console)
    return result.report.exit_status


async def _run_stat(args: argparse.Namespace, shell: StorageShell) -> int:
    metadata = await shell.stat(args.path)
    print(render_stat(metadata, args.stat_format))
    return EXIT_OK


async def _run_cat(args: argparse.Namespace, shell: StorageShell) -> int:
    metadata = await shell.stat(args.path)
    if metadata.is_dir:
        raise IsADirectory(f"{args.path}: is a directory", path=args.path)
    if metadata.size > CAT_CONFIRM_SIZE and not confirm_large_file(metadata.size):
        return EXIT_OK
    out = sys.stdout.buffer
    async for chunk in shell.cat(args.path):
        out.write(chunk)
    out.flush()
    return EXIT_OK


async def _run_mkdir(args: argparse.Namespace, shell: StorageShell) -> int:
    report = await shell.mkdir(args.path, parents=args.parents)
    print_report(report, err_console, verb="Created")
    return report.exit_status


async def _run_transfer(args: argparse.Namespace, shell: StorageShell) -> int:
    if args.command == "get":
        report = await shell.get(args.remote, args.local)
    elif args.command == "put":
        report = await shell.put(args.local, args.remote, recursive=args.recursive)
    elif args.command == "cp":
        report = await shell.cp(args.src, args.dst)
    elif args.command == "mv":
        report = await shell.mv(args.src, args.dst)
    else:
        report = await shell.rm(args.paths, recursive=args.recursive, force=args.force)
    print_report(report, err_console, verb=TRANSFER_VERBS[args.command])
    return report.exit_status


HANDLERS = {
    "ls": _run_ls,
    "du": _run_du,
    "stat": _run_stat,
    "cat": _run_cat,
    "mkdir": _run_mkdir,
    "get": _run_transfer,
    "put": _run_transfer,
    "cp": _run_transfer,
    "mv": _run_transfer,
    "rm": _run_transfer,
}


async def run_command(args: argparse.Namespace, config: StorageConfig) -> int:
    """Run one parsed command; Ctrl-C drains in-flight work, then exits 130."""
    token = CancellationToken()
    interrupted = False

    def on_interrupt() -> None:
        nonlocal interrupted
        interrupted = True
        print("Interrupted; waiting for running transfers to finish...", file=sys.stderr)
        token.cancel("interrupted")
        # A second Ctrl-C raises KeyboardInterrupt right away.
        loop.remove_signal_handler(signal.SIGINT)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        # No signal handlers outside the main thread or on Windows;
        # KeyboardInterrupt still ends the run.
        handler_installed = False

    backend = create_backend(config)
    concurrency = args.concurrency or config.concurrency
    try:
        if args.command in TRANSFER_VERBS:
            with ProgressDisplay(TRANSFER_VERBS[args.command], console=err_console) as progress:
                shell = StorageShell(
                    backend,
                    concurrency=concurrency,
                    fail_fast=args.fail_fast,
                    progress=progress,
                    token=token,
                )
                code = await HANDLERS[args.command](args, shell)
        else:
            shell = StorageShell(
                backend, concurrency=concurrency, fail_fast=args.fail_fast, token=token
            )
            code = await HANDLERS[args.command](args, shell)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    return EXIT_INTERRUPTED if interrupted else code


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command == "rm" and not confirm_deletion(args.paths, args.force):
        print("Operation cancelled.")
        return EXIT_OK

    try:
        config = load_config(
            provider=args.provider,
            bucket=args.bucket,
            endpoint=args.endpoint,
            region=args.region,
            profile=args.profile,
            root_path=args.root,
        )
    except ConfigError as exc:
        err_console.print(f"[red]error:[/red] {exc}", highlight=False)
        return EXIT_USAGE
    logger.debug("Using provider %s (%s)", config.provider.value, config.bucket)

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except ConfigError as exc:
        err_console.print(f"[red]error:[/red] {exc}", highlight=False)
        return EXIT_USAGE
    except OssifyError as exc:
        err_console.print(f"[red]error:[/red] {exc.kind.value}: {exc}", highlight=False)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
