from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
)

from .models import BatchReport, ObjectMetadata
from .paths import StoragePath
from .report import ProgressEvent

STAT_FORMATS = ("human", "raw", "json")


def format_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} PB"


def format_time(value: Optional[datetime]) -> str:
    """RFC 3339 timestamp, or ``Unknown`` when the backend gave none."""
    if not value:
        return "Unknown"
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def display_path(path: StoragePath) -> str:
    return path.key or "/"


def format_entry(metadata: ObjectMetadata, long: bool = False) -> str:
    if not long:
        return display_path(metadata.path)
    file_type = "DIR" if metadata.is_dir else "FILE"
    size = "-" if metadata.is_dir else format_size(metadata.size)
    modified = format_time(metadata.last_modified)
    return f"{file_type:<6} {size:>10} {modified} {display_path(metadata.path)}"


def format_usage(size: int, path: StoragePath) -> str:
    return f"{format_size(size)} {display_path(path)}"


def stat_fields(metadata: ObjectMetadata) -> dict[str, object]:
    return {
        "path": display_path(metadata.path),
        "entry_type": metadata.kind.value,
        "size": metadata.size,
        "last_modified": format_time(metadata.last_modified)
        if metadata.last_modified
        else None,
        "etag": metadata.etag,
        "content_type": metadata.content_type,
    }


def render_stat(metadata: ObjectMetadata, style: str = "human") -> str:
    """Render one ``ObjectMetadata`` as human text, ``key=value`` lines or JSON."""
    fields = stat_fields(metadata)
    if style == "json":
        return json.dumps(fields, indent=2)
    if style == "raw":
        return "\n".join(
            f"{key}={'' if value is None else value}" for key, value in fields.items()
        )
    if style != "human":
        raise ValueError(f"unknown stat format: {style}")
    lines = [
        f"Path: {fields['path']}",
        f"Type: {'Directory' if metadata.is_dir else 'File'}",
    ]
    if not metadata.is_dir:
        lines.append(f"Size: {format_size(metadata.size)} ({metadata.size} bytes)")
    lines.append(f"Last modified: {format_time(metadata.last_modified)}")
    if metadata.etag:
        lines.append(f"ETag: {metadata.etag}")
    if metadata.content_type:
        lines.append(f"Content type: {metadata.content_type}")
    return "\n".join(lines)


def print_report(report: BatchReport, console: Console, verb: Optional[str] = None) -> None:
    """Print warnings and every failed item to ``console``.

    With ``verb``, a one-line summary of the batch follows.
    """
    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}", highlight=False)
    for failure in report.failed:
        console.print(
            f"[red]failed:[/red] {display_path(failure.path)}: "
            f"{failure.kind.value}: {failure.message}",
            highlight=False,
        )
    if verb is None or not report.total_items:
        return
    summary = f"{verb} {report.succeeded}/{report.total_items} item(s)"
    if report.total_bytes:
        summary += f", {format_size(report.total_bytes)}"
    if report.failed:
        summary += f", {len(report.failed)} failed"
    if report.cancelled:
        summary += f", {report.cancelled} cancelled"
    console.print(summary, style="red" if report.failed else None, highlight=False)


class ProgressDisplay:
    """Live transfer progress on stderr, fed by ``BatchAggregator`` events.

    Does nothing when the console is not a terminal.
    """

    def __init__(self, description: str, console: Optional[Console] = None) -> None:
        self.console = console or Console(stderr=True)
        self.enabled = self.console.is_terminal
        self._progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("{task.fields[transferred]}"),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        self._task_id = self._progress.add_task(description, total=None, transferred="")

    def __enter__(self) -> ProgressDisplay:
        if self.enabled:
            self._progress.start()
        return self

    def __exit__(self, *exc_info) -> None:
        if self.enabled:
            self._progress.stop()

    def __call__(self, event: ProgressEvent) -> None:
        if not self.enabled:
            return
        self._progress.update(
            self._task_id,
            total=event.items_total or None,
            completed=event.items_completed,
            transferred=format_size(event.bytes_transferred),
        )
