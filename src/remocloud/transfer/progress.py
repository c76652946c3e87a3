"""Rich progress display for multi-file uploads.

Two tiers:

* **Overall** -- files finished out of the batch
* **Per file** -- transfer percent and current lifecycle status

The tracker is an :class:`~remocloud.transfer.orchestrator.UploadManager`
subscriber: hand :meth:`UploadProgressTracker.on_session` to
``manager.subscribe``.
"""

from __future__ import annotations

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)

from remocloud.models import UploadSession, UploadStatus


class UploadProgressTracker:
    """Two-tier Rich progress tracker for concurrent uploads.

    Usage::

        tracker = UploadProgressTracker(total_files=3)
        unsubscribe = manager.subscribe(tracker.on_session)
        with tracker:
            await manager.upload_batch("b1", refs)
        unsubscribe()
    """

    def __init__(self, total_files: int) -> None:
        self._total_files = total_files

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeRemainingColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )

        self._overall_task: TaskID | None = None
        self._file_tasks: dict[str, TaskID] = {}
        self._finished: set[str] = set()

        self._stats: dict[str, int] = {
            "succeeded": 0,
            "failed": 0,
            "duplicates": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the Rich progress display."""
        self._progress.start()
        self._overall_task = self._progress.add_task(
            "[green]Overall",
            total=self._total_files,
            status="starting...",
        )

    def stop(self) -> None:
        """Stop the Rich progress display."""
        self._progress.stop()

    def __enter__(self) -> UploadProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Session events
    # ------------------------------------------------------------------

    def on_session(self, session: UploadSession) -> None:
        """Apply one session snapshot to the display."""
        task = self._file_tasks.get(session.id)
        if task is None:
            task = self._progress.add_task(
                f"[blue]{_truncate_name(session.file_ref.name)}",
                total=100,
                status=session.status.value,
            )
            self._file_tasks[session.id] = task

        self._progress.update(
            task,
            completed=session.progress_percent,
            status=session.status.value,
        )

        if session.id in self._finished:
            return
        if session.status is UploadStatus.COMPLETED:
            self._finish(session, "succeeded", "done")
        elif session.status is UploadStatus.ERROR:
            kind = getattr(session.last_error, "kind", None)
            label = kind.value if kind is not None else "error"
            self._finish(session, "failed", f"[red]FAIL[/red] {label}")
        elif session.status is UploadStatus.DUPLICATE_FOUND:
            self._finish(session, "duplicates", "[yellow]duplicate[/yellow]")

    def _finish(self, session: UploadSession, stat: str, status: str) -> None:
        self._finished.add(session.id)
        self._stats[stat] += 1
        self._progress.update(self._file_tasks[session.id], status=status)
        if self._overall_task is not None:
            self._progress.advance(self._overall_task, 1)
            self._progress.update(
                self._overall_task,
                status=_truncate_name(session.file_ref.name),
            )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the current statistics."""
        return dict(self._stats)


def _truncate_name(name: str, max_len: int = 40) -> str:
    """Truncate a file name for display, keeping its tail."""
    if len(name) <= max_len:
        return name
    return "..." + name[-(max_len - 3) :]
