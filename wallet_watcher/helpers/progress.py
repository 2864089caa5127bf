"""Rich progress bars for backtest replays."""

from collections.abc import Iterator
from contextlib import contextmanager

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)


def create_progress(console: Console | None = None, *, show_time_remaining: bool = True) -> Progress:
    """Spinner, bar, ``done/total`` and elapsed time, plus an ETA when asked."""
    columns = [
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("•"),
        TimeElapsedColumn(),
    ]
    if show_time_remaining:
        columns.extend([TextColumn("•"), TimeRemainingColumn()])

    return Progress(*columns, console=console)


@contextmanager
def track_progress(
    description: str,
    total: int,
    console: Console | None = None,
    *,
    show_time_remaining: bool = True,
) -> Iterator[tuple[Progress, TaskID]]:
    """Run a progress bar with one task of ``total`` steps.

    Yields:
        The progress bar and the task to advance, e.g.
        ``progress.update(task_id, advance=1)`` per finished case
    """
    with create_progress(console, show_time_remaining=show_time_remaining) as progress:
        task_id = progress.add_task(description, total=total)
        yield progress, task_id


__all__ = [
    "create_progress",
    "track_progress",
]
