"""Logging configuration for chipdb.

All console output goes to stderr through one rich console, leaving
stdout free for anything a user may want to pipe.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from typing import TypeVar

    T = TypeVar("T")

console = Console(stderr=True)

_logging_configured = False

_TAG_STYLES = {
    "INFO": "blue",
    "WARNING": "yellow",
    "ERROR": "red",
    "SUCCESS": "green",
}


def setup_logging(
    level: int = logging.INFO,
    show_time: bool = True,
    show_path: bool = False,
) -> None:
    """Install a rich handler on the root logger.

    Only the first call has an effect; the CLI calls this with DEBUG
    when ``--verbose`` is given, before any module logs anything.

    Args:
        level: Logging level for the ``chipdb`` logger tree.
        show_time: Whether to show timestamps.
        show_path: Whether to show the emitting source file.
    """
    global _logging_configured

    if _logging_configured:
        return

    handler = RichHandler(
        console=console,
        show_time=show_time,
        show_path=show_path,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.WARNING)
    root_logger.addHandler(handler)

    logging.getLogger("chipdb").setLevel(level)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger in the ``chipdb`` namespace.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Counting 4 BAM files")
    """
    if not _logging_configured:
        setup_logging()

    if name == "chipdb" or name.startswith("chipdb."):
        return logging.getLogger(name)
    return logging.getLogger(f"chipdb.{name}")


def create_progress() -> Progress:
    """Create a transient progress bar for per-file operations."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


def progress_iterator(
    iterable: Iterable[T],
    total: int | None = None,
    description: str = "Processing",
) -> Iterator[T]:
    """Wrap an iterable with a progress bar.

    Args:
        iterable: Items to iterate over.
        total: Number of items, if known.
        description: Text shown beside the bar.

    Yields:
        Items from the iterable.
    """
    with create_progress() as progress:
        task = progress.add_task(description, total=total)
        for item in iterable:
            yield item
            progress.advance(task)


def _print_tagged(tag: str, message: str) -> None:
    style = _TAG_STYLES[tag]
    console.print(f"[{style}]{tag}:[/{style}] {message}")


def print_info(message: str) -> None:
    """Print an info message to stderr."""
    _print_tagged("INFO", message)


def print_warning(message: str) -> None:
    """Print a warning message to stderr."""
    _print_tagged("WARNING", message)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    _print_tagged("ERROR", message)


def print_success(message: str) -> None:
    """Print a success message to stderr."""
    _print_tagged("SUCCESS", message)


def _format_stat(value: int | float | str) -> str:
    # bool is an int subclass; show it as a word
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float):
        return f"{value:,.4g}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)


def print_stats(stats: dict[str, int | float | str], title: str = "Statistics") -> None:
    """Print named pipeline statistics as a two-column table.

    Integers get thousands separators and floats four significant
    digits, so library sizes and dispersions read well side by side.

    Args:
        stats: Mapping of statistic names to values.
        title: Table title.
    """
    table = Table(title=title, show_header=False, title_justify="left")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")
    for key, value in stats.items():
        table.add_row(key, _format_stat(value))
    console.print(table)


def log_step(step: int, total: int, description: str) -> None:
    """Print the current pipeline step, e.g. ``[2/5] Filtering windows``."""
    console.print(f"[bold cyan][{step}/{total}][/bold cyan] {description}")
