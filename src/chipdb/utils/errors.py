"""Exceptions and user-facing error messages for chipdb.

Library code raises these; the CLI catches them and renders the message
(and suggestion, if any) in a rich panel.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

console = Console(stderr=True)


class ChipDBError(Exception):
    """Base exception for chipdb errors with user-friendly formatting."""

    def __init__(self, message: str, suggestion: str | None = None):
        """Initialize error with message and optional suggestion.

        Args:
            message: Main error message.
            suggestion: Optional hint on how to fix the problem.
        """
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def display(self) -> None:
        """Display the error in a formatted panel."""
        display_error(self.message, self.suggestion)


class LibrarySizeMismatchError(ChipDBError):
    """Normalization factors were moved between incompatible count sets."""


class DesignError(ChipDBError):
    """The design matrix or contrast cannot be used for testing."""


class AlignmentFileError(ChipDBError):
    """A BAM file is missing, unindexed or out of sync with its index."""


def format_totals_mismatch(
    source_totals: Sequence[int],
    target_totals: Sequence[int],
) -> str:
    """Format the message for differing library totals.

    Args:
        source_totals: Totals of the matrix the factors were computed on.
        target_totals: Totals of the matrix receiving the factors.

    Returns:
        Formatted error message.
    """
    src = ", ".join(f"{t:,}" for t in source_totals)
    tgt = ", ".join(f"{t:,}" for t in target_totals)
    msg = "Library sizes differ between the two count sets.\n\n"
    msg += f"  source totals: {src}\n"
    msg += f"  target totals: {tgt}\n\n"
    msg += "Both count sets must be produced from the same BAM files with\n"
    msg += "identical read parameters (minq, dedup, pe, restrict, discard)."
    return msg


def format_stale_index(bam_path: str | Path, index_path: str | Path | None) -> str:
    """Format an error for a missing or outdated BAM index.

    Args:
        bam_path: Path to the BAM file.
        index_path: Path to the index found, or None if none exists.

    Returns:
        Formatted error message.
    """
    if index_path is None:
        msg = f"No index found for BAM file: {bam_path}\n\n"
    else:
        msg = f"BAM index is older than the BAM file: {index_path}\n\n"
        msg += "Reads extracted with a stale index may be wrong or missing.\n\n"
    msg += f"Re-index with:\n  samtools index {bam_path}"
    return msg


def format_group_mismatch(n_samples: int, n_groups: int) -> str:
    """Format an error for a group vector of the wrong length.

    Args:
        n_samples: Number of BAM files / count columns.
        n_groups: Number of group labels supplied.

    Returns:
        Formatted error message.
    """
    msg = f"Got {n_groups} group label(s) for {n_samples} sample(s).\n\n"
    msg += "Supply one --group label per --bam file, in the same order."
    return msg


def format_no_windows_error(stage: str) -> str:
    """Format an error for an empty window set.

    Args:
        stage: Pipeline stage after which no windows remained.

    Returns:
        Formatted error message with suggestions.
    """
    msg = f"No windows remaining after {stage}.\n\n"
    msg += "Suggestions:\n"
    msg += "  - Lower --min-count (the counting filter)\n"
    msg += "  - Lower --min-fc for enrichment-based filters\n"
    msg += "  - Check --restrict: chromosome names are case-sensitive\n"
    msg += "  - Check that the BAM files contain reads passing --minq"
    return msg


def format_invalid_parameter(
    param_name: str,
    value: int | float | str,
    reason: str,
    suggestion: str | None = None,
) -> str:
    """Format an error for an invalid parameter value.

    Args:
        param_name: Name of the parameter.
        value: Invalid value provided.
        reason: Why the value is invalid.
        suggestion: Optional suggestion for valid values.

    Returns:
        Formatted error message.
    """
    msg = f"Invalid value for {param_name}: {value}\n\n"
    msg += f"Reason: {reason}"

    if suggestion:
        msg += f"\n\nSuggestion: {suggestion}"

    return msg


def display_error(message: str, suggestion: str | None = None) -> None:
    """Display an error message in a formatted panel.

    Args:
        message: Main error message.
        suggestion: Optional suggestion for fixing the error.
    """
    content = f"[red bold]Error:[/red bold] {message}"
    if suggestion:
        content += f"\n\n[yellow]Suggestion:[/yellow] {suggestion}"
    console.print(Panel(content, title="chipdb Error", border_style="red"))
