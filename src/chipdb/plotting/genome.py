"""Genome-wide plotting for chipdb.

Manhattan-style view of window p-values along the genome, signed by
the direction of the fold change, with significant clusters shaded.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import matplotlib

matplotlib.use("Agg")  # Use non-interactive backend for headless environments

import matplotlib.pyplot as plt
import numpy as np

from chipdb.plotting.diagnostics import _save_figure
from chipdb.plotting.style import (
    CHROM_COLORS,
    CLUSTER_HIGHLIGHT_ALPHA,
    CLUSTER_HIGHLIGHT_COLOR,
    DOWN_COLOR,
    SMALL_MARKER_SIZE,
    UP_COLOR,
    set_publication_style,
)
from chipdb.utils.logging import get_logger
from chipdb.utils.sorting import simplify_chromosome_label, sort_chromosomes

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


def _get_chromosome_offsets(
    chrom: np.ndarray,
    end: np.ndarray,
    gap_fraction: float = 0.02,
) -> tuple[dict[str, int], dict[str, int], int]:
    """Calculate chromosome offsets for genome-wide plotting.

    Chromosome lengths are taken as the last window end seen on each
    chromosome.

    Returns:
        Tuple of (chrom_offsets, chrom_lengths, total_length).
    """
    chrom_lengths: dict[str, int] = {}
    for c, e in zip(chrom, end):
        c = str(c)
        chrom_lengths[c] = max(chrom_lengths.get(c, 0), int(e))

    sorted_chroms = sort_chromosomes(list(chrom_lengths))
    total_length = sum(chrom_lengths.values())
    gap_size = int(total_length * gap_fraction / max(1, len(sorted_chroms) - 1))

    chrom_offsets: dict[str, int] = {}
    current_offset = 0
    for c in sorted_chroms:
        chrom_offsets[c] = current_offset
        current_offset += chrom_lengths[c] + gap_size

    total_genome_length = current_offset - gap_size if sorted_chroms else 0
    return chrom_offsets, chrom_lengths, total_genome_length


def plot_genome_wide(
    chrom: np.ndarray,
    start: np.ndarray,
    end: np.ndarray,
    logfc: np.ndarray,
    pvalue: np.ndarray,
    highlight: Sequence[tuple[str, int, int]] | None = None,
    output_path: str | Path | None = None,
    figsize: tuple[float, float] = (14, 5),
    dpi: int = 150,
    title: str | None = None,
) -> plt.Figure:
    """Generate a genome-wide signed -log10(p) plot of tested windows.

    Each window is drawn at its midpoint with height
    ``sign(logFC) * -log10(p)``. Chromosomes alternate in color. Regions
    in ``highlight`` (e.g. significant clusters) are shaded and the
    windows inside them colored by direction.

    Args:
        chrom: Chromosome of each window.
        start: Window start.
        end: Window end.
        logfc: Log2 fold change.
        pvalue: Window p-value.
        highlight: Optional ``(chrom, start, end)`` regions to shade.
        output_path: If provided, save figure to this path.
        figsize: Figure dimensions (width, height) in inches.
        dpi: Resolution for PNG output.
        title: Optional figure title.

    Returns:
        matplotlib Figure object.
    """
    set_publication_style()
    fig, ax = plt.subplots(figsize=figsize)

    if len(start) == 0:
        logger.warning("No windows provided for genome-wide plot")
        return fig

    logger.info("Generating genome-wide plot...")

    chrom = np.asarray(chrom, dtype=object)
    start = np.asarray(start)
    end = np.asarray(end)
    logfc = np.asarray(logfc, dtype=np.float64)
    pvalue = np.clip(np.asarray(pvalue, dtype=np.float64), 1e-300, 1.0)

    chrom_offsets, chrom_lengths, total_length = _get_chromosome_offsets(chrom, end)
    sorted_chroms = list(chrom_offsets)
    chrom_order = {c: i for i, c in enumerate(sorted_chroms)}

    offsets = np.array([chrom_offsets[str(c)] for c in chrom])
    x = offsets + (start + end) / 2
    y = np.sign(logfc) * -np.log10(pvalue)
    colors = [CHROM_COLORS[chrom_order[str(c)] % 2] for c in chrom]

    ax.scatter(x, y, c=colors, s=SMALL_MARKER_SIZE, alpha=0.6, linewidths=0)

    if highlight:
        in_region = np.zeros(len(x), dtype=bool)
        for region_chrom, region_start, region_end in highlight:
            c = str(region_chrom)
            if c not in chrom_offsets:
                continue
            ax.axvspan(
                chrom_offsets[c] + region_start,
                chrom_offsets[c] + region_end,
                color=CLUSTER_HIGHLIGHT_COLOR,
                alpha=CLUSTER_HIGHLIGHT_ALPHA,
                zorder=0,
            )
            in_region |= (chrom == c) & (start <= region_end) & (end >= region_start)
        up = in_region & (logfc > 0)
        down = in_region & (logfc < 0)
        ax.scatter(x[up], y[up], c=UP_COLOR, s=SMALL_MARKER_SIZE * 2, linewidths=0)
        ax.scatter(x[down], y[down], c=DOWN_COLOR, s=SMALL_MARKER_SIZE * 2, linewidths=0)

    ax.axhline(y=0, color="gray", linestyle="-", linewidth=0.5, alpha=0.5)

    tick_positions = [chrom_offsets[c] + chrom_lengths[c] // 2 for c in sorted_chroms]
    ax.set_xticks(tick_positions)
    ax.set_xticklabels([simplify_chromosome_label(c) for c in sorted_chroms])
    ax.set_xlabel("Chromosome")
    ax.set_ylabel("signed -log10(p)")
    ax.set_xlim(0, max(total_length, 1))

    fig.suptitle(title or "Genome-wide differential binding", fontsize=14, fontweight="bold")
    plt.tight_layout()

    if output_path:
        _save_figure(fig, Path(output_path), dpi)

    return fig
