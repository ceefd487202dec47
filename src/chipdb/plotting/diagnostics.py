"""Diagnostic plots for chipdb.

These figures cover the steps of a window-based analysis that need a
visual check: where the abundance filter cut, whether the
normalization factors match the bulk of the background bins, how far
the QL dispersions were squeezed, and the final MA plot.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import matplotlib

matplotlib.use("Agg")  # Use non-interactive backend for headless environments

import matplotlib.pyplot as plt
import numpy as np

from chipdb.plotting.style import (
    DEFAULT_MARKER_SIZE,
    DENSITY_CMAP,
    DOWN_COLOR,
    HEXBIN_THRESHOLD,
    HIST_COLOR,
    NONSIGNIFICANT_COLOR,
    THRESHOLD_LINE_COLOR,
    TREND_LINE_COLOR,
    UP_COLOR,
    set_publication_style,
)
from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from chipdb.analysis.testing import QLFit
    from chipdb.core.models import WindowCounts

logger = get_logger(__name__)


def plot_filter_histogram(
    statistic: np.ndarray,
    threshold: float | None = None,
    output_path: str | Path | None = None,
    xlabel: str = "Filter statistic",
    figsize: tuple[float, float] = (7, 4.5),
    dpi: int = 150,
) -> plt.Figure:
    """Plot the distribution of a filter statistic.

    The threshold, when given, is drawn as a vertical line; windows to
    its right were retained.

    Args:
        statistic: Filter statistic per window (e.g. abundance or log2
            fold change over background).
        threshold: Filter threshold.
        output_path: If provided, save figure to this path.
        xlabel: Label of the x axis.
        figsize: Figure dimensions (width, height) in inches.
        dpi: Resolution for PNG output.

    Returns:
        matplotlib Figure object.
    """
    set_publication_style()

    statistic = np.asarray(statistic, dtype=np.float64)
    statistic = statistic[np.isfinite(statistic)]
    fig, ax = plt.subplots(figsize=figsize)

    if len(statistic) == 0:
        logger.warning("No windows provided for filter histogram")
        return fig

    logger.info("Generating filter histogram...")

    ax.hist(statistic, bins=100, color=HIST_COLOR, edgecolor="white", linewidth=0.3, alpha=0.8)
    if threshold is not None and np.isfinite(threshold):
        ax.axvline(
            x=threshold,
            color=THRESHOLD_LINE_COLOR,
            linestyle="--",
            linewidth=1,
            label=f"threshold = {threshold:.2f}",
        )
        kept = int((statistic > threshold).sum())
        ax.legend(loc="upper right", framealpha=0.9)
        ax.set_title(f"{kept:,} of {len(statistic):,} windows retained")
    else:
        ax.set_title(f"{len(statistic):,} windows")

    ax.set_xlabel(xlabel)
    ax.set_ylabel("Windows")
    _add_stats_text(ax, statistic, position="upper left", decimals=2)

    plt.tight_layout()

    if output_path:
        _save_figure(fig, Path(output_path), dpi)

    return fig


def plot_norm_ma(
    bins: WindowCounts,
    first: int = 0,
    second: int = 1,
    output_path: str | Path | None = None,
    figsize: tuple[float, float] = (6, 5),
    dpi: int = 150,
) -> plt.Figure:
    """MA plot of two libraries over background bins.

    M is the difference of log2-CPM (first minus second) computed on
    the raw library totals; A is their average. With composition
    normalization the bulk of the bins should sit on the dashed line at
    ``log2(nf_first / nf_second)``.

    Args:
        bins: Bin counts carrying the normalization factors to check.
        first: Column index of the first library.
        second: Column index of the second library.
        output_path: If provided, save figure to this path.
        figsize: Figure dimensions (width, height) in inches.
        dpi: Resolution for PNG output.

    Returns:
        matplotlib Figure object.
    """
    set_publication_style()
    fig, ax = plt.subplots(figsize=figsize)

    if len(bins) == 0 or bins.n_samples < 2:
        logger.warning("Need at least two libraries and one bin for the normalization MA plot")
        return fig

    logger.info("Generating normalization MA plot...")

    counts = bins.counts.astype(np.float64)
    totals = bins.totals.astype(np.float64)
    cpm1 = np.log2((counts[:, first] + 0.5) / (totals[first] + 1.0) * 1e6)
    cpm2 = np.log2((counts[:, second] + 0.5) / (totals[second] + 1.0) * 1e6)
    m = cpm1 - cpm2
    a = (cpm1 + cpm2) / 2

    if len(m) > HEXBIN_THRESHOLD:
        hb = ax.hexbin(a, m, gridsize=80, cmap=DENSITY_CMAP, mincnt=1, bins="log")
        plt.colorbar(hb, ax=ax, shrink=0.8, label="Bins")
    else:
        ax.scatter(a, m, s=DEFAULT_MARKER_SIZE, c=NONSIGNIFICANT_COLOR, alpha=0.4, linewidths=0)

    offset = float(np.log2(bins.norm_factors[first] / bins.norm_factors[second]))
    ax.axhline(
        y=offset,
        color=THRESHOLD_LINE_COLOR,
        linestyle="--",
        linewidth=1,
        label=f"log2 factor ratio = {offset:.3f}",
    )
    ax.axhline(y=0, color="gray", linestyle="-", linewidth=0.5, alpha=0.5)
    ax.set_xlabel("Average log2 CPM")
    ax.set_ylabel(f"M ({bins.samples[first]} vs {bins.samples[second]})")
    ax.set_title("Normalization")
    ax.legend(loc="upper right", framealpha=0.9)

    plt.tight_layout()

    if output_path:
        _save_figure(fig, Path(output_path), dpi)

    return fig


def plot_ql_dispersion(
    fit: QLFit,
    output_path: str | Path | None = None,
    figsize: tuple[float, float] = (6, 5),
    dpi: int = 150,
) -> plt.Figure:
    """Plot raw and squeezed QL dispersions against abundance.

    Quarter-root deviance style: the y axis shows the square root of the
    QL dispersions, with the prior trend drawn as a line.

    Args:
        fit: Quasi-likelihood fit from ``glm_ql_fit``.
        output_path: If provided, save figure to this path.
        figsize: Figure dimensions (width, height) in inches.
        dpi: Resolution for PNG output.

    Returns:
        matplotlib Figure object.
    """
    set_publication_style()
    fig, ax = plt.subplots(figsize=figsize)

    if len(fit.abundance) == 0:
        logger.warning("No windows provided for QL dispersion plot")
        return fig

    logger.info("Generating QL dispersion plot...")

    x = fit.abundance
    ax.scatter(x, np.sqrt(fit.s2), s=DEFAULT_MARKER_SIZE, c="black", alpha=0.3, linewidths=0, label="Raw")
    ax.scatter(
        x,
        np.sqrt(fit.s2_post),
        s=DEFAULT_MARKER_SIZE,
        c=UP_COLOR,
        alpha=0.4,
        linewidths=0,
        label="Squeezed",
    )
    order = np.argsort(x)
    ax.plot(x[order], np.sqrt(fit.s2_prior[order]), color=TREND_LINE_COLOR, linewidth=1.5, label="Trend")

    df_prior = "inf" if fit.infinite_prior_df else f"{fit.df_prior:.1f}"
    ax.set_title(f"QL dispersion (prior df = {df_prior})")
    ax.set_xlabel("Average log2 CPM")
    ax.set_ylabel("Quarter-root mean deviance")
    ax.legend(loc="upper right", framealpha=0.9)

    plt.tight_layout()

    if output_path:
        _save_figure(fig, Path(output_path), dpi)

    return fig


def plot_result_ma(
    logcpm: np.ndarray,
    logfc: np.ndarray,
    significant: np.ndarray | None = None,
    output_path: str | Path | None = None,
    figsize: tuple[float, float] = (6, 5),
    dpi: int = 150,
    title: str | None = None,
) -> plt.Figure:
    """MA plot of tested windows, significant windows colored by direction.

    Args:
        logcpm: Average log2-CPM per window.
        logfc: Log2 fold change per window.
        significant: Optional boolean mask of significant windows.
        output_path: If provided, save figure to this path.
        figsize: Figure dimensions (width, height) in inches.
        dpi: Resolution for PNG output.
        title: Optional title.

    Returns:
        matplotlib Figure object.
    """
    set_publication_style()
    fig, ax = plt.subplots(figsize=figsize)

    logcpm = np.asarray(logcpm, dtype=np.float64)
    logfc = np.asarray(logfc, dtype=np.float64)
    if len(logcpm) == 0:
        logger.warning("No windows provided for MA plot")
        return fig

    logger.info("Generating MA plot...")

    if significant is None:
        significant = np.zeros(len(logcpm), dtype=bool)
    significant = np.asarray(significant, dtype=bool)
    up = significant & (logfc > 0)
    down = significant & (logfc < 0)
    rest = ~(up | down)

    ax.scatter(
        logcpm[rest], logfc[rest], s=DEFAULT_MARKER_SIZE, c=NONSIGNIFICANT_COLOR, alpha=0.4, linewidths=0
    )
    if up.any():
        ax.scatter(
            logcpm[up], logfc[up], s=DEFAULT_MARKER_SIZE, c=UP_COLOR, linewidths=0, label=f"Up ({up.sum():,})"
        )
    if down.any():
        ax.scatter(
            logcpm[down],
            logfc[down],
            s=DEFAULT_MARKER_SIZE,
            c=DOWN_COLOR,
            linewidths=0,
            label=f"Down ({down.sum():,})",
        )

    ax.axhline(y=0, color="gray", linestyle="-", linewidth=0.5, alpha=0.5)
    ax.set_xlabel("Average log2 CPM")
    ax.set_ylabel("log2 fold change")
    ax.set_title(title or f"Differential binding ({len(logcpm):,} windows)")
    if up.any() or down.any():
        ax.legend(loc="upper right", framealpha=0.9)

    plt.tight_layout()

    if output_path:
        _save_figure(fig, Path(output_path), dpi)

    return fig


def _add_stats_text(
    ax: plt.Axes,
    data: np.ndarray,
    position: str = "upper right",
    decimals: int = 3,
) -> None:
    """Add a mean/median/std box to the axes."""
    text = (
        f"Mean: {np.mean(data):.{decimals}f}\n"
        f"Median: {np.median(data):.{decimals}f}\n"
        f"Std: {np.std(data):.{decimals}f}"
    )

    if position == "upper left":
        x, ha = 0.05, "left"
    else:
        x, ha = 0.95, "right"

    ax.text(
        x,
        0.95,
        text,
        transform=ax.transAxes,
        fontsize=8,
        verticalalignment="top",
        horizontalalignment=ha,
        bbox={"boxstyle": "round", "facecolor": "white", "alpha": 0.8},
    )


def _save_figure(fig: plt.Figure, output_path: Path, dpi: int = 150) -> None:
    """Save a figure as PNG, replacing any extension on ``output_path``."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    png_path = output_path.with_suffix(".png")
    fig.savefig(png_path, dpi=dpi, bbox_inches="tight", facecolor="white")
    logger.info(f"Saved: {png_path}")
