"""Matplotlib style configuration for chipdb plots.

Every diagnostic figure applies the same rc settings before drawing, so
MA, dispersion and genome-wide plots share fonts, spines and colors.
"""

from __future__ import annotations

import matplotlib.pyplot as plt

# rc settings applied by set_publication_style
PUBLICATION_RC = {
    "font.family": "sans-serif",
    "font.sans-serif": ["Arial", "DejaVu Sans", "Helvetica"],
    "font.size": 10,
    "axes.titlesize": 11,
    "axes.labelsize": 10,
    "xtick.labelsize": 8,
    "ytick.labelsize": 8,
    "legend.fontsize": 8,
    "legend.frameon": False,
    "figure.titlesize": 13,
    "axes.spines.top": False,
    "axes.spines.right": False,
    "axes.linewidth": 0.8,
    "axes.axisbelow": True,
    "scatter.edgecolors": "none",
    "image.cmap": "Blues",
    "figure.facecolor": "white",
    "axes.facecolor": "white",
    "savefig.facecolor": "white",
    "savefig.bbox": "tight",
    "savefig.pad_inches": 0.1,
}


def set_publication_style() -> None:
    """Apply ``PUBLICATION_RC`` to the current matplotlib session."""
    plt.rcParams.update(PUBLICATION_RC)


def reset_style() -> None:
    """Restore matplotlib's default rc settings."""
    plt.rcdefaults()


# Windows or clusters gaining binding in the second group
UP_COLOR = "#d62728"  # Red

# Windows or clusters losing binding
DOWN_COLOR = "#1f77b4"  # Blue

# Everything below the significance cutoff
NONSIGNIFICANT_COLOR = "#7f7f7f"  # Gray

# Filter threshold and normalization offset lines
THRESHOLD_LINE_COLOR = "#d62728"

# Fitted trends
TREND_LINE_COLOR = "#2ca02c"  # Green

# Histogram bars
HIST_COLOR = "#1f77b4"

# Cmap for dense MA plots
DENSITY_CMAP = "Blues"

# Points above this count are drawn as hexbin
HEXBIN_THRESHOLD = 5000

DEFAULT_MARKER_SIZE = 6

# Alternating chromosome colors for genome-wide plots
CHROM_COLORS = ["#1f77b4", "#7f7f7f"]

# Shading of significant clusters
CLUSTER_HIGHLIGHT_COLOR = "#ffcccc"
CLUSTER_HIGHLIGHT_ALPHA = 0.3

SMALL_MARKER_SIZE = 4
