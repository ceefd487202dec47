"""Plotting modules for chipdb.

Diagnostic figures for each step of a differential binding analysis,
plus a genome-wide view of the tested windows.
"""

from chipdb.plotting.diagnostics import (
    plot_filter_histogram,
    plot_norm_ma,
    plot_ql_dispersion,
    plot_result_ma,
)
from chipdb.plotting.genome import plot_genome_wide
from chipdb.plotting.style import (
    CHROM_COLORS,
    DOWN_COLOR,
    UP_COLOR,
    reset_style,
    set_publication_style,
)

__all__ = [
    # Diagnostic plots
    "plot_filter_histogram",
    "plot_norm_ma",
    "plot_ql_dispersion",
    "plot_result_ma",
    # Genome plots
    "plot_genome_wide",
    # Style
    "set_publication_style",
    "reset_style",
    "CHROM_COLORS",
    "UP_COLOR",
    "DOWN_COLOR",
]
