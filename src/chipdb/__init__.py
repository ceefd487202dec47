"""
chipdb: window-based differential binding analysis of ChIP-seq data.

This package counts sequencing fragments in sliding windows across
BAM files, filters and normalizes the windows, tests them for
differential binding with quasi-likelihood negative binomial models,
and combines window-level tests into region-level results.
"""

__version__ = "1.0.0"
__author__ = "chipdb Authors"

from chipdb.core.models import ReadParam, Region, WindowCounts

__all__ = ["ReadParam", "Region", "WindowCounts", "__version__"]
