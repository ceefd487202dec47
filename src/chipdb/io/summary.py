"""Summary report generation for chipdb.

This module provides functions for generating analysis summary reports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from chipdb import __version__
from chipdb.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AnalysisSummary:
    """Summary statistics for a differential binding analysis.

    Attributes:
        bam_paths: Input BAM files, in column order.
        groups: Group label of each BAM file.
        library_sizes: Fragments passing the read filters, per BAM.
        norm_factors: Normalization factors, per BAM.
        normalization: Name of the normalization strategy.
        windows_counted: Windows retained by the counting filter.
        filter_name: Name of the abundance filter strategy.
        windows_retained: Windows passing the abundance filter.
        windows_significant: Windows with p-value at or below 0.05.
        clusters: Number of clusters.
        clusters_significant: Clusters with FDR at or below the threshold.
        clusters_up: Significant clusters with direction ``up``.
        clusters_down: Significant clusters with direction ``down``.
        test: ``ql`` or ``lrt``.
        dispersion: Fixed NB dispersion, or None when it was estimated.
        df_prior: QL prior degrees of freedom (None for the LRT).
        infinite_prior_df: Whether the prior df diverged.
        top_cluster: Location of the top-ranked cluster, if any.
        parameters: Dictionary of all analysis parameters.
    """

    bam_paths: list[str]
    groups: list[str]
    library_sizes: list[int]
    norm_factors: list[float]
    normalization: str
    windows_counted: int
    filter_name: str
    windows_retained: int
    windows_significant: int
    clusters: int
    clusters_significant: int
    clusters_up: int = 0
    clusters_down: int = 0
    test: str = "ql"
    dispersion: float | None = None
    df_prior: float | None = None
    infinite_prior_df: bool = False
    top_cluster: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_text(self) -> str:
        """Format summary as human-readable text.

        Returns:
            Multi-line string with summary information.
        """
        lines = [
            "=" * 70,
            "chipdb Differential Binding Summary",
            "=" * 70,
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Version: {__version__}",
            "",
            "INPUT",
            "-" * 70,
        ]
        for path, group, size, nf in zip(
            self.bam_paths, self.groups, self.library_sizes, self.norm_factors
        ):
            lines.append(f"  {path} [{group}]: {size:,} fragments, factor {nf:.3f}")

        lines.extend([
            "",
            "WINDOWS",
            "-" * 70,
            f"Window width: {self.parameters.get('width', 'N/A')} bp",
            f"Windows after counting: {self.windows_counted:,}",
            f"Filter: {self.filter_name}",
            f"Windows after filtering: {self.windows_retained:,}",
            f"Normalization: {self.normalization}",
            "",
            "TESTING",
            "-" * 70,
            f"Test: {'QL F-test' if self.test == 'ql' else 'likelihood ratio test'}",
        ])
        if self.dispersion is not None:
            lines.append(f"Fixed NB dispersion: {self.dispersion:g}")
        if self.df_prior is not None:
            lines.append(f"Prior degrees of freedom: {self.df_prior:.2f}")
        if self.infinite_prior_df:
            lines.append("  (infinite: check for an unmodelled batch effect)")
        lines.extend([
            f"Windows with p <= 0.05: {self.windows_significant:,}",
            "",
            "CLUSTERS",
            "-" * 70,
            f"Clusters: {self.clusters:,}",
            f"Significant clusters (FDR <= {self.parameters.get('fdr', 'N/A')}): "
            f"{self.clusters_significant:,}",
            f"  up: {self.clusters_up:,}",
            f"  down: {self.clusters_down:,}",
        ])
        if self.top_cluster:
            lines.append(f"Top cluster: {self.top_cluster}")

        lines.extend([
            "",
            "PARAMETERS",
            "-" * 70,
        ])

        for key, value in sorted(self.parameters.items()):
            if isinstance(value, bool):
                lines.append(f"  {key}: {value}")
            elif isinstance(value, float):
                lines.append(f"  {key}: {value:.4f}")
            elif isinstance(value, int):
                lines.append(f"  {key}: {value:,}")
            else:
                lines.append(f"  {key}: {value}")

        lines.extend([
            "",
            "=" * 70,
        ])

        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the summary.
        """
        return {
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "input": {
                "bam_paths": self.bam_paths,
                "groups": self.groups,
                "library_sizes": self.library_sizes,
                "norm_factors": self.norm_factors,
            },
            "windows": {
                "counted": self.windows_counted,
                "filter": self.filter_name,
                "retained": self.windows_retained,
                "significant": self.windows_significant,
            },
            "testing": {
                "test": self.test,
                "dispersion": self.dispersion,
                "normalization": self.normalization,
                "df_prior": self.df_prior,
                "infinite_prior_df": self.infinite_prior_df,
            },
            "clusters": {
                "total": self.clusters,
                "significant": self.clusters_significant,
                "up": self.clusters_up,
                "down": self.clusters_down,
                "top": self.top_cluster,
            },
            "parameters": self.parameters,
        }


def write_summary(summary: AnalysisSummary, path: str | Path) -> None:
    """Write summary report to text file.

    Args:
        summary: AnalysisSummary object to write.
        path: Output file path.
    """
    path = Path(path)
    logger.info(f"Writing summary to {path}")

    with open(path, "w") as f:
        f.write(summary.to_text())
        f.write("\n")
