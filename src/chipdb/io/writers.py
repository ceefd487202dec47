"""Output writers for chipdb.

This module writes window-level and cluster-level differential binding
results as TSV tables, and significant clusters as BED intervals for
genome browsers.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from chipdb.core.models import ClusterResult, DBResult, MergedRegions, WindowCounts

logger = get_logger(__name__)


def _fmt(value: float, spec: str = ".6f") -> str:
    """Format a float, writing NA for missing values."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "NA"
    return format(value, spec)


def write_windows_tsv(
    data: WindowCounts,
    result: DBResult,
    path: str | Path,
    cluster_ids: np.ndarray | None = None,
) -> int:
    """Write per-window counts and test results to a TSV file.

    Columns:
        chrom, start, end, one count column per sample, logFC, logCPM,
        F (or LR), PValue, cluster

    Args:
        data: Tested window counts.
        result: Test result with one row per window.
        path: Output file path.
        cluster_ids: Optional 0-based cluster id of each window.

    Returns:
        Number of windows written.
    """
    path = Path(path)
    logger.info(f"Writing windows to {path}")

    if len(result) != len(data):
        raise ValueError("result must have one row per window")

    count = 0
    with open(path, "w") as f:
        f.write(
            "chrom\tstart\tend\t"
            + "".join(f"{s}\t" for s in data.samples)
            + f"logFC\tlogCPM\t{result.statistic_name}\tPValue\tcluster\n"
        )

        for i, (chrom, start, end) in enumerate(data.intervals()):
            counts = "".join(f"{c}\t" for c in data.counts[i])
            cluster = str(int(cluster_ids[i]) + 1) if cluster_ids is not None else "NA"
            f.write(
                f"{chrom}\t{start}\t{end}\t{counts}"
                f"{_fmt(float(result.logfc[i]))}\t{_fmt(float(result.logcpm[i]))}\t"
                f"{_fmt(float(result.statistic[i]))}\t{_fmt(float(result.pvalue[i]), '.6e')}\t"
                f"{cluster}\n"
            )
            count += 1

    logger.info(f"Wrote {count:,} windows to {path}")
    return count


def _ranked(clusters: ClusterResult) -> np.ndarray:
    """Cluster indices ordered by p-value, empty clusters last."""
    pvalue = np.nan_to_num(clusters.pvalue, nan=np.inf)
    return np.argsort(pvalue, kind="stable")


def write_clusters_tsv(
    merged: MergedRegions,
    clusters: ClusterResult,
    data: WindowCounts,
    path: str | Path,
) -> int:
    """Write per-cluster results to a TSV file, ranked by p-value.

    Columns:
        rank, cluster, chrom, start, end, n_windows, n_up, n_down,
        PValue, FDR, direction, rep_test, rep_logFC, best_pos

    ``best_pos`` is the midpoint of the representative window and
    ``rep_test`` its 1-based row in the windows table.

    Args:
        merged: Cluster coordinates.
        clusters: Combined statistics, one row per cluster.
        data: Tested window counts, for representative positions.
        path: Output file path.

    Returns:
        Number of clusters written.
    """
    path = Path(path)
    logger.info(f"Writing clusters to {path}")

    count = 0
    with open(path, "w") as f:
        f.write(
            "rank\tcluster\tchrom\tstart\tend\tn_windows\tn_up\tn_down\t"
            "PValue\tFDR\tdirection\trep_test\trep_logFC\tbest_pos\n"
        )

        for rank, k in enumerate(_ranked(clusters), 1):
            rep = int(clusters.rep_test[k])
            if rep >= 0:
                best_pos = str(int((data.start[rep] + data.end[rep]) // 2))
                rep_str = str(rep + 1)
            else:
                best_pos = rep_str = "NA"
            f.write(
                f"{rank}\t{k + 1}\t{merged.chrom[k]}\t{merged.start[k]}\t{merged.end[k]}\t"
                f"{clusters.n_windows[k]}\t{clusters.n_up[k]}\t{clusters.n_down[k]}\t"
                f"{_fmt(float(clusters.pvalue[k]), '.6e')}\t{_fmt(float(clusters.fdr[k]), '.6e')}\t"
                f"{clusters.direction[k] or 'NA'}\t{rep_str}\t"
                f"{_fmt(float(clusters.rep_logfc[k]))}\t{best_pos}\n"
            )
            count += 1

    logger.info(f"Wrote {count:,} clusters to {path}")
    return count


def write_clusters_bed(
    merged: MergedRegions,
    clusters: ClusterResult,
    path: str | Path,
    fdr_threshold: float = 0.05,
) -> int:
    """Write significant clusters to BED format for downstream tools.

    BED columns: chrom, start, end, name (cluster_N), score
    (``-10 * log10(FDR)``, capped at 1000), strand (``.``)

    Note: BED format uses 0-based, half-open coordinates.
    Start is converted from 1-based to 0-based.

    Args:
        merged: Cluster coordinates.
        clusters: Combined statistics.
        path: Output file path.
        fdr_threshold: Maximum FDR of written clusters.

    Returns:
        Number of clusters written.
    """
    path = Path(path)
    logger.info(f"Writing significant clusters to BED format: {path}")

    significant = clusters.significant(fdr_threshold)
    count = 0
    with open(path, "w") as f:
        for k in _ranked(clusters):
            if not significant[k]:
                continue
            fdr = max(float(clusters.fdr[k]), 1e-100)
            score = min(1000, int(-10 * math.log10(fdr)))
            f.write(
                f"{merged.chrom[k]}\t{merged.start[k] - 1}\t{merged.end[k]}\t"
                f"cluster_{k + 1}\t{score}\t.\n"
            )
            count += 1

    logger.info(f"Wrote {count:,} clusters to {path}")
    return count
