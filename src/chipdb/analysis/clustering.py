"""Region-level aggregation of window tests for chipdb.

Controlling the FDR across windows does not control it across the
regions a reader will interpret, because one binding site usually spans
many windows. This module clusters windows into regions and combines
their p-values so that multiple-testing correction is applied across
regions instead.

Clusters come either from single-linkage merging of adjacent windows
(``merge_windows``; every window belongs to exactly one cluster) or
from overlaps with externally supplied regions (``find_overlaps``; a
window may belong to several regions and a region may hold none).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from chipdb.core.models import ClusterResult, MergedRegions, WindowCounts
from chipdb.core.stats import adjust_pvalues, weighted_simes
from chipdb.utils.logging import get_logger
from chipdb.utils.sorting import genomic_order

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chipdb.core.models import Region

logger = get_logger(__name__)


def _intervals(windows) -> tuple[np.ndarray, np.ndarray, np.ndarray, list[str] | None]:
    """Unpack a WindowCounts or a ``(chrom, start, end)`` tuple."""
    if isinstance(windows, WindowCounts):
        return windows.chrom, windows.start, windows.end, list(windows.chrom_lengths) or None
    chrom, start, end = windows
    return (
        np.asarray(chrom, dtype=object),
        np.asarray(start, dtype=np.int64),
        np.asarray(end, dtype=np.int64),
        None,
    )


# =============================================================================
# Cluster construction
# =============================================================================


def _split_wide(
    ids: np.ndarray,
    start: np.ndarray,
    end: np.ndarray,
    n_clusters: int,
    max_width: int,
) -> np.ndarray:
    """Split clusters wider than ``max_width`` into equal-width parts."""
    c_start = np.full(n_clusters, np.iinfo(np.int64).max)
    c_end = np.zeros(n_clusters, dtype=np.int64)
    np.minimum.at(c_start, ids, start)
    np.maximum.at(c_end, ids, end)
    width = c_end - c_start + 1

    n_parts = np.maximum(np.ceil(width / max_width).astype(np.int64), 1)
    part_width = width / n_parts
    mid = (start + end) / 2
    part = np.floor((mid - c_start[ids]) / part_width[ids]).astype(np.int64)
    part = np.clip(part, 0, n_parts[ids] - 1)

    offset = np.concatenate([[0], np.cumsum(n_parts)[:-1]])
    raw = offset[ids] + part
    # drop empty parts and renumber in order
    _, new_ids = np.unique(raw, return_inverse=True)
    return new_ids.astype(np.int64)


def merge_windows(
    windows,
    tol: int = 100,
    max_width: int | None = None,
    sign: np.ndarray | None = None,
) -> MergedRegions:
    """Cluster adjacent windows by single linkage.

    A window joins the current cluster when it lies on the same
    chromosome and starts no more than ``tol`` bp after the cluster's
    running end (overlapping windows always join).

    Args:
        windows: WindowCounts, or a ``(chrom, start, end)`` tuple.
        tol: Maximum gap between windows of one cluster.
        max_width: Split clusters wider than this into
            ``ceil(width / max_width)`` sub-clusters of equal width,
            assigning windows by their midpoints.
        sign: Optional boolean per window (e.g. ``logfc > 0``); a cluster
            is also split wherever the sign changes.

    Returns:
        MergedRegions with one id per input window; ids are numbered in
        genomic order.
    """
    chrom, start, end, chrom_order = _intervals(windows)
    n = len(start)
    if n == 0:
        empty = np.zeros(0, dtype=np.int64)
        return MergedRegions(ids=empty, chrom=np.array([], dtype=object), start=empty, end=empty)
    if tol < 0:
        raise ValueError(f"tol must be non-negative, got {tol}")
    if sign is not None and len(sign) != n:
        raise ValueError("sign must have one entry per window")

    order = genomic_order(chrom, start, chrom_order)
    sorted_ids = np.zeros(n, dtype=np.int64)

    current = 0
    run_end = end[order[0]]
    for k in range(1, n):
        i, prev = order[k], order[k - 1]
        new = chrom[i] != chrom[prev] or start[i] - run_end - 1 > tol
        if not new and sign is not None and bool(sign[i]) != bool(sign[prev]):
            new = True
        if new:
            current += 1
            run_end = end[i]
        else:
            run_end = max(run_end, end[i])
        sorted_ids[k] = current

    ids = np.empty(n, dtype=np.int64)
    ids[order] = sorted_ids
    n_clusters = current + 1

    if max_width is not None:
        if max_width < 1:
            raise ValueError(f"max_width must be positive, got {max_width}")
        ids = _split_wide(ids, start, end, n_clusters, max_width)
        n_clusters = int(ids.max()) + 1

    c_start = np.full(n_clusters, np.iinfo(np.int64).max)
    c_end = np.zeros(n_clusters, dtype=np.int64)
    np.minimum.at(c_start, ids, start)
    np.maximum.at(c_end, ids, end)
    c_chrom = np.empty(n_clusters, dtype=object)
    c_chrom[ids] = chrom

    logger.info(f"Merged {n:,} windows into {n_clusters:,} clusters (tol={tol})")
    return MergedRegions(ids=ids, chrom=c_chrom, start=c_start, end=c_end)


def find_overlaps(
    windows,
    regions: Sequence[Region],
) -> tuple[np.ndarray, np.ndarray]:
    """Find every (region, window) overlap.

    Args:
        windows: WindowCounts, or a ``(chrom, start, end)`` tuple.
        regions: Regions to overlap with.

    Returns:
        Tuple of (region indices, window indices), sorted by region then
        window.
    """
    chrom, start, end, _ = _intervals(windows)
    region_hits: list[np.ndarray] = []
    window_hits: list[np.ndarray] = []

    by_chrom: dict[str, np.ndarray] = {}
    for c in dict.fromkeys(chrom):
        by_chrom[c] = np.flatnonzero(chrom == c)

    sorted_by_chrom = {}
    for c, rows in by_chrom.items():
        rows = rows[np.argsort(start[rows], kind="stable")]
        max_width = int((end[rows] - start[rows]).max()) + 1
        sorted_by_chrom[c] = (rows, start[rows], max_width)

    for r_idx, region in enumerate(regions):
        entry = sorted_by_chrom.get(region.chrom)
        if entry is None:
            continue
        rows, starts, max_width = entry
        lo = np.searchsorted(starts, region.start - max_width + 1, side="left")
        hi = np.searchsorted(starts, region.end, side="right")
        cand = rows[lo:hi]
        cand = np.sort(cand[end[cand] >= region.start])
        if len(cand):
            region_hits.append(np.full(len(cand), r_idx, dtype=np.int64))
            window_hits.append(cand)

    if not region_hits:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty.copy()
    return np.concatenate(region_hits), np.concatenate(window_hits)


# =============================================================================
# Per-cluster combination
# =============================================================================


@dataclass
class _Group:
    windows: np.ndarray
    weights: np.ndarray


def _groups_from_ids(
    ids: np.ndarray,
    weights: np.ndarray | None,
    n_clusters: int | None = None,
) -> list[_Group]:
    ids = np.asarray(ids, dtype=np.int64)
    if n_clusters is None:
        n_clusters = int(ids.max()) + 1 if len(ids) else 0
    if weights is None:
        weights = np.ones(len(ids))
    weights = np.asarray(weights, dtype=np.float64)

    order = np.argsort(ids, kind="stable")
    sizes = np.bincount(ids, minlength=n_clusters)
    members = np.split(order, np.cumsum(sizes)[:-1]) if n_clusters else []
    return [_Group(m, weights[m]) for m in members]


def _groups_from_pairs(
    pairs: tuple[np.ndarray, np.ndarray],
    n_regions: int,
    weights: np.ndarray | None,
) -> list[_Group]:
    region_idx = np.asarray(pairs[0], dtype=np.int64)
    window_idx = np.asarray(pairs[1], dtype=np.int64)
    if weights is None:
        weights = np.ones(len(window_idx))
    weights = np.asarray(weights, dtype=np.float64)

    order = np.argsort(region_idx, kind="stable")
    sizes = np.bincount(region_idx, minlength=n_regions)
    members = np.split(order, np.cumsum(sizes)[:-1]) if n_regions else []
    return [_Group(window_idx[m], weights[m]) for m in members]


def _weighted_bh(pvalues: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Weighted Benjamini-Hochberg adjustment within one cluster; NaN stays NaN."""
    out = np.full(len(pvalues), np.nan)
    ok = np.flatnonzero(~np.isnan(pvalues))
    if len(ok) == 0:
        return out
    p = pvalues[ok]
    order = np.argsort(p, kind="stable")
    cum_w = np.cumsum(weights[ok][order])
    adj = p[order] * cum_w[-1] / cum_w
    adj = np.minimum.accumulate(adj[::-1])[::-1]
    out[ok[order]] = np.minimum(adj, 1.0)
    return out


def _holm(pvalues: np.ndarray) -> np.ndarray:
    """Holm-adjusted p-values within one cluster; NaN stays NaN."""
    out = np.full(len(pvalues), np.nan)
    ok = np.flatnonzero(~np.isnan(pvalues))
    n = len(ok)
    if n == 0:
        return out
    order = np.argsort(pvalues[ok], kind="stable")
    adj = np.maximum.accumulate((n - np.arange(n)) * pvalues[ok][order])
    out[ok[order]] = np.minimum(adj, 1.0)
    return out


def _direction(n_up: int, n_down: int, rep_logfc: float) -> str:
    if n_up > 0 and n_down > 0:
        return "mixed"
    if n_up > 0:
        return "up"
    if n_down > 0:
        return "down"
    return "up" if rep_logfc > 0 else "down"


class _ResultBuilder:
    """Accumulates per-cluster fields; empty clusters stay NaN."""

    def __init__(self, n: int):
        self.n_windows = np.zeros(n, dtype=np.int64)
        self.n_up = np.zeros(n, dtype=np.int64)
        self.n_down = np.zeros(n, dtype=np.int64)
        self.pvalue = np.full(n, np.nan)
        self.direction = np.full(n, "", dtype=object)
        self.rep_test = np.full(n, -1, dtype=np.int64)
        self.rep_logfc = np.full(n, np.nan)

    def set(
        self,
        k: int,
        n_windows: int,
        n_up: int,
        n_down: int,
        pvalue: float,
        direction: str,
        rep: int,
        rep_logfc: float,
    ) -> None:
        self.n_windows[k] = n_windows
        self.n_up[k] = n_up
        self.n_down[k] = n_down
        self.pvalue[k] = pvalue
        self.direction[k] = direction
        self.rep_test[k] = rep
        self.rep_logfc[k] = rep_logfc

    def build(self, fdr: np.ndarray | None = None) -> ClusterResult:
        if fdr is None:
            fdr = adjust_pvalues(self.pvalue, method="fdr_bh")
        return ClusterResult(
            n_windows=self.n_windows,
            n_up=self.n_up,
            n_down=self.n_down,
            pvalue=self.pvalue,
            fdr=fdr,
            direction=self.direction,
            rep_test=self.rep_test,
            rep_logfc=self.rep_logfc,
        )


def _combine(
    groups: list[_Group],
    pvalues: np.ndarray,
    logfc: np.ndarray,
    fc_threshold: float,
) -> ClusterResult:
    pvalues = np.asarray(pvalues, dtype=np.float64)
    logfc = np.asarray(logfc, dtype=np.float64)
    out = _ResultBuilder(len(groups))

    for k, group in enumerate(groups):
        if len(group.windows) == 0:
            continue
        p = pvalues[group.windows]
        lfc = logfc[group.windows]
        combined, best, _ = weighted_simes(p, group.weights)

        sig = _weighted_bh(p, group.weights) <= fc_threshold
        n_up = int(np.sum(sig & (lfc > 0)))
        n_down = int(np.sum(sig & (lfc < 0)))
        rep = int(group.windows[best])
        out.set(
            k,
            len(group.windows),
            n_up,
            n_down,
            combined,
            _direction(n_up, n_down, float(lfc[best])),
            rep,
            float(logfc[rep]),
        )
    return out.build()


def combine_tests(
    ids: np.ndarray,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    weights: np.ndarray | None = None,
    fc_threshold: float = 0.05,
) -> ClusterResult:
    """Combine window p-values within clusters by the weighted Simes method.

    The combined p-value tests the joint null that no window in the
    cluster is differentially bound. ``n_up``/``n_down`` count windows
    whose within-cluster weighted BH-adjusted p-value is at most
    ``fc_threshold``, split by the sign of their log fold change, and
    set the cluster's direction. The cluster FDR is the BH adjustment of
    the combined p-values across clusters.

    Args:
        ids: Cluster id of each window (0-based).
        pvalues: Window p-values.
        logfc: Window log fold changes.
        weights: Optional positive window weights.
        fc_threshold: Within-cluster FDR for counting changed windows.

    Returns:
        ClusterResult with one row per cluster id.
    """
    return _combine(_groups_from_ids(ids, weights), pvalues, logfc, fc_threshold)


def combine_overlaps(
    pairs: tuple[np.ndarray, np.ndarray],
    n_regions: int,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    weights: np.ndarray | None = None,
    fc_threshold: float = 0.05,
) -> ClusterResult:
    """Weighted Simes combination for windows grouped by region overlap.

    Args:
        pairs: ``(region_idx, window_idx)`` from ``find_overlaps``.
        n_regions: Number of regions; regions without windows get NaN.
        pvalues: Window p-values.
        logfc: Window log fold changes.
        weights: Optional weight per pair.
        fc_threshold: Within-region FDR for counting changed windows.

    Returns:
        ClusterResult with one row per region.
    """
    groups = _groups_from_pairs(pairs, n_regions, weights)
    return _combine(groups, pvalues, logfc, fc_threshold)


def _best(
    groups: list[_Group],
    pvalues: np.ndarray,
    logfc: np.ndarray,
    abundances: np.ndarray | None,
    by_pvalue: bool,
    fc_threshold: float,
) -> ClusterResult:
    pvalues = np.asarray(pvalues, dtype=np.float64)
    logfc = np.asarray(logfc, dtype=np.float64)
    if not by_pvalue and abundances is None:
        raise ValueError("abundances are required when by_pvalue is False")
    out = _ResultBuilder(len(groups))

    for k, group in enumerate(groups):
        n = len(group.windows)
        if n == 0:
            continue
        p = pvalues[group.windows]
        lfc = logfc[group.windows]
        if by_pvalue:
            best = int(np.argmin(p))
            combined = min(1.0, float(p[best]) * n)
        else:
            best = int(np.argmax(np.asarray(abundances)[group.windows]))
            combined = float(p[best])

        sig = adjust_pvalues(p, method="fdr_bh") <= fc_threshold
        n_up = int(np.sum(sig & (lfc > 0)))
        n_down = int(np.sum(sig & (lfc < 0)))
        rep = int(group.windows[best])
        out.set(
            k,
            n,
            n_up,
            n_down,
            combined,
            _direction(n_up, n_down, float(lfc[best])),
            rep,
            float(logfc[rep]),
        )
    return out.build()


def get_best_test(
    ids: np.ndarray,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    abundances: np.ndarray | None = None,
    by_pvalue: bool = True,
    fc_threshold: float = 0.05,
) -> ClusterResult:
    """Report one representative window per cluster.

    By p-value, the lowest-p window is chosen and its p-value is
    Bonferroni-corrected by the cluster size. Otherwise the most
    abundant window is chosen and its raw p-value reported.

    Args:
        ids: Cluster id of each window.
        pvalues: Window p-values.
        logfc: Window log fold changes.
        abundances: Window abundances, needed when ``by_pvalue`` is False.
        by_pvalue: Choose the best window by p-value.
        fc_threshold: Within-cluster FDR for counting changed windows.

    Returns:
        ClusterResult with one row per cluster id.
    """
    groups = _groups_from_ids(ids, None)
    return _best(groups, pvalues, logfc, abundances, by_pvalue, fc_threshold)


def get_best_overlaps(
    pairs: tuple[np.ndarray, np.ndarray],
    n_regions: int,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    abundances: np.ndarray | None = None,
    by_pvalue: bool = True,
    fc_threshold: float = 0.05,
) -> ClusterResult:
    """``get_best_test`` for windows grouped by region overlap."""
    groups = _groups_from_pairs(pairs, n_regions, None)
    return _best(groups, pvalues, logfc, abundances, by_pvalue, fc_threshold)


# =============================================================================
# Summit weighting
# =============================================================================


def cluster_summits(ids: np.ndarray, abundances: np.ndarray) -> np.ndarray:
    """Flag the most abundant window of each cluster.

    Ties go to the first window in input order.

    Returns:
        Boolean mask with exactly one True per non-empty cluster.
    """
    ids = np.asarray(ids, dtype=np.int64)
    abundances = np.asarray(abundances, dtype=np.float64)
    summits = np.zeros(len(ids), dtype=bool)
    for group in _groups_from_ids(ids, None):
        if len(group.windows):
            summits[group.windows[int(np.argmax(abundances[group.windows]))]] = True
    return summits


def upweight_summit(ids: np.ndarray, summits: np.ndarray) -> np.ndarray:
    """Weights giving each summit window the size of its cluster.

    With these weights the combined p-value is never worse than twice
    that of the summit alone or of the unweighted Simes combination.

    Args:
        ids: Cluster id of each window.
        summits: Boolean mask of summit windows.

    Returns:
        Weight per window; 1 for non-summit windows.
    """
    ids = np.asarray(ids, dtype=np.int64)
    sizes = np.bincount(ids)
    weights = np.ones(len(ids))
    summits = np.asarray(summits, dtype=bool)
    weights[summits] = sizes[ids[summits]]
    return weights


# =============================================================================
# Alternative cluster-level tests
# =============================================================================


def _one_sided(pvalues: np.ndarray, logfc: np.ndarray, up: bool) -> np.ndarray:
    """Convert two-sided p-values to one-sided p-values for one direction."""
    half = np.asarray(pvalues, dtype=np.float64) / 2
    right = logfc > 0 if up else logfc < 0
    return np.where(right, half, 1 - half)


def mixed_tests(
    ids: np.ndarray,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    weights: np.ndarray | None = None,
) -> ClusterResult:
    """Test for clusters holding significant changes in both directions.

    One-sided p-values for each direction are combined by weighted
    Simes, and the larger of the two combined values is the cluster
    p-value (an intersection-union test). Significant clusters hint at
    shifts in binding position or shape.

    Args:
        ids: Cluster id of each window.
        pvalues: Two-sided window p-values.
        logfc: Window log fold changes.
        weights: Optional positive window weights.

    Returns:
        ClusterResult; ``direction`` is ``mixed`` for every cluster and
        ``rep_test`` is the best window of the weaker direction.
    """
    logfc = np.asarray(logfc, dtype=np.float64)
    p_up = _one_sided(pvalues, logfc, up=True)
    p_down = _one_sided(pvalues, logfc, up=False)
    groups = _groups_from_ids(ids, weights)
    out = _ResultBuilder(len(groups))

    for k, group in enumerate(groups):
        if len(group.windows) == 0:
            continue
        comb_up, best_up, _ = weighted_simes(p_up[group.windows], group.weights)
        comb_down, best_down, _ = weighted_simes(p_down[group.windows], group.weights)
        if comb_up >= comb_down:
            combined, rep = comb_up, int(group.windows[best_up])
        else:
            combined, rep = comb_down, int(group.windows[best_down])
        lfc = logfc[group.windows]
        out.set(
            k,
            len(group.windows),
            int(np.sum(lfc > 0)),
            int(np.sum(lfc < 0)),
            combined,
            "mixed",
            rep,
            float(logfc[rep]),
        )
    return out.build()


def minimal_tests(
    ids: np.ndarray,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    min_sig_n: int = 3,
    min_sig_prop: float = 0.4,
    fc_threshold: float = 0.05,
) -> ClusterResult:
    """Test whether a minimum number of windows in each cluster changed.

    Holm-adjusted p-values are computed within each cluster and the
    cluster p-value is the ``x``-th smallest, with
    ``x = min(n, max(min_sig_n, ceil(min_sig_prop * n)))``. A small
    cluster p-value thus requires systematic change across the cluster
    rather than a single strong window.

    Args:
        ids: Cluster id of each window.
        pvalues: Window p-values.
        logfc: Window log fold changes.
        min_sig_n: Minimum number of changed windows.
        min_sig_prop: Minimum proportion of changed windows.
        fc_threshold: Holm threshold for counting changed windows.

    Returns:
        ClusterResult with one row per cluster id.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    logfc = np.asarray(logfc, dtype=np.float64)
    groups = _groups_from_ids(ids, None)
    out = _ResultBuilder(len(groups))

    for k, group in enumerate(groups):
        n = len(group.windows)
        if n == 0:
            continue
        adj = _holm(pvalues[group.windows])
        x = min(n, max(min_sig_n, math.ceil(min_sig_prop * n)))
        order = np.argsort(adj, kind="stable")
        pick = int(order[x - 1])

        lfc = logfc[group.windows]
        sig = adj <= fc_threshold
        n_up = int(np.sum(sig & (lfc > 0)))
        n_down = int(np.sum(sig & (lfc < 0)))
        rep = int(group.windows[pick])
        out.set(
            k,
            n,
            n_up,
            n_down,
            float(adj[pick]),
            _direction(n_up, n_down, float(lfc[pick])),
            rep,
            float(logfc[rep]),
        )
    return out.build()


def empirical_fdr(
    ids: np.ndarray,
    pvalues: np.ndarray,
    logfc: np.ndarray,
    weights: np.ndarray | None = None,
    neg_down: bool = True,
) -> ClusterResult:
    """Estimate the FDR from wrong-direction clusters.

    Intended for comparisons against a negative control (e.g. ChIP
    versus input), where genuine changes only go one way. When
    ``neg_down`` is True, increases are the signal and decreases are
    assumed to be false positives. One-sided p-values for each direction
    are combined per cluster; the FDR at a threshold ``t`` is the number
    of wrong-direction clusters with combined p at most ``t`` divided by
    the number of right-direction clusters at most ``t``, made monotone
    and capped at 1.

    Args:
        ids: Cluster id of each window.
        pvalues: Two-sided window p-values.
        logfc: Window log fold changes.
        weights: Optional positive window weights.
        neg_down: Whether negative log fold changes are the null direction.

    Returns:
        ClusterResult whose ``pvalue`` is the right-direction combined
        p-value and whose ``fdr`` is the empirical FDR.
    """
    logfc = np.asarray(logfc, dtype=np.float64)
    p_right = _one_sided(pvalues, logfc, up=neg_down)
    p_wrong = _one_sided(pvalues, logfc, up=not neg_down)
    groups = _groups_from_ids(ids, weights)
    out = _ResultBuilder(len(groups))
    wrong = np.full(len(groups), np.nan)
    label = "up" if neg_down else "down"

    for k, group in enumerate(groups):
        if len(group.windows) == 0:
            continue
        comb_right, best, _ = weighted_simes(p_right[group.windows], group.weights)
        wrong[k], _, _ = weighted_simes(p_wrong[group.windows], group.weights)
        lfc = logfc[group.windows]
        rep = int(group.windows[best])
        out.set(
            k,
            len(group.windows),
            int(np.sum(lfc > 0)),
            int(np.sum(lfc < 0)),
            comb_right,
            label,
            rep,
            float(logfc[rep]),
        )

    fdr = np.full(len(groups), np.nan)
    ok = ~np.isnan(out.pvalue)
    if np.any(ok):
        right_p = out.pvalue[ok]
        wrong_sorted = np.sort(wrong[ok])
        order = np.argsort(right_p, kind="stable")
        n_right = np.arange(1, len(order) + 1)
        n_wrong = np.searchsorted(wrong_sorted, right_p[order], side="right")
        est = np.minimum(n_wrong / n_right, 1.0)
        est = np.minimum.accumulate(est[::-1])[::-1]
        values = np.empty(len(order))
        values[order] = est
        fdr[ok] = values
    return out.build(fdr=fdr)
