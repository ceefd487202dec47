"""Window filtering for chipdb.

Filters remove windows that are unlikely to contain binding before any
test is run. Every statistic here depends only on counts summed or
averaged across samples (abundance, enrichment over background or
control, prior annotation), so it is independent of the differential
binding test statistic under the null and does not distort p-values.

Each strategy is a frozen dataclass exposing ``statistic(data)`` and a
``threshold``; a window is retained when its statistic is strictly above
the threshold, so raising a threshold never retains more windows.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.stats import rankdata

from chipdb.analysis.counting import check_totals
from chipdb.core.stats import ave_log_cpm
from chipdb.io.regions import overlaps_any
from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from chipdb.core.models import Region, WindowCounts

logger = get_logger(__name__)

DEFAULT_PRIOR_COUNT = 2.0


def scaled_average(
    data: WindowCounts,
    scale: float | np.ndarray = 1.0,
    prior_count: float = DEFAULT_PRIOR_COUNT,
) -> np.ndarray:
    """Average abundance rescaled to a reference width.

    Counts from a region ``scale`` times wider than the reference are
    expected to be ``scale`` times larger, so the prior count is scaled
    up accordingly and ``log2(scale)`` is subtracted.

    Args:
        data: Count matrix.
        scale: Width ratio to the reference, scalar or one per row.
        prior_count: Prior count for the reference width.

    Returns:
        Log2-CPM abundance per row, on the reference-width scale.
    """
    scale = np.asarray(scale, dtype=np.float64)
    if np.any(scale <= 0):
        raise ValueError("scale must be positive")
    ab = ave_log_cpm(data.counts, data.lib_sizes, prior_count=prior_count * scale)
    return ab - np.log2(scale)


def scale_control(
    chip_bins: WindowCounts,
    control_bins: WindowCounts,
    prior_count: float = DEFAULT_PRIOR_COUNT,
) -> float:
    """Composition factor for control library sizes.

    Large bins are assumed to hold mostly background, where ChIP and
    control should have equal abundance. The factor moves the median
    ChIP-minus-control abundance difference over the bins to zero when
    multiplied into the control library sizes.

    Args:
        chip_bins: ChIP counts in large bins.
        control_bins: Control counts in the same bins.
        prior_count: Prior count for the abundances.

    Returns:
        Multiplicative factor for the control library sizes.
    """
    if len(chip_bins) != len(control_bins):
        raise ValueError("ChIP and control bins must have the same rows")
    if len(chip_bins) == 0:
        return 1.0

    chip_ab = scaled_average(chip_bins, prior_count=prior_count)
    ctrl_ab = scaled_average(control_bins, prior_count=prior_count)
    diff = float(np.median(chip_ab - ctrl_ab))
    return float(2.0 ** (-diff))


def _median_with_fill(values: np.ndarray, fill: float, n_fill: int) -> float:
    """Median of ``values`` plus ``n_fill`` copies of ``fill``."""
    values = np.sort(values)
    n_low = int(np.searchsorted(values, fill, side="left"))
    total = len(values) + n_fill

    def pick(k: int) -> float:
        if k < n_low:
            return float(values[k])
        if k < n_low + n_fill:
            return fill
        return float(values[k - n_fill])

    return 0.5 * (pick((total - 1) // 2) + pick(total // 2))


def _zero_abundance(data: WindowCounts, prior_count: float) -> float:
    """Abundance of a window with no counts in any sample."""
    zero = np.zeros((1, data.n_samples), dtype=np.int64)
    return float(ave_log_cpm(zero, data.lib_sizes, prior_count=prior_count)[0])


def _log_fc_threshold(min_fc: float) -> float:
    if min_fc <= 0:
        raise ValueError(f"min_fc must be positive, got {min_fc}")
    return math.log2(min_fc)


@dataclass(frozen=True)
class CountFilter:
    """Keep windows whose summed count is at least ``min_count``."""

    min_count: int = 10

    @property
    def threshold(self) -> float:
        return self.min_count - 1

    def statistic(self, data: WindowCounts) -> np.ndarray:
        return data.counts.sum(axis=1).astype(np.float64)


@dataclass(frozen=True)
class ProportionFilter:
    """Keep the top ``prop`` fraction of genome windows by abundance.

    Windows dropped at counting time are ranked below every retained
    window, so the proportion refers to the whole genome.
    """

    prop: float = 0.01
    prior_count: float = DEFAULT_PRIOR_COUNT

    @property
    def threshold(self) -> float:
        return 1.0 - self.prop

    def statistic(self, data: WindowCounts) -> np.ndarray:
        if len(data) == 0:
            return np.zeros(0)
        ab = scaled_average(data, prior_count=self.prior_count)
        n_genome = max(data.n_genome_windows, len(data))
        n_missing = n_genome - len(data)
        return (rankdata(ab) + n_missing) / n_genome


@dataclass(frozen=True)
class GlobalFilter:
    """Keep windows ``min_fc``-fold above the genome-wide background.

    Attributes:
        background: Counts in large bins (``window_counts(..., bin=True)``)
            on the same libraries; when None the background is the
            median over all genome windows, dropped ones included.
        min_fc: Minimum fold change over background.
        prior_count: Prior count for the abundances.
    """

    background: WindowCounts | None = None
    min_fc: float = 3.0
    prior_count: float = DEFAULT_PRIOR_COUNT

    @property
    def threshold(self) -> float:
        return _log_fc_threshold(self.min_fc)

    def global_background(self, data: WindowCounts) -> float:
        """Background abundance on the window-width scale."""
        if self.background is not None:
            check_totals(data, self.background)
            scale = self.background.effective_width / data.effective_width
            bins = self.background
            bin_ab = scaled_average(bins, scale=scale, prior_count=self.prior_count)
            # Bin counting drops empty bins; they still belong to the background.
            n_empty = max(bins.n_genome_windows - len(bins), 0)
            zero_ab = _zero_abundance(bins, self.prior_count * scale) - math.log2(scale)
            return _median_with_fill(bin_ab, zero_ab, n_empty)

        ab = scaled_average(data, prior_count=self.prior_count)
        n_missing = max(data.n_genome_windows - len(data), 0)
        zero_ab = _zero_abundance(data, self.prior_count)
        return _median_with_fill(ab, zero_ab, n_missing)

    def statistic(self, data: WindowCounts) -> np.ndarray:
        ab = scaled_average(data, prior_count=self.prior_count)
        bg = self.global_background(data)
        logger.debug(f"Global background abundance: {bg:.3f} log2-CPM")
        return ab - bg


@dataclass(frozen=True)
class LocalFilter:
    """Keep windows ``min_fc``-fold above their local neighbourhood.

    ``neighborhood`` holds counts for regions that contain and are
    centred on each window (see ``chipdb.io.regions.neighborhood_regions``),
    with the same rows as the filtered data. Enrichment that spills into
    the neighbourhood raises the background, so broad marks may be
    under-retained.
    """

    neighborhood: WindowCounts
    min_fc: float = 3.0
    prior_count: float = DEFAULT_PRIOR_COUNT

    @property
    def threshold(self) -> float:
        return _log_fc_threshold(self.min_fc)

    def statistic(self, data: WindowCounts) -> np.ndarray:
        nb = self.neighborhood
        if len(nb) != len(data):
            raise ValueError("neighborhood must have one row per window")
        check_totals(data, nb)

        frag = data.fragment_length - 1
        win_width = (data.end - data.start + 1) + frag
        nb_width = (nb.end - nb.start + 1) + frag
        scale = np.maximum(nb_width - win_width, 1) / win_width

        bg_counts = np.maximum(nb.counts - data.counts, 0)
        bg_ab = ave_log_cpm(bg_counts, data.lib_sizes, prior_count=self.prior_count * scale)
        bg_ab = bg_ab - np.log2(scale)
        return scaled_average(data, prior_count=self.prior_count) - bg_ab


@dataclass(frozen=True)
class ControlFilter:
    """Keep windows ``min_fc``-fold above a matched control (input) sample.

    Attributes:
        control: Control counts with the same rows as the filtered data.
        control_bins: Control counts in large bins, for composition
            scaling; needs ``chip_bins`` too.
        chip_bins: ChIP counts in the same large bins.
        min_fc: Minimum fold change over the control.
        prior_count: Prior count for the abundances.
    """

    control: WindowCounts
    control_bins: WindowCounts | None = None
    chip_bins: WindowCounts | None = None
    min_fc: float = 3.0
    prior_count: float = DEFAULT_PRIOR_COUNT

    @property
    def threshold(self) -> float:
        return _log_fc_threshold(self.min_fc)

    def statistic(self, data: WindowCounts) -> np.ndarray:
        if len(self.control) != len(data):
            raise ValueError("control must have one row per window")

        factor = 1.0
        if self.chip_bins is not None and self.control_bins is not None:
            factor = scale_control(self.chip_bins, self.control_bins, self.prior_count)
            logger.debug(f"Control composition factor: {factor:.3f}")

        ctrl = self.control
        ctrl_ab = ave_log_cpm(ctrl.counts, ctrl.lib_sizes * factor, prior_count=self.prior_count)
        chip_ab = scaled_average(data, prior_count=self.prior_count)
        return chip_ab - ctrl_ab


@dataclass(frozen=True)
class AnnotationFilter:
    """Keep windows overlapping any of ``regions`` (e.g. promoters)."""

    regions: tuple[Region, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "regions", tuple(self.regions))

    @property
    def threshold(self) -> float:
        return 0.5

    def statistic(self, data: WindowCounts) -> np.ndarray:
        hit = overlaps_any(data.chrom, data.start, data.end, self.regions)
        return hit.astype(np.float64)


FilterStrategy = (
    CountFilter
    | ProportionFilter
    | GlobalFilter
    | LocalFilter
    | ControlFilter
    | AnnotationFilter
)

_STRATEGIES = (
    CountFilter,
    ProportionFilter,
    GlobalFilter,
    LocalFilter,
    ControlFilter,
    AnnotationFilter,
)


@dataclass
class FilterResult:
    """Outcome of a filtering step.

    Attributes:
        statistic: Filter statistic per window.
        keep: Boolean mask of retained windows.
        threshold: Threshold the statistic was compared against.
    """

    statistic: np.ndarray
    keep: np.ndarray
    threshold: float

    @property
    def n_kept(self) -> int:
        """Number of retained windows."""
        return int(self.keep.sum())


def filter_windows(data: WindowCounts, strategy: FilterStrategy) -> FilterResult:
    """Compute a filter statistic and the windows passing it.

    Args:
        data: Window counts to filter.
        strategy: One of the filter strategy dataclasses.

    Returns:
        FilterResult; apply it with ``data.subset(result.keep)``.

    Raises:
        TypeError: If ``strategy`` is not a known filter strategy.
    """
    if not isinstance(strategy, _STRATEGIES):
        raise TypeError(f"Unknown filter strategy: {type(strategy).__name__}")

    logger.info(f"Filtering {len(data):,} windows with {type(strategy).__name__}")

    stat = np.asarray(strategy.statistic(data), dtype=np.float64)
    threshold = float(strategy.threshold)
    keep = stat > threshold
    result = FilterResult(statistic=stat, keep=keep, threshold=threshold)

    logger.info(f"Retained {result.n_kept:,} of {len(data):,} windows")
    return result


def apply_filter(
    data: WindowCounts,
    strategy: FilterStrategy,
) -> tuple[WindowCounts, FilterResult]:
    """Filter and subset in one step.

    Returns:
        Tuple of (retained windows, filter result).
    """
    result = filter_windows(data, strategy)
    return data.subset(result.keep), result
