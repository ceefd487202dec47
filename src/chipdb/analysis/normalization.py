"""Normalization for chipdb.

Two families remove systematic differences between libraries:

* Scaling factors (TMM) computed on a reference count set: large bins
  for composition bias, high-abundance windows for efficiency bias, or
  a spike-in chromosome. The factors are transplanted onto the windows,
  which is only valid when both count sets share library totals.
* Trended offsets, a per-window, per-sample GLM offset from a lowess fit
  of log-counts against abundance, for abundance-dependent biases.

Exactly one strategy is applied per analysis.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy.stats import rankdata

from chipdb.core.stats import ave_log_cpm, lowess_fit
from chipdb.utils.errors import LibrarySizeMismatchError, format_totals_mismatch
from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chipdb.core.models import WindowCounts

logger = get_logger(__name__)


def _upper_quartile_ref(counts: np.ndarray, lib_sizes: np.ndarray) -> int:
    """Column whose upper-quartile CPM is closest to the mean upper quartile."""
    with np.errstate(divide="ignore", invalid="ignore"):
        f75 = np.quantile(counts / lib_sizes, 0.75, axis=0)
    return int(np.argmin(np.abs(f75 - np.mean(f75))))


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
    weighted: bool,
) -> float:
    """Trimmed mean of M-values of one sample against the reference."""
    obs = obs.astype(np.float64)
    ref = ref.astype(np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        var = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, var = log_r[fin], abs_e[fin], var[fin]
    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = math.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = math.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not np.any(keep):
        return 1.0

    if weighted:
        m = np.sum(log_r[keep] / var[keep]) / np.sum(1 / var[keep])
    else:
        m = np.mean(log_r[keep])
    if not np.isfinite(m):
        return 1.0
    return float(2.0**m)


def calc_norm_factors(
    counts: np.ndarray,
    lib_sizes: np.ndarray,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    weighted: bool = True,
    ref_column: int | None = None,
) -> np.ndarray:
    """Compute TMM normalization factors.

    Each sample is compared with a reference sample. Rows with extreme
    log-ratios (``logratio_trim`` from each end) or extreme average
    abundance (``sum_trim`` from each end) are trimmed, and the
    remaining log-ratios are averaged with inverse-variance weights.
    Rows with a zero count in either sample carry no information for
    that pair and are ignored.

    Args:
        counts: Count matrix (n_rows, n_samples).
        lib_sizes: Library size per sample.
        logratio_trim: Fraction trimmed from each end of the log-ratios.
        sum_trim: Fraction trimmed from each end of the abundances.
        weighted: Use precision weights in the trimmed mean.
        ref_column: Reference sample; chosen by upper quartile when None.

    Returns:
        Factors with geometric mean 1.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)
    n_samples = counts.shape[1]
    if counts.shape[0] == 0:
        return np.ones(n_samples)
    if np.any(lib_sizes <= 0):
        raise ValueError("library sizes must be positive")

    if ref_column is None:
        ref_column = _upper_quartile_ref(counts, lib_sizes)

    factors = np.array(
        [
            _tmm_factor(
                counts[:, j],
                counts[:, ref_column],
                lib_sizes[j],
                lib_sizes[ref_column],
                logratio_trim,
                sum_trim,
                weighted,
            )
            for j in range(n_samples)
        ]
    )
    return factors / np.exp(np.mean(np.log(factors)))


def transplant_norm_factors(
    source_factors: Sequence[float],
    source_totals: Sequence[int],
    target: WindowCounts,
) -> WindowCounts:
    """Attach factors computed on one count set to another.

    Args:
        source_factors: Factors computed on the source counts.
        source_totals: Library totals of the source counts.
        target: Count matrix receiving the factors.

    Returns:
        Copy of ``target`` with the factors set and offsets cleared.

    Raises:
        LibrarySizeMismatchError: If the totals differ, meaning the two
            count sets were not produced with the same read parameters.
    """
    source_totals = np.asarray(source_totals, dtype=np.int64)
    if source_totals.shape != target.totals.shape or np.any(source_totals != target.totals):
        raise LibrarySizeMismatchError(
            format_totals_mismatch(source_totals.tolist(), target.totals.tolist()),
            suggestion="Count windows and bins with one shared ReadParam.",
        )
    return target.with_norm_factors(source_factors)


def _tmm_on(reference: WindowCounts, data: WindowCounts, label: str, **kwargs) -> WindowCounts:
    factors = calc_norm_factors(reference.counts, reference.totals, **kwargs)
    logger.info(
        f"{label} normalization factors: {', '.join(f'{f:.3f}' for f in factors)}"
    )
    return transplant_norm_factors(factors, reference.totals, data)


@dataclass(frozen=True)
class CompositionNormalization:
    """TMM on large background bins, removing composition bias.

    Attributes:
        bins: Counts in large bins (e.g. 10 kb) on the same libraries.
    """

    bins: WindowCounts
    logratio_trim: float = 0.3
    sum_trim: float = 0.05

    def apply(self, data: WindowCounts) -> WindowCounts:
        return _tmm_on(
            self.bins,
            data,
            "Composition",
            logratio_trim=self.logratio_trim,
            sum_trim=self.sum_trim,
        )


@dataclass(frozen=True)
class EfficiencyNormalization:
    """TMM on high-abundance windows, removing IP efficiency bias.

    Attributes:
        windows: High-abundance windows, typically a stringent global
            filter on broad windows from the same libraries.
    """

    windows: WindowCounts
    logratio_trim: float = 0.3
    sum_trim: float = 0.05

    def apply(self, data: WindowCounts) -> WindowCounts:
        return _tmm_on(
            self.windows,
            data,
            "Efficiency",
            logratio_trim=self.logratio_trim,
            sum_trim=self.sum_trim,
        )


@dataclass(frozen=True)
class SpikeInNormalization:
    """TMM on counts over spike-in chromatin.

    Attributes:
        spike_counts: Counts over the spike-in chromosomes or regions,
            sharing library totals with the data.
    """

    spike_counts: WindowCounts

    def apply(self, data: WindowCounts) -> WindowCounts:
        return _tmm_on(self.spike_counts, data, "Spike-in")


@dataclass(frozen=True)
class TrendedNormalization:
    """Lowess offsets removing abundance-dependent trended biases.

    Attributes:
        span: Fraction of windows used for each local fit.
        prior_count: Prior count for the abundance covariate.
    """

    span: float = 0.3
    prior_count: float = 2.0

    def offsets(self, data: WindowCounts) -> np.ndarray:
        """Natural-log GLM offsets, one per window and sample."""
        n_rows = len(data)
        if n_rows == 0:
            return np.zeros((0, data.n_samples))

        ab = ave_log_cpm(data.counts, data.totals, prior_count=self.prior_count)
        log_y = np.log(data.counts + 0.5)
        fitted = np.column_stack(
            [lowess_fit(log_y[:, j], ab, frac=self.span) for j in range(data.n_samples)]
        )
        fitted = fitted - fitted.mean(axis=1, keepdims=True)
        return fitted + np.mean(np.log(data.totals.astype(np.float64)))

    def apply(self, data: WindowCounts) -> WindowCounts:
        logger.info(f"Fitting trended offsets (span={self.span})")
        return data.with_norm_factors(np.ones(data.n_samples)).with_offsets(self.offsets(data))


NormalizationStrategy = (
    CompositionNormalization
    | EfficiencyNormalization
    | TrendedNormalization
    | SpikeInNormalization
)

_STRATEGIES = (
    CompositionNormalization,
    EfficiencyNormalization,
    TrendedNormalization,
    SpikeInNormalization,
)


def normalize(data: WindowCounts, strategy: NormalizationStrategy) -> WindowCounts:
    """Apply one normalization strategy.

    Args:
        data: Filtered window counts.
        strategy: One of the normalization strategy dataclasses.

    Returns:
        New WindowCounts carrying factors or offsets.

    Raises:
        TypeError: If ``strategy`` is not a known normalization strategy.
        LibrarySizeMismatchError: If a scaling strategy's reference
            counts do not share library totals with ``data``.
    """
    if not isinstance(strategy, _STRATEGIES):
        raise TypeError(f"Unknown normalization strategy: {type(strategy).__name__}")
    return strategy.apply(data)
