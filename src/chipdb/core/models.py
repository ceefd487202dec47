"""Data models for chipdb.

This module defines the core data structures shared by the pipeline
stages: genomic regions, read-extraction parameters, the window count
matrix, the design, and the per-window and per-cluster result tables.

Count matrices are treated as immutable. Every stage returns a new
object instead of modifying its input, and the numpy arrays held by
those objects are flagged read-only.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

PE_MODES = ("none", "both", "first", "second")


def _frozen_array(values, dtype=None) -> np.ndarray:
    """Copy ``values`` into a read-only numpy array."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class Region:
    """A genomic interval, 1-based and inclusive.

    Attributes:
        chrom: Chromosome name.
        start: First base of the region.
        end: Last base of the region.
        name: Optional identifier (e.g. a gene symbol).
        strand: ``+``, ``-`` or ``*`` when unstranded.
    """

    chrom: str
    start: int
    end: int
    name: str | None = None
    strand: str = "*"

    @property
    def width(self) -> int:
        """Region width in base pairs."""
        return self.end - self.start + 1

    def overlaps(self, chrom: str, start: int, end: int) -> bool:
        """Return True if the interval overlaps this region."""
        return self.chrom == chrom and start <= self.end and end >= self.start

    def contains(self, chrom: str, start: int, end: int) -> bool:
        """Return True if the interval lies wholly inside this region."""
        return self.chrom == chrom and start >= self.start and end <= self.end

    def __repr__(self) -> str:
        """Return string representation of the region."""
        label = f" {self.name}" if self.name else ""
        return f"Region({self.chrom}:{self.start}-{self.end}{label})"


@dataclass(frozen=True)
class ReadParam:
    """Read-extraction parameters shared by all counting calls.

    Library sizes are only comparable between count matrices produced
    with equal ``ReadParam`` objects, so a single instance should be
    reused for every counting call of an analysis.

    Attributes:
        minq: Minimum mapping quality; None disables the filter.
        dedup: Skip reads marked as PCR/optical duplicates.
        pe: Paired-end mode: ``none`` (single-end), ``both`` (count
            proper pairs as fragments), ``first`` or ``second`` (use only
            that mate as a single-end read).
        max_frag: Maximum fragment size for ``pe="both"``.
        restrict: Chromosomes to count; None counts every chromosome.
        discard: Regions whose wholly-contained reads are skipped.
    """

    minq: int | None = None
    dedup: bool = False
    pe: str = "none"
    max_frag: int = 500
    restrict: tuple[str, ...] | None = None
    discard: tuple[Region, ...] = ()

    def __post_init__(self) -> None:
        """Validate the mode and normalise sequences to tuples."""
        if self.pe not in PE_MODES:
            raise ValueError(
                f"pe must be one of {', '.join(PE_MODES)}, got {self.pe!r}"
            )
        if self.max_frag <= 0:
            raise ValueError(f"max_frag must be positive, got {self.max_frag}")
        if self.restrict is not None:
            object.__setattr__(self, "restrict", tuple(self.restrict))
        object.__setattr__(self, "discard", tuple(self.discard))

    @property
    def paired(self) -> bool:
        """True when fragments are built from proper pairs."""
        return self.pe == "both"


@dataclass(frozen=True, eq=False)
class WindowCounts:
    """Fragment counts for genomic windows across samples.

    Rows are windows in genomic order; columns are samples in input
    order.

    Attributes:
        chrom: Chromosome of each window.
        start: Window start (1-based, inclusive).
        end: Window end (1-based, inclusive).
        counts: Integer count matrix of shape (n_windows, n_samples).
        totals: Number of fragments per sample that passed ``param``.
        samples: Sample names, one per column.
        ext: Fragment length used for each sample (None for the read span).
        final_ext: Common fragment length after rescaling, if any.
        width: Window width in base pairs.
        spacing: Distance between consecutive window starts.
        param: Read parameters used for counting.
        chrom_lengths: Length of every counted chromosome.
        norm_factors: Per-sample normalization factors (default 1).
        offsets: Optional natural-log GLM offsets, same shape as counts.
    """

    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray
    counts: np.ndarray
    totals: np.ndarray
    samples: tuple[str, ...]
    ext: tuple[int | None, ...] = ()
    final_ext: int | None = None
    width: int = 1
    spacing: int = 1
    param: ReadParam = field(default_factory=ReadParam)
    chrom_lengths: dict[str, int] = field(default_factory=dict)
    norm_factors: np.ndarray | None = None
    offsets: np.ndarray | None = None

    def __post_init__(self) -> None:
        """Coerce fields to read-only arrays and check their shapes."""
        counts = np.asarray(self.counts, dtype=np.int64)
        if counts.ndim != 2:
            counts = counts.reshape(len(self.start), len(self.samples))
        n_rows, n_samples = counts.shape

        object.__setattr__(self, "chrom", _frozen_array(self.chrom, dtype=object))
        object.__setattr__(self, "start", _frozen_array(self.start, dtype=np.int64))
        object.__setattr__(self, "end", _frozen_array(self.end, dtype=np.int64))
        object.__setattr__(self, "counts", _frozen_array(counts))
        object.__setattr__(self, "totals", _frozen_array(self.totals, dtype=np.int64))
        object.__setattr__(self, "samples", tuple(self.samples))
        object.__setattr__(self, "chrom_lengths", dict(self.chrom_lengths))

        if not (len(self.chrom) == len(self.start) == len(self.end) == n_rows):
            raise ValueError("chrom/start/end must have one entry per count row")
        if len(self.totals) != n_samples or len(self.samples) != n_samples:
            raise ValueError("totals and samples must have one entry per column")

        ext = tuple(self.ext) if self.ext else (None,) * n_samples
        if len(ext) != n_samples:
            raise ValueError("ext must have one entry per sample")
        object.__setattr__(self, "ext", ext)

        if self.norm_factors is None:
            nf = np.ones(n_samples)
        else:
            nf = np.asarray(self.norm_factors, dtype=np.float64)
            if nf.shape != (n_samples,):
                raise ValueError("norm_factors must have one entry per sample")
        object.__setattr__(self, "norm_factors", _frozen_array(nf))

        if self.offsets is not None:
            offsets = np.asarray(self.offsets, dtype=np.float64)
            if offsets.shape != counts.shape:
                raise ValueError("offsets must have the same shape as counts")
            object.__setattr__(self, "offsets", _frozen_array(offsets))

    def __len__(self) -> int:
        """Number of windows."""
        return len(self.start)

    @property
    def n_samples(self) -> int:
        """Number of samples (columns)."""
        return self.counts.shape[1]

    @property
    def lib_sizes(self) -> np.ndarray:
        """Effective library sizes, ``totals * norm_factors``."""
        return self.totals * self.norm_factors

    @property
    def fragment_length(self) -> float:
        """Typical fragment length, used to convert window widths."""
        if self.final_ext is not None:
            return float(self.final_ext)
        known = [e for e in self.ext if e is not None]
        return float(np.mean(known)) if known else 1.0

    @property
    def effective_width(self) -> float:
        """Width of the span of fragment midpoints that a window collects."""
        return self.width + self.fragment_length - 1

    @property
    def n_genome_windows(self) -> int:
        """Number of windows tiling the counted chromosomes, empty ones included."""
        return int(
            sum((length - 1) // self.spacing + 1 for length in self.chrom_lengths.values())
        )

    def glm_offsets(self) -> np.ndarray:
        """Natural-log offsets for the GLM, one per window and sample."""
        if self.offsets is not None:
            return np.array(self.offsets)
        log_lib = np.log(self.lib_sizes.astype(np.float64))
        return np.broadcast_to(log_lib, self.counts.shape).copy()

    def subset(self, rows) -> WindowCounts:
        """Return a new matrix holding only the selected rows.

        Args:
            rows: Boolean mask or integer index array.

        Returns:
            New WindowCounts; column metadata is unchanged.
        """
        rows = np.asarray(rows)
        return dataclasses.replace(
            self,
            chrom=self.chrom[rows],
            start=self.start[rows],
            end=self.end[rows],
            counts=self.counts[rows],
            offsets=None if self.offsets is None else self.offsets[rows],
        )

    def with_norm_factors(self, norm_factors: Sequence[float]) -> WindowCounts:
        """Return a copy with new normalization factors and no offsets."""
        return dataclasses.replace(self, norm_factors=np.asarray(norm_factors), offsets=None)

    def with_offsets(self, offsets: np.ndarray) -> WindowCounts:
        """Return a copy with a GLM offset matrix."""
        return dataclasses.replace(self, offsets=np.asarray(offsets))

    def intervals(self):
        """Iterate over ``(chrom, start, end)`` tuples."""
        for c, s, e in zip(self.chrom, self.start, self.end):
            yield str(c), int(s), int(e)

    def __repr__(self) -> str:
        """Return string representation of the matrix."""
        return (
            f"WindowCounts({len(self):,} windows x {self.n_samples} samples, "
            f"width={self.width}, spacing={self.spacing})"
        )


@dataclass(frozen=True, eq=False)
class Design:
    """Design matrix with named coefficients.

    Attributes:
        matrix: Array of shape (n_samples, n_coef).
        columns: Coefficient names.
        groups: Group label of each sample, if built from groups.
    """

    matrix: np.ndarray
    columns: tuple[str, ...]
    groups: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Freeze the matrix and check the column names."""
        matrix = np.asarray(self.matrix, dtype=np.float64)
        if matrix.ndim != 2:
            raise ValueError("design matrix must be two-dimensional")
        if len(self.columns) != matrix.shape[1]:
            raise ValueError("one column name is required per design column")
        object.__setattr__(self, "matrix", _frozen_array(matrix))
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "groups", tuple(self.groups))

    @property
    def n_samples(self) -> int:
        """Number of samples (rows)."""
        return self.matrix.shape[0]

    @property
    def n_coef(self) -> int:
        """Number of coefficients (columns)."""
        return self.matrix.shape[1]

    @property
    def df_residual(self) -> int:
        """Residual degrees of freedom of the full model."""
        return self.n_samples - int(np.linalg.matrix_rank(self.matrix))


@dataclass(eq=False)
class DBResult:
    """Per-window differential binding statistics.

    Rows correspond 1:1 to the rows of the tested WindowCounts.

    Attributes:
        logfc: Log2 fold change for the tested contrast.
        logcpm: Average abundance in log2 counts per million.
        statistic: F statistic (QL test) or likelihood ratio (LRT).
        pvalue: P-value of the test.
        method: ``ql`` or ``lrt``.
        dispersion: NB dispersion used for each window.
        df_prior: Prior degrees of freedom of the QL squeeze (QL only).
        s2_prior: Prior QL dispersion for each window (QL only).
        df_total: Total degrees of freedom for each window (QL only).
        infinite_prior_df: True when the prior df diverged to infinity.
    """

    logfc: np.ndarray
    logcpm: np.ndarray
    statistic: np.ndarray
    pvalue: np.ndarray
    method: str = "ql"
    dispersion: np.ndarray | None = None
    df_prior: float | None = None
    s2_prior: np.ndarray | None = None
    df_total: np.ndarray | None = None
    infinite_prior_df: bool = False

    def __len__(self) -> int:
        """Number of windows tested."""
        return len(self.pvalue)

    @property
    def statistic_name(self) -> str:
        """Column name of the test statistic."""
        return "F" if self.method == "ql" else "LR"


@dataclass(eq=False)
class MergedRegions:
    """Clusters of adjacent windows.

    Attributes:
        ids: Cluster index (0-based) of every input window.
        chrom: Chromosome of each cluster.
        start: First base covered by each cluster.
        end: Last base covered by each cluster.
    """

    ids: np.ndarray
    chrom: np.ndarray
    start: np.ndarray
    end: np.ndarray

    def __len__(self) -> int:
        """Number of clusters."""
        return len(self.start)

    @property
    def width(self) -> np.ndarray:
        """Width of each cluster in base pairs."""
        return self.end - self.start + 1


@dataclass(eq=False)
class ClusterResult:
    """Combined statistics for clusters or external regions.

    Entries for clusters without any windows are NaN (numeric fields),
    ``""`` (direction) or -1 (rep_test).

    Attributes:
        n_windows: Number of windows in each cluster.
        n_up: Windows with significant positive log fold change.
        n_down: Windows with significant negative log fold change.
        pvalue: Combined p-value of each cluster.
        fdr: Cluster-level adjusted p-value.
        direction: ``up``, ``down`` or ``mixed``.
        rep_test: Index of the representative window in the input.
        rep_logfc: Log fold change of the representative window.
    """

    n_windows: np.ndarray
    n_up: np.ndarray
    n_down: np.ndarray
    pvalue: np.ndarray
    fdr: np.ndarray
    direction: np.ndarray
    rep_test: np.ndarray
    rep_logfc: np.ndarray

    def __len__(self) -> int:
        """Number of clusters."""
        return len(self.pvalue)

    def significant(self, fdr_threshold: float = 0.05) -> np.ndarray:
        """Boolean mask of clusters with FDR at or below the threshold."""
        with np.errstate(invalid="ignore"):
            return np.nan_to_num(self.fdr, nan=1.0) <= fdr_threshold
