"""Window and region counting for chipdb.

This module turns indexed BAM files into fragment count matrices: counts
for sliding windows or non-overlapping bins across the genome, counts
for arbitrary regions, library totals and the strand cross-correlation
used to estimate the fragment length.

Every count uses the same definition of a fragment (see
``chipdb.io.bam.extract_fragments``), so library totals computed here are
comparable between calls that share a ``ReadParam``.
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from chipdb.core.models import ReadParam, WindowCounts
from chipdb.io.bam import (
    check_bam,
    extract_fragments,
    extract_reads,
    get_chrom_lengths,
)
from chipdb.utils.errors import AlignmentFileError
from chipdb.utils.logging import get_logger, progress_iterator

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from chipdb.core.models import Region

logger = get_logger(__name__)

DEFAULT_FILTER = 10


def window_starts(
    chrom_length: int,
    width: int,
    spacing: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Return the start and end of every window on a chromosome.

    Window ``k`` covers ``[1 + k*spacing, min(k*spacing + width, length)]``.

    Args:
        chrom_length: Length of the chromosome.
        width: Window width.
        spacing: Distance between window starts.

    Returns:
        Tuple of (starts, ends), 1-based inclusive.

    Examples:
        >>> s, e = window_starts(120, 50, 50)
        >>> s.tolist(), e.tolist()
        ([1, 51, 101], [50, 100, 120])
    """
    starts = np.arange(1, chrom_length + 1, spacing, dtype=np.int64)
    ends = np.minimum(starts + width - 1, chrom_length)
    return starts, ends


def count_overlaps(
    frag_starts: np.ndarray,
    frag_ends: np.ndarray,
    chrom_length: int,
    width: int,
    spacing: int,
) -> np.ndarray:
    """Count fragments overlapping each sliding window.

    Each fragment adds one to the contiguous run of windows it
    overlaps, accumulated with a difference array.

    Args:
        frag_starts: Fragment starts.
        frag_ends: Fragment ends.
        chrom_length: Length of the chromosome.
        width: Window width.
        spacing: Distance between window starts.

    Returns:
        Count per window, in the order of ``window_starts``.
    """
    n_windows = (chrom_length - 1) // spacing + 1
    if len(frag_starts) == 0:
        return np.zeros(n_windows, dtype=np.int64)

    fs = np.asarray(frag_starts, dtype=np.int64)
    fe = np.asarray(frag_ends, dtype=np.int64)
    kmin = np.maximum(-((width - fs) // spacing), 0)
    kmax = np.minimum((fe - 1) // spacing, n_windows - 1)
    valid = kmin <= kmax

    diff = np.bincount(kmin[valid], minlength=n_windows + 1)
    diff -= np.bincount(kmax[valid] + 1, minlength=n_windows + 1)
    return np.cumsum(diff[:n_windows])


def count_bins(
    frag_starts: np.ndarray,
    frag_ends: np.ndarray,
    chrom_length: int,
    width: int,
) -> np.ndarray:
    """Assign each fragment to exactly one non-overlapping bin.

    The bin holding the fragment midpoint receives the fragment. With
    fragments of length 1 this is the bin holding the read's 5' end.

    Args:
        frag_starts: Fragment starts.
        frag_ends: Fragment ends.
        chrom_length: Length of the chromosome.
        width: Bin width.

    Returns:
        Count per bin.
    """
    n_bins = (chrom_length - 1) // width + 1
    if len(frag_starts) == 0:
        return np.zeros(n_bins, dtype=np.int64)

    mid = (np.asarray(frag_starts, dtype=np.int64) + np.asarray(frag_ends, dtype=np.int64)) // 2
    idx = np.clip((mid - 1) // width, 0, n_bins - 1)
    return np.bincount(idx, minlength=n_bins).astype(np.int64)


def _resolve_ext(
    ext: int | None | Sequence[int | None],
    n_samples: int,
) -> list[int | None]:
    """Expand a scalar or per-sample extension length."""
    if ext is None or isinstance(ext, (int, np.integer)):
        return [None if ext is None else int(ext)] * n_samples
    ext = list(ext)
    if len(ext) != n_samples:
        raise ValueError(f"Got {len(ext)} ext values for {n_samples} BAM files")
    return [None if e is None else int(e) for e in ext]


def _shared_chrom_lengths(
    bams: Sequence[str | Path],
    restrict: Sequence[str] | None,
) -> dict[str, int]:
    """Return chromosome lengths, checking that every BAM header agrees."""
    lengths = get_chrom_lengths(bams[0], restrict)
    for bam in bams[1:]:
        other = get_chrom_lengths(bam, restrict)
        if other != lengths:
            raise AlignmentFileError(
                f"Chromosome names or lengths differ between {bams[0]} and {bam}",
                suggestion="All BAM files must be aligned to the same reference.",
            )
    return lengths


def _count_chromosome(
    bam: str,
    chrom: str,
    chrom_length: int,
    param: ReadParam,
    ext: int | None,
    final_ext: int | None,
    width: int,
    spacing: int,
    bin: bool,
) -> tuple[np.ndarray, int]:
    """Count one BAM file on one chromosome; runs in worker processes."""
    starts, ends = extract_fragments(bam, chrom, chrom_length, param, ext, final_ext)
    if bin:
        counts = count_bins(starts, ends, chrom_length, width)
    else:
        counts = count_overlaps(starts, ends, chrom_length, width, spacing)
    return counts, len(starts)


def _map_samples(
    executor: ProcessPoolExecutor | None,
    func,
    *iterables,
) -> Iterator:
    """Map over samples in input order, in-process when no executor."""
    if executor is None:
        return map(func, *iterables)
    return executor.map(func, *iterables)


def window_counts(
    bams: Sequence[str | Path],
    width: int = 50,
    spacing: int | None = None,
    ext: int | None | Sequence[int | None] = 100,
    param: ReadParam | None = None,
    filter: int | None = None,
    bin: bool = False,
    final_ext: int | None = None,
    workers: int = 1,
) -> WindowCounts:
    """Count fragments into windows tiling the genome.

    Args:
        bams: Indexed, sorted BAM files; one column each.
        width: Window width in bp.
        spacing: Distance between window starts; defaults to
            ``max(1, width // 2)``. Forced to ``width`` in bin mode.
        ext: Fragment length for single-end reads, scalar or one per BAM.
            Ignored for ``pe="both"`` and forced to 1 in bin mode.
        param: Read-extraction parameters.
        filter: Minimum summed count for a window to be kept; defaults
            to 10 (1 in bin mode).
        bin: Count into non-overlapping bins, each fragment once.
        final_ext: Rescale all fragments to this common length.
        workers: Number of processes used across BAM files.

    Returns:
        WindowCounts with one row per retained window.

    Raises:
        AlignmentFileError: If a BAM is missing, unindexed or stale.
        ValueError: If the parameters are inconsistent.
    """
    bams = [str(b) for b in bams]
    if not bams:
        raise ValueError("At least one BAM file is required")
    if width < 1:
        raise ValueError(f"width must be positive, got {width}")

    param = param or ReadParam()
    n_samples = len(bams)

    if bin:
        spacing = width
        ext_values: list[int | None] = [None if param.paired else 1] * n_samples
        final_ext = None
        filter = 1 if filter is None else filter
    else:
        if spacing is None:
            spacing = max(1, width // 2)
        ext_values = [None] * n_samples if param.paired else _resolve_ext(ext, n_samples)
        filter = DEFAULT_FILTER if filter is None else filter
    if spacing < 1:
        raise ValueError(f"spacing must be positive, got {spacing}")

    for bam in bams:
        check_bam(bam)
    chrom_lengths = _shared_chrom_lengths(bams, param.restrict)

    logger.info(
        f"Counting {n_samples} BAM file(s) into {'bins' if bin else 'windows'}: "
        f"width={width:,} bp, spacing={spacing:,} bp, filter={filter}"
    )

    chrom_out: list[np.ndarray] = []
    start_out: list[np.ndarray] = []
    end_out: list[np.ndarray] = []
    count_out: list[np.ndarray] = []
    totals = np.zeros(n_samples, dtype=np.int64)

    executor = ProcessPoolExecutor(max_workers=workers) if workers > 1 else None
    try:
        for chrom in progress_iterator(
            chrom_lengths, total=len(chrom_lengths), description="Counting"
        ):
            length = chrom_lengths[chrom]
            results = list(
                _map_samples(
                    executor,
                    _count_chromosome,
                    bams,
                    [chrom] * n_samples,
                    [length] * n_samples,
                    [param] * n_samples,
                    ext_values,
                    [final_ext] * n_samples,
                    [width] * n_samples,
                    [spacing] * n_samples,
                    [bin] * n_samples,
                )
            )
            matrix = np.column_stack([r[0] for r in results])
            totals += np.array([r[1] for r in results], dtype=np.int64)

            keep = matrix.sum(axis=1) >= filter
            if not np.any(keep):
                continue
            starts, ends = window_starts(length, width, spacing)
            chrom_out.append(np.full(int(keep.sum()), chrom, dtype=object))
            start_out.append(starts[keep])
            end_out.append(ends[keep])
            count_out.append(matrix[keep])
    finally:
        if executor is not None:
            executor.shutdown()

    if count_out:
        counts = np.vstack(count_out)
        chroms = np.concatenate(chrom_out)
        starts = np.concatenate(start_out)
        ends = np.concatenate(end_out)
    else:
        counts = np.zeros((0, n_samples), dtype=np.int64)
        chroms = np.array([], dtype=object)
        starts = ends = np.array([], dtype=np.int64)

    result = WindowCounts(
        chrom=chroms,
        start=starts,
        end=ends,
        counts=counts,
        totals=totals,
        samples=tuple(Path(b).stem for b in bams),
        ext=tuple(ext_values),
        final_ext=final_ext,
        width=width,
        spacing=spacing,
        param=param,
        chrom_lengths=chrom_lengths,
    )
    logger.info(f"Retained {len(result):,} windows; library sizes {', '.join(f'{t:,}' for t in totals)}")
    return result


def _count_regions_chromosome(
    bam: str,
    chrom: str,
    chrom_length: int,
    param: ReadParam,
    ext: int | None,
    final_ext: int | None,
    reg_starts: np.ndarray,
    reg_ends: np.ndarray,
) -> tuple[np.ndarray, int]:
    """Count fragments overlapping the given regions on one chromosome."""
    fs, fe = extract_fragments(bam, chrom, chrom_length, param, ext, final_ext)
    fs = np.sort(fs)
    fe = np.sort(fe)
    counts = np.searchsorted(fs, reg_ends, side="right") - np.searchsorted(
        fe, reg_starts, side="left"
    )
    return counts.astype(np.int64), len(fs)


def region_counts(
    bams: Sequence[str | Path],
    regions: Sequence[Region],
    ext: int | None | Sequence[int | None] = 100,
    param: ReadParam | None = None,
    final_ext: int | None = None,
    workers: int = 1,
) -> WindowCounts:
    """Count fragments overlapping arbitrary regions.

    Rows follow the order of ``regions``. Regions on chromosomes absent
    from the BAM files (or excluded by ``param.restrict``) get zero
    counts. Library totals are computed over every counted chromosome,
    exactly as in ``window_counts``.

    Args:
        bams: Indexed, sorted BAM files.
        regions: Regions to count into.
        ext: Fragment length for single-end reads, scalar or per BAM.
        param: Read-extraction parameters.
        final_ext: Rescale all fragments to this common length.
        workers: Number of processes used across BAM files.

    Returns:
        WindowCounts with one row per region.
    """
    bams = [str(b) for b in bams]
    param = param or ReadParam()
    n_samples = len(bams)
    ext_values = [None] * n_samples if param.paired else _resolve_ext(ext, n_samples)

    for bam in bams:
        check_bam(bam)
    chrom_lengths = _shared_chrom_lengths(bams, param.restrict)

    chroms = np.array([r.chrom for r in regions], dtype=object)
    starts = np.array([r.start for r in regions], dtype=np.int64)
    ends = np.array([r.end for r in regions], dtype=np.int64)
    counts = np.zeros((len(regions), n_samples), dtype=np.int64)
    totals = np.zeros(n_samples, dtype=np.int64)

    logger.info(f"Counting {n_samples} BAM file(s) into {len(regions):,} regions")

    executor = ProcessPoolExecutor(max_workers=workers) if workers > 1 else None
    try:
        for chrom, length in chrom_lengths.items():
            rows = np.flatnonzero(chroms == chrom)
            results = list(
                _map_samples(
                    executor,
                    _count_regions_chromosome,
                    bams,
                    [chrom] * n_samples,
                    [length] * n_samples,
                    [param] * n_samples,
                    ext_values,
                    [final_ext] * n_samples,
                    [starts[rows]] * n_samples,
                    [ends[rows]] * n_samples,
                )
            )
            for j, (col, n_frag) in enumerate(results):
                counts[rows, j] = col
                totals[j] += n_frag
    finally:
        if executor is not None:
            executor.shutdown()

    width = int((ends - starts + 1).max()) if len(regions) else 1
    return WindowCounts(
        chrom=chroms,
        start=starts,
        end=ends,
        counts=counts,
        totals=totals,
        samples=tuple(Path(b).stem for b in bams),
        ext=tuple(ext_values),
        final_ext=final_ext,
        width=width,
        spacing=width,
        param=param,
        chrom_lengths=chrom_lengths,
    )


def library_totals(
    bams: Sequence[str | Path],
    param: ReadParam | None = None,
) -> np.ndarray:
    """Count the fragments passing ``param`` in each BAM file.

    Args:
        bams: Indexed, sorted BAM files.
        param: Read-extraction parameters.

    Returns:
        Integer array with one total per BAM file.
    """
    param = param or ReadParam()
    totals = []
    for bam in bams:
        check_bam(bam)
        lengths = get_chrom_lengths(bam, param.restrict)
        total = 0
        for chrom, length in lengths.items():
            starts, _ = extract_fragments(bam, chrom, length, param, ext=None)
            total += len(starts)
        totals.append(total)
        logger.debug(f"{Path(bam).name}: {total:,} fragments")
    return np.array(totals, dtype=np.int64)


def check_totals(a: WindowCounts, b: WindowCounts) -> bool:
    """Check that two count matrices share library totals.

    Differing totals mean the matrices were counted with different read
    parameters, so normalization factors cannot be shared between them.

    Returns:
        True when the totals are identical.
    """
    same = a.totals.shape == b.totals.shape and bool(np.all(a.totals == b.totals))
    if not same:
        logger.warning(
            "Library totals differ between count matrices "
            f"({', '.join(f'{t:,}' for t in a.totals)} vs "
            f"{', '.join(f'{t:,}' for t in b.totals)}); "
            "were they counted with the same read parameters?"
        )
    return same


def _strand_profile(
    fwd: np.ndarray,
    rev: np.ndarray,
    chrom_length: int,
    max_dist: int,
) -> np.ndarray:
    """Pearson correlation of forward and lagged reverse 5' coverage."""
    fpos, fcount = np.unique(fwd, return_counts=True)
    rpos, rcount = np.unique(rev, return_counts=True)
    fcount = fcount.astype(np.float64)
    rcount = rcount.astype(np.float64)

    profile = np.zeros(max_dist + 1)
    for lag in range(max_dist + 1):
        n = chrom_length - lag
        if n <= 1:
            break
        f_in = fpos <= n
        r_in = rpos > lag
        fx = fcount[f_in]
        ry = rcount[r_in]
        if len(fx) == 0 or len(ry) == 0:
            continue

        mean_f = fx.sum() / n
        mean_r = ry.sum() / n
        var_f = (fx**2).sum() / n - mean_f**2
        var_r = (ry**2).sum() / n - mean_r**2
        if var_f <= 0 or var_r <= 0:
            continue

        target = fpos[f_in] + lag
        idx = np.searchsorted(rpos, target)
        idx_ok = idx < len(rpos)
        hit = np.zeros(len(target), dtype=bool)
        hit[idx_ok] = rpos[idx[idx_ok]] == target[idx_ok]
        cross = (fx[hit] * rcount[idx[hit]]).sum() / n

        profile[lag] = (cross - mean_f * mean_r) / np.sqrt(var_f * var_r)
    return profile


def correlate_reads(
    bams: Sequence[str | Path],
    max_dist: int = 1000,
    param: ReadParam | None = None,
) -> np.ndarray:
    """Compute the strand cross-correlation profile.

    For each lag ``d`` the profile holds the correlation between the
    forward-strand 5' coverage at ``x`` and the reverse-strand 5'
    coverage at ``x + d``, averaged over chromosomes and BAM files with
    weights equal to their read counts. The lag of the maximum estimates
    the average fragment length.

    Args:
        bams: Indexed, sorted BAM files.
        max_dist: Largest lag to compute.
        param: Read-extraction parameters; ``pe="both"`` is treated as
            ``pe="first"``.

    Returns:
        Array of length ``max_dist + 1`` indexed by lag.
    """
    param = param or ReadParam()
    if param.paired:
        param = ReadParam(
            minq=param.minq,
            dedup=param.dedup,
            pe="first",
            max_frag=param.max_frag,
            restrict=param.restrict,
            discard=param.discard,
        )

    total = np.zeros(max_dist + 1)
    weight = 0
    for bam in bams:
        check_bam(bam)
        for chrom, length in get_chrom_lengths(bam, param.restrict).items():
            reads = extract_reads(bam, chrom, param)
            if len(reads) == 0:
                continue
            five = reads.five_prime
            profile = _strand_profile(
                five[~reads.reverse], five[reads.reverse], length, max_dist
            )
            total += profile * len(reads)
            weight += len(reads)

    if weight == 0:
        logger.warning("No reads available for cross-correlation")
        return total
    return total / weight


def maximize_ccf(profile: np.ndarray, ignore: int = 100) -> int:
    """Return the lag of the maximum cross-correlation.

    The first ``ignore`` lags are skipped to avoid the phantom peak at
    the read length.

    Args:
        profile: Output of ``correlate_reads``.
        ignore: Number of leading lags to skip.

    Returns:
        Estimated fragment length in bp.
    """
    profile = np.asarray(profile, dtype=np.float64)
    if ignore >= len(profile):
        raise ValueError(f"ignore ({ignore}) must be smaller than the profile length ({len(profile)})")
    return int(ignore + np.argmax(profile[ignore:]))
