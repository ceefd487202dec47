"""BAM access for chipdb.

This module extracts reads and fragments from indexed, coordinate-sorted
BAM files with pysam, applying the filters described by a ``ReadParam``.
All coordinates returned are 1-based and inclusive.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pysam

from chipdb.io.regions import merge_regions
from chipdb.utils.errors import AlignmentFileError, format_stale_index
from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chipdb.core.models import ReadParam, Region

logger = get_logger(__name__)


@dataclass
class ReadSet:
    """Filtered alignments on one chromosome.

    Attributes:
        start: Leftmost aligned base of each read.
        end: Rightmost aligned base of each read.
        reverse: True for reads on the reverse strand.
    """

    start: np.ndarray
    end: np.ndarray
    reverse: np.ndarray

    def __len__(self) -> int:
        """Number of reads."""
        return len(self.start)

    @property
    def five_prime(self) -> np.ndarray:
        """5' end position of each read."""
        return np.where(self.reverse, self.end, self.start)


def find_index(bam_path: str | Path) -> Path | None:
    """Return the index file of a BAM, or None if there is none."""
    bam_path = Path(bam_path)
    candidates = [
        Path(f"{bam_path}.bai"),
        bam_path.with_suffix(".bai"),
        Path(f"{bam_path}.csi"),
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def check_bam(bam_path: str | Path) -> Path:
    """Check that a BAM file exists and has an up-to-date index.

    Args:
        bam_path: Path to the BAM file.

    Returns:
        Path to the index.

    Raises:
        AlignmentFileError: If the BAM is missing, unindexed, or its
            index is older than the BAM itself.
    """
    bam_path = Path(bam_path)
    if not bam_path.exists():
        raise AlignmentFileError(f"BAM file not found: {bam_path}")

    index = find_index(bam_path)
    if index is None:
        raise AlignmentFileError(
            format_stale_index(bam_path, None),
            suggestion="Sort and index every BAM file before counting.",
        )
    if index.stat().st_mtime < bam_path.stat().st_mtime:
        raise AlignmentFileError(
            format_stale_index(bam_path, index),
            suggestion="The BAM was modified after it was indexed.",
        )
    return index


def get_chrom_lengths(
    bam_path: str | Path,
    restrict: Sequence[str] | None = None,
) -> dict[str, int]:
    """Return chromosome lengths from the BAM header, in header order.

    Args:
        bam_path: Path to the BAM file.
        restrict: Optional allow-list of chromosome names.

    Returns:
        Ordered mapping of chromosome name to length.
    """
    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        lengths = dict(zip(bam.references, bam.lengths))

    if restrict is not None:
        allowed = set(restrict)
        missing = allowed - set(lengths)
        if missing:
            logger.warning(
                f"Restricted chromosome(s) absent from {Path(bam_path).name}: "
                f"{', '.join(sorted(missing))}"
            )
        lengths = {c: n for c, n in lengths.items() if c in allowed}
    return lengths


def _merge_discard(discard: Sequence[Region], chrom: str) -> tuple[np.ndarray, np.ndarray]:
    """Merge the discard regions on one chromosome into disjoint intervals."""
    empty = np.zeros(0, dtype=np.int64)
    return merge_regions(discard).get(chrom, (empty, empty))


def discarded(
    starts: np.ndarray,
    ends: np.ndarray,
    discard: Sequence[Region],
    chrom: str,
) -> np.ndarray:
    """Flag intervals lying wholly inside a discard region.

    Args:
        starts: Interval starts (1-based).
        ends: Interval ends (1-based, inclusive).
        discard: Regions to discard reads from.
        chrom: Chromosome of the intervals.

    Returns:
        Boolean array, True for intervals to drop.
    """
    d_starts, d_ends = _merge_discard(discard, chrom)
    if len(d_starts) == 0 or len(starts) == 0:
        return np.zeros(len(starts), dtype=bool)
    idx = np.searchsorted(d_starts, starts, side="right") - 1
    inside = idx >= 0
    safe = np.clip(idx, 0, None)
    return inside & (d_ends[safe] >= ends)


def _passes(read: pysam.AlignedSegment, param: ReadParam) -> bool:
    """Apply the per-read filters of ``param``."""
    if read.is_unmapped or read.is_secondary or read.is_supplementary or read.is_qcfail:
        return False
    if param.minq is not None and read.mapping_quality < param.minq:
        return False
    if param.dedup and read.is_duplicate:
        return False
    return True


def extract_reads(
    bam_path: str | Path,
    chrom: str,
    param: ReadParam,
) -> ReadSet:
    """Extract filtered single-end alignments from one chromosome.

    For ``pe="first"`` or ``pe="second"`` only that mate is returned.

    Args:
        bam_path: Path to an indexed BAM file.
        chrom: Chromosome to read.
        param: Read filters.

    Returns:
        ReadSet with the surviving alignments.
    """
    starts: list[int] = []
    ends: list[int] = []
    reverse: list[bool] = []

    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        for read in bam.fetch(chrom):
            if not _passes(read, param):
                continue
            if param.pe == "first" and not read.is_read1:
                continue
            if param.pe == "second" and not read.is_read2:
                continue
            starts.append(read.reference_start + 1)
            ends.append(read.reference_end)
            reverse.append(read.is_reverse)

    reads = ReadSet(
        start=np.array(starts, dtype=np.int64),
        end=np.array(ends, dtype=np.int64),
        reverse=np.array(reverse, dtype=bool),
    )
    if param.discard:
        keep = ~discarded(reads.start, reads.end, param.discard, chrom)
        reads = ReadSet(reads.start[keep], reads.end[keep], reads.reverse[keep])
    return reads


def extract_pairs(
    bam_path: str | Path,
    chrom: str,
    param: ReadParam,
) -> tuple[np.ndarray, np.ndarray]:
    """Extract fragments from properly paired reads on one chromosome.

    A fragment runs from the leftmost mate start to the rightmost mate
    end. Both mates must pass the read filters and neither may lie
    wholly inside a discard region. Fragments longer than
    ``param.max_frag`` are dropped.

    Args:
        bam_path: Path to an indexed BAM file.
        chrom: Chromosome to read.
        param: Read filters.

    Returns:
        Tuple of (fragment starts, fragment ends).
    """
    d_starts, d_ends = _merge_discard(param.discard, chrom)

    def _in_discard(s: int, e: int) -> bool:
        if len(d_starts) == 0:
            return False
        i = int(np.searchsorted(d_starts, s, side="right")) - 1
        return i >= 0 and d_ends[i] >= e

    pending: dict[str, tuple[int, int] | None] = {}
    frag_starts: list[int] = []
    frag_ends: list[int] = []
    oversized = 0

    with pysam.AlignmentFile(str(bam_path), "rb") as bam:
        for read in bam.fetch(chrom):
            if read.is_unmapped or read.is_secondary or read.is_supplementary:
                continue
            if not read.is_paired or not read.is_proper_pair or read.mate_is_unmapped:
                continue
            if read.reference_id != read.next_reference_id:
                continue

            start = read.reference_start + 1
            end = read.reference_end
            ok = _passes(read, param) and not _in_discard(start, end)

            name = read.query_name
            if name in pending:
                mate = pending.pop(name)
                if not ok or mate is None:
                    continue
                frag_start = min(start, mate[0])
                frag_end = max(end, mate[1])
                if frag_end - frag_start + 1 > param.max_frag:
                    oversized += 1
                    continue
                frag_starts.append(frag_start)
                frag_ends.append(frag_end)
            else:
                pending[name] = (start, end) if ok else None

    if oversized:
        logger.debug(f"{chrom}: dropped {oversized:,} pairs above max_frag={param.max_frag}")
    if pending:
        logger.debug(f"{chrom}: {len(pending):,} reads without a usable mate")

    return np.array(frag_starts, dtype=np.int64), np.array(frag_ends, dtype=np.int64)


def extend_reads(
    reads: ReadSet,
    ext: int | None,
    chrom_length: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Extend single-end reads to fragments in their mapped direction.

    Forward reads grow rightwards from their 5' end, reverse reads
    leftwards. Fragments are clipped to the chromosome.

    Args:
        reads: Filtered alignments.
        ext: Fragment length; None keeps the aligned span.
        chrom_length: Length of the chromosome.

    Returns:
        Tuple of (fragment starts, fragment ends).
    """
    if ext is None:
        starts = reads.start.copy()
        ends = reads.end.copy()
    else:
        starts = np.where(reads.reverse, reads.end - ext + 1, reads.start)
        ends = np.where(reads.reverse, reads.end, reads.start + ext - 1)
    return np.clip(starts, 1, chrom_length), np.clip(ends, 1, chrom_length)


def rescale_fragments(
    starts: np.ndarray,
    ends: np.ndarray,
    final_ext: int,
    chrom_length: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Resize fragments to ``final_ext`` around their midpoints.

    Args:
        starts: Fragment starts.
        ends: Fragment ends.
        final_ext: Common fragment length.
        chrom_length: Length of the chromosome.

    Returns:
        Tuple of (rescaled starts, rescaled ends).
    """
    new_starts = (starts + ends - final_ext + 1) // 2
    new_ends = new_starts + final_ext - 1
    return np.clip(new_starts, 1, chrom_length), np.clip(new_ends, 1, chrom_length)


def extract_fragments(
    bam_path: str | Path,
    chrom: str,
    chrom_length: int,
    param: ReadParam,
    ext: int | None = None,
    final_ext: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Extract fragment intervals from one chromosome.

    Args:
        bam_path: Path to an indexed BAM file.
        chrom: Chromosome to read.
        chrom_length: Chromosome length.
        param: Read filters and paired-end mode.
        ext: Single-end fragment length (ignored for ``pe="both"``).
        final_ext: Optional common length to rescale fragments to
            (single-end only).

    Returns:
        Tuple of (fragment starts, fragment ends), 1-based inclusive.
    """
    if param.paired:
        return extract_pairs(bam_path, chrom, param)

    reads = extract_reads(bam_path, chrom, param)
    starts, ends = extend_reads(reads, ext, chrom_length)
    if final_ext is not None and ext is not None and final_ext != ext:
        starts, ends = rescale_fragments(starts, ends, final_ext, chrom_length)
    return starts, ends
