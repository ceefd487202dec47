"""Region helpers for chipdb.

BED parsing and construction of derived region sets (promoters, window
neighbourhoods). BED files are 0-based half-open; every ``Region`` held
in memory is 1-based and inclusive.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from chipdb.core.models import Region
from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chipdb.core.models import WindowCounts

logger = get_logger(__name__)


def read_bed(path: str | Path) -> list[Region]:
    """Read regions from a BED file.

    Columns beyond the sixth are ignored. ``track``, ``browser`` and
    ``#`` lines are skipped.

    Args:
        path: Path to a BED3+ file.

    Returns:
        List of Region objects in file order.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If a line has fewer than three columns or bad
            coordinates.
    """
    path = Path(path)
    logger.info(f"Reading regions from {path}")

    if not path.exists():
        raise FileNotFoundError(f"BED file not found: {path}")

    regions = []
    with open(path) as f:
        for line_num, line in enumerate(f, start=1):
            line = line.rstrip("\n")
            if not line.strip() or line.startswith(("#", "track", "browser")):
                continue

            fields = line.split("\t")
            if len(fields) < 3:
                raise ValueError(f"Line {line_num}: expected at least 3 columns in {path}")

            try:
                start = int(fields[1]) + 1
                end = int(fields[2])
            except ValueError as e:
                raise ValueError(f"Line {line_num}: invalid coordinates: {e}") from e
            if end < start:
                raise ValueError(f"Line {line_num}: end before start in {path}")

            name = fields[3] if len(fields) > 3 and fields[3] not in ("", ".") else None
            strand = fields[5] if len(fields) > 5 and fields[5] in ("+", "-") else "*"
            regions.append(Region(fields[0], start, end, name=name, strand=strand))

    logger.info(f"Read {len(regions):,} regions")
    return regions


def merge_regions(regions: Sequence[Region]) -> dict[str, tuple[np.ndarray, np.ndarray]]:
    """Merge overlapping or touching regions per chromosome.

    Args:
        regions: Regions in any order.

    Returns:
        Mapping of chromosome to sorted, disjoint (starts, ends) arrays.
    """
    by_chrom: dict[str, list[tuple[int, int]]] = {}
    for r in regions:
        by_chrom.setdefault(r.chrom, []).append((r.start, r.end))

    merged = {}
    for chrom, spans in by_chrom.items():
        starts: list[int] = []
        ends: list[int] = []
        for s, e in sorted(spans):
            if starts and s <= ends[-1] + 1:
                ends[-1] = max(ends[-1], e)
            else:
                starts.append(s)
                ends.append(e)
        merged[chrom] = (np.array(starts, dtype=np.int64), np.array(ends, dtype=np.int64))
    return merged


def overlaps_any(
    chroms: np.ndarray,
    starts: np.ndarray,
    ends: np.ndarray,
    regions: Sequence[Region],
) -> np.ndarray:
    """Flag intervals that overlap at least one region.

    Args:
        chroms: Chromosome of each interval.
        starts: Interval starts (1-based).
        ends: Interval ends (1-based, inclusive).
        regions: Regions to test against.

    Returns:
        Boolean array, one entry per interval.
    """
    chroms = np.asarray(chroms, dtype=object)
    starts = np.asarray(starts, dtype=np.int64)
    ends = np.asarray(ends, dtype=np.int64)
    hit = np.zeros(len(starts), dtype=bool)

    for chrom, (r_starts, r_ends) in merge_regions(regions).items():
        rows = np.flatnonzero(chroms == chrom)
        if len(rows) == 0:
            continue
        idx = np.searchsorted(r_starts, ends[rows], side="right") - 1
        ok = idx >= 0
        hit[rows[ok]] = r_ends[idx[ok]] >= starts[rows[ok]]
    return hit


def promoters(
    genes: Sequence[Region],
    upstream: int = 3000,
    downstream: int = 1000,
) -> list[Region]:
    """Build promoter regions around transcription start sites.

    The TSS is the gene start on ``+`` or unstranded genes and the gene
    end on ``-`` genes. Regions are clipped at position 1.

    Args:
        genes: Gene regions.
        upstream: Bases upstream of the TSS to include.
        downstream: Bases downstream of the TSS to include.

    Returns:
        One promoter Region per gene, keeping name and strand.

    Examples:
        >>> promoters([Region("chr1", 5000, 9000, strand="+")])
        [Region(chr1:2000-5999)]
    """
    result = []
    for gene in genes:
        if gene.strand == "-":
            start = gene.end - downstream + 1
            end = gene.end + upstream
        else:
            start = gene.start - upstream
            end = gene.start + downstream - 1
        result.append(Region(gene.chrom, max(1, start), end, name=gene.name, strand=gene.strand))
    return result


def neighborhood_regions(
    data: WindowCounts,
    width: int,
) -> list[Region]:
    """Build regions of ``width`` bp centred on every window.

    Used to count the local background of each window. Regions are
    clipped to the chromosome.

    Args:
        data: Window counts whose rows define the centres.
        width: Neighbourhood width; must exceed the window width.

    Returns:
        One Region per window, in row order.

    Raises:
        ValueError: If ``width`` does not exceed the window width.
    """
    if width <= data.width:
        raise ValueError(
            f"Neighbourhood width ({width}) must exceed the window width ({data.width})"
        )

    centres = (data.start + data.end) // 2
    flank = width // 2
    starts = np.maximum(centres - flank, 1)
    ends = starts + width - 1

    regions = []
    for chrom, s, e in zip(data.chrom, starts, ends):
        chrom = str(chrom)
        limit = data.chrom_lengths.get(chrom)
        if limit is not None:
            e = min(int(e), limit)
        regions.append(Region(chrom, int(s), int(e)))
    return regions
