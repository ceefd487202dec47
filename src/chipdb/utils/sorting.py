"""Ordering helpers for chromosome names and genomic intervals."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence


def natural_sort_key(chrom: str) -> tuple:
    """Generate sort key for natural chromosome ordering.

    Examples:
        >>> natural_sort_key("chr2") < natural_sort_key("chr10")
        True
        >>> natural_sort_key("chr10") < natural_sort_key("chrX")
        True
    """
    parts = re.split(r"(\d+)", chrom)
    return tuple(int(p) if p.isdigit() else p.lower() for p in parts)


def sort_chromosomes(chroms: Sequence[str]) -> list[str]:
    """Return chromosomes in natural sort order.

    Examples:
        >>> sort_chromosomes(['chr10', 'chr2', 'chr1', 'chrX'])
        ['chr1', 'chr2', 'chr10', 'chrX']
    """
    return sorted(chroms, key=natural_sort_key)


def genomic_order(
    chroms: Sequence[str],
    starts: Sequence[int],
    chrom_order: Sequence[str] | None = None,
) -> np.ndarray:
    """Return the permutation that sorts intervals by (chromosome, start).

    Chromosomes are ranked by ``chrom_order`` when given (e.g. the BAM
    header order), otherwise naturally. Chromosomes missing from
    ``chrom_order`` sort after the listed ones.

    Args:
        chroms: Chromosome of each interval.
        starts: Start coordinate of each interval.
        chrom_order: Optional explicit chromosome ranking.

    Returns:
        Integer index array.
    """
    if chrom_order is None:
        chrom_order = sort_chromosomes(list(dict.fromkeys(chroms)))
    rank = {c: i for i, c in enumerate(chrom_order)}
    tail = len(rank)
    extra = sort_chromosomes([c for c in dict.fromkeys(chroms) if c not in rank])
    for i, c in enumerate(extra):
        rank[c] = tail + i

    chrom_rank = np.array([rank[c] for c in chroms], dtype=np.int64)
    return np.lexsort((np.asarray(starts, dtype=np.int64), chrom_rank))


def simplify_chromosome_label(chrom: str) -> str:
    """Strip ``chr``-style prefixes for axis labels.

    Examples:
        >>> simplify_chromosome_label("chr01")
        '1'
        >>> simplify_chromosome_label("X")
        'X'
    """
    label = re.sub(r"^(chromosome|chrom|chr)", "", chrom, flags=re.IGNORECASE)
    if label.isdigit():
        label = str(int(label))
    return label if label else chrom
