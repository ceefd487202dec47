"""Pytest configuration and fixtures for chipdb tests."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pysam
import pytest

from chipdb.core.models import WindowCounts

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


CHROM_LENGTHS = {"chr1": 20000, "chr2": 10000}

READ_LENGTH = 50

# SAM flag bits used by the fixtures
PAIRED = 0x1
PROPER_PAIR = 0x2
REVERSE = 0x10
MATE_REVERSE = 0x20
READ1 = 0x40
READ2 = 0x80
DUPLICATE = 0x400


def se_read(
    chrom: str,
    pos: int,
    reverse: bool = False,
    mapq: int = 60,
    duplicate: bool = False,
    name: str | None = None,
) -> dict:
    """Describe a single-end read; ``pos`` is the 1-based leftmost base."""
    flag = (REVERSE if reverse else 0) | (DUPLICATE if duplicate else 0)
    return {"chrom": chrom, "pos": pos, "flag": flag, "mapq": mapq, "name": name}


def read_pair(chrom: str, start: int, frag_len: int, name: str, mapq: int = 60) -> list[dict]:
    """Describe a proper pair spanning ``[start, start + frag_len - 1]``."""
    mate_pos = start + frag_len - READ_LENGTH
    return [
        {
            "chrom": chrom,
            "pos": start,
            "flag": PAIRED | PROPER_PAIR | MATE_REVERSE | READ1,
            "mapq": mapq,
            "name": name,
            "mate_pos": mate_pos,
            "tlen": frag_len,
        },
        {
            "chrom": chrom,
            "pos": mate_pos,
            "flag": PAIRED | PROPER_PAIR | REVERSE | READ2,
            "mapq": mapq,
            "name": name,
            "mate_pos": start,
            "tlen": -frag_len,
        },
    ]


def write_bam(
    path: Path,
    reads: Sequence[dict],
    chrom_lengths: dict[str, int] | None = None,
    index: bool = True,
) -> Path:
    """Write reads to a coordinate-sorted (and optionally indexed) BAM file."""
    chrom_lengths = chrom_lengths or CHROM_LENGTHS
    header = {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": c, "LN": n} for c, n in chrom_lengths.items()],
    }
    unsorted = path.with_name(f"{path.stem}.unsorted.bam")

    with pysam.AlignmentFile(str(unsorted), "wb", header=header) as out:
        for i, read in enumerate(reads):
            seg = pysam.AlignedSegment(out.header)
            seg.query_name = read.get("name") or f"read{i}"
            seg.query_sequence = "A" * READ_LENGTH
            seg.flag = read["flag"]
            seg.reference_id = out.get_tid(read["chrom"])
            seg.reference_start = read["pos"] - 1
            seg.mapping_quality = read["mapq"]
            seg.cigartuples = [(0, READ_LENGTH)]
            if "mate_pos" in read:
                seg.next_reference_id = seg.reference_id
                seg.next_reference_start = read["mate_pos"] - 1
                seg.template_length = read["tlen"]
            else:
                seg.next_reference_id = -1
                seg.next_reference_start = -1
            seg.query_qualities = pysam.qualitystring_to_array("I" * READ_LENGTH)
            out.write(seg)

    pysam.sort("-o", str(path), str(unsorted))
    unsorted.unlink()
    if index:
        pysam.index(str(path))
    return path


@pytest.fixture
def bam_factory(tmp_path: Path) -> Callable[..., Path]:
    """Return a function writing named BAM files into ``tmp_path``."""

    def factory(
        name: str,
        reads: Sequence[dict],
        chrom_lengths: dict[str, int] | None = None,
        index: bool = True,
    ) -> Path:
        return write_bam(tmp_path / f"{name}.bam", reads, chrom_lengths, index)

    return factory


def _chip_reads(rng: np.random.Generator, peak_reads: int, background: int = 300) -> list[dict]:
    """Uniform background plus a binding site on chr1 around 10,000."""
    reads = []
    for chrom, length in CHROM_LENGTHS.items():
        n = background * length // CHROM_LENGTHS["chr1"]
        for pos in rng.integers(1, length - 200, size=n):
            reads.append(se_read(chrom, int(pos), reverse=bool(rng.integers(0, 2))))
    for pos in rng.integers(9900, 10100, size=peak_reads):
        reads.append(se_read("chr1", int(pos), reverse=bool(rng.integers(0, 2))))
    return reads


@pytest.fixture
def chip_bams(bam_factory) -> list[Path]:
    """Four single-end ChIP libraries; the ko group binds chr1:10,000 more strongly."""
    rng = np.random.default_rng(42)
    design = [("wt1", 40), ("wt2", 45), ("ko1", 160), ("ko2", 170)]
    return [bam_factory(name, _chip_reads(rng, peak)) for name, peak in design]


@pytest.fixture
def chip_groups() -> list[str]:
    """Group labels matching ``chip_bams``."""
    return ["wt", "wt", "ko", "ko"]


def make_counts(
    counts: np.ndarray,
    chrom: str | Sequence[str] = "chr1",
    width: int = 10,
    spacing: int = 50,
    totals: Sequence[int] | None = None,
    starts: Sequence[int] | None = None,
    chrom_lengths: dict[str, int] | None = None,
    ext: int | None = 100,
) -> WindowCounts:
    """Build a WindowCounts with evenly spaced windows."""
    counts = np.asarray(counts, dtype=np.int64)
    n_rows, n_samples = counts.shape
    if starts is None:
        starts = 1 + spacing * np.arange(n_rows)
    starts = np.asarray(starts, dtype=np.int64)
    chroms = [chrom] * n_rows if isinstance(chrom, str) else list(chrom)
    if totals is None:
        totals = np.full(n_samples, 100_000)
    if chrom_lengths is None:
        chrom_lengths = {c: int(starts.max() + width) if n_rows else width for c in set(chroms)}
    return WindowCounts(
        chrom=np.array(chroms, dtype=object),
        start=starts,
        end=starts + width - 1,
        counts=counts,
        totals=totals,
        samples=tuple(f"s{j + 1}" for j in range(n_samples)),
        ext=(ext,) * n_samples,
        width=width,
        spacing=spacing,
        chrom_lengths=chrom_lengths,
    )


@pytest.fixture
def counts_factory() -> Callable[..., WindowCounts]:
    """Return ``make_counts`` for building synthetic count matrices."""
    return make_counts


@pytest.fixture
def db_counts() -> WindowCounts:
    """Two groups of two samples; the first 40 of 400 windows gain binding in group 2.

    Counts are negative binomial with dispersion 0.05 around a mean
    that varies across windows, so there is an abundance trend to fit.
    """
    rng = np.random.default_rng(7)
    n = 400
    base = rng.uniform(10, 80, size=n)
    mu = np.column_stack([base, base, base, base])
    mu[:40, 2:] *= 4.0
    phi = 0.05
    p = 1.0 / (1.0 + mu * phi)
    counts = rng.negative_binomial(1.0 / phi, p)
    return make_counts(counts, totals=[1_000_000] * 4)


@pytest.fixture
def db_groups() -> list[str]:
    """Group labels matching ``db_counts``."""
    return ["a", "a", "b", "b"]
