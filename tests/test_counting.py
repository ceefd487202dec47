"""Tests for window counting and BAM access."""

from __future__ import annotations

import os
from pathlib import Path

import numpy as np
import pytest

from chipdb.analysis.counting import (
    check_totals,
    correlate_reads,
    count_bins,
    count_overlaps,
    library_totals,
    maximize_ccf,
    region_counts,
    window_counts,
    window_starts,
)
from chipdb.core.models import ReadParam, Region
from chipdb.io.bam import ReadSet, check_bam, extend_reads, rescale_fragments
from chipdb.utils.errors import AlignmentFileError

from conftest import read_pair, se_read

SMALL_GENOME = {"chr1": 1000, "chr2": 500}


class TestWindowStarts:
    """Tests for window_starts function."""

    def test_last_window_clipped(self) -> None:
        """Test that the last window ends at the chromosome end."""
        starts, ends = window_starts(120, 50, 50)

        assert starts.tolist() == [1, 51, 101]
        assert ends.tolist() == [50, 100, 120]

    def test_overlapping_windows(self) -> None:
        """Test windows with spacing below the width."""
        starts, ends = window_starts(100, 50, 25)

        assert starts.tolist() == [1, 26, 51, 76]
        assert ends.tolist() == [50, 75, 100, 100]


class TestCountOverlaps:
    """Tests for count_overlaps function."""

    def test_fragment_spans_windows(self) -> None:
        """Test that a fragment counts once in every window it overlaps."""
        counts = count_overlaps(np.array([1]), np.array([100]), 200, 50, 25)

        assert counts.tolist() == [1, 1, 1, 1, 0, 0, 0, 0]

    def test_fragment_in_middle(self) -> None:
        """Test a fragment overlapping three windows in the middle."""
        counts = count_overlaps(np.array([120]), np.array([130]), 200, 50, 25)

        assert counts.tolist() == [0, 0, 0, 1, 1, 1, 0, 0]

    def test_no_fragments(self) -> None:
        """Test an empty chromosome."""
        counts = count_overlaps(np.array([], dtype=np.int64), np.array([], dtype=np.int64), 100, 10, 10)

        assert counts.tolist() == [0] * 10

    def test_fragment_in_gap(self) -> None:
        """Test that a fragment between gapped windows is not counted."""
        counts = count_overlaps(np.array([15, 40]), np.array([45, 55]), 200, 10, 50)

        assert counts.tolist() == [0, 1, 0, 0]

    @pytest.mark.parametrize(("width", "spacing"), [(40, 15), (10, 50), (50, 50)])
    def test_matches_brute_force(self, width: int, spacing: int) -> None:
        """Test the difference-array count against direct overlap checks."""
        rng = np.random.default_rng(1)
        fs = rng.integers(1, 900, size=200)
        fe = np.minimum(fs + rng.integers(0, 150, size=200), 1000)
        starts, ends = window_starts(1000, width, spacing)

        counts = count_overlaps(fs, fe, 1000, width, spacing)
        expected = [int(np.sum((fs <= e) & (fe >= s))) for s, e in zip(starts, ends)]

        assert counts.tolist() == expected


class TestCountBins:
    """Tests for count_bins function."""

    def test_each_fragment_counted_once(self) -> None:
        """Test that bins partition the fragments."""
        fs = np.array([1, 95, 150, 990])
        fe = np.array([10, 120, 150, 1000])
        counts = count_bins(fs, fe, 1000, 100)

        assert counts.sum() == 4
        assert counts[0] == 1
        assert counts[1] == 2
        assert counts[9] == 1


class TestFragments:
    """Tests for read extension and rescaling."""

    def test_extend_by_strand(self) -> None:
        """Test that forward reads extend right and reverse reads left."""
        reads = ReadSet(
            start=np.array([100, 501]),
            end=np.array([149, 550]),
            reverse=np.array([False, True]),
        )
        starts, ends = extend_reads(reads, 100, 1000)

        assert starts.tolist() == [100, 451]
        assert ends.tolist() == [199, 550]

    def test_extend_clipped(self) -> None:
        """Test that fragments are clipped to the chromosome."""
        reads = ReadSet(start=np.array([10]), end=np.array([59]), reverse=np.array([True]))
        starts, ends = extend_reads(reads, 100, 1000)

        assert starts.tolist() == [1]
        assert ends.tolist() == [59]

    def test_rescale_keeps_midpoint(self) -> None:
        """Test that rescaled fragments keep their centre."""
        starts, ends = rescale_fragments(np.array([101]), np.array([300]), 100, 1000)

        assert ends[0] - starts[0] + 1 == 100
        assert abs((starts[0] + ends[0]) / 2 - 200.5) <= 0.5


class TestCheckBam:
    """Tests for BAM index checks."""

    def test_missing_bam(self, tmp_path: Path) -> None:
        """Test error when the BAM file does not exist."""
        with pytest.raises(AlignmentFileError, match="not found"):
            check_bam(tmp_path / "missing.bam")

    def test_missing_index(self, bam_factory) -> None:
        """Test error when the BAM has no index."""
        bam = bam_factory("noindex", [se_read("chr1", 100)], SMALL_GENOME, index=False)

        with pytest.raises(AlignmentFileError):
            check_bam(bam)

    def test_stale_index(self, bam_factory) -> None:
        """Test error when the BAM is newer than its index."""
        bam = bam_factory("stale", [se_read("chr1", 100)], SMALL_GENOME)
        index = Path(f"{bam}.bai")
        stat = index.stat()
        os.utime(bam, (stat.st_atime + 100, stat.st_mtime + 100))

        with pytest.raises(AlignmentFileError, match="older"):
            check_bam(bam)

    def test_valid_index(self, bam_factory) -> None:
        """Test that an indexed BAM passes."""
        bam = bam_factory("ok", [se_read("chr1", 100)], SMALL_GENOME)

        assert check_bam(bam).exists()


class TestWindowCounts:
    """Tests for window_counts function."""

    def test_single_end_extension(self, bam_factory) -> None:
        """Test that reads are extended to fragments before counting."""
        bam = bam_factory(
            "s1",
            [se_read("chr1", 100), se_read("chr1", 501, reverse=True)],
            SMALL_GENOME,
        )
        data = window_counts([bam], width=50, spacing=50, ext=100, filter=1)

        # forward fragment 100-199, reverse fragment 451-550
        assert data.start.tolist() == [51, 101, 151, 451, 501]
        assert data.counts[:, 0].tolist() == [1, 1, 1, 1, 1]
        assert data.totals.tolist() == [2]
        assert data.samples == ("s1",)
        assert data.chrom_lengths == SMALL_GENOME

    def test_filter_on_summed_counts(self, bam_factory) -> None:
        """Test that windows below the count filter are dropped."""
        reads = [se_read("chr1", 100 + i) for i in range(5)] + [se_read("chr2", 300)]
        bam = bam_factory("s1", reads, SMALL_GENOME)

        data = window_counts([bam], width=50, spacing=50, ext=50, filter=3)

        assert all(c == "chr1" for c in data.chrom)
        assert np.all(data.counts.sum(axis=1) >= 3)
        assert data.totals.tolist() == [6]

    def test_identical_calls_identical_totals(self, chip_bams) -> None:
        """Test that counting is deterministic."""
        a = window_counts(chip_bams[:2], width=100, ext=100, filter=5)
        b = window_counts(chip_bams[:2], width=100, ext=100, filter=5)

        assert a.totals.tolist() == b.totals.tolist()
        assert np.array_equal(a.counts, b.counts)
        assert check_totals(a, b)

    def test_bin_mode_tiles_genome(self, bam_factory) -> None:
        """Test that bins do not overlap and tile each chromosome."""
        bam = bam_factory("s1", [se_read("chr1", 100), se_read("chr2", 20)], SMALL_GENOME)

        data = window_counts([bam], width=100, bin=True, filter=0)

        for chrom, length in SMALL_GENOME.items():
            rows = data.chrom == chrom
            starts = data.start[rows]
            ends = data.end[rows]
            assert starts[0] == 1
            assert ends[-1] == length
            assert np.all(starts[1:] == ends[:-1] + 1)
        assert data.spacing == data.width == 100
        assert data.counts.sum() == 2

    def test_bin_mode_counts_five_prime_end(self, bam_factory) -> None:
        """Test that single-end reads fall in the bin of their 5' end."""
        bam = bam_factory(
            "s1",
            [se_read("chr1", 95), se_read("chr1", 151, reverse=True)],
            SMALL_GENOME,
        )
        data = window_counts([bam], width=100, bin=True)

        # 5' ends at 95 and 200: bins 1-100 and 101-200
        assert data.start.tolist() == [1, 101]
        assert data.counts[:, 0].tolist() == [1, 1]

    def test_minq_filter(self, bam_factory) -> None:
        """Test that low mapping quality reads are skipped."""
        bam = bam_factory(
            "s1", [se_read("chr1", 100, mapq=60), se_read("chr1", 300, mapq=5)], SMALL_GENOME
        )

        assert window_counts([bam], param=ReadParam(minq=10), filter=1).totals.tolist() == [1]
        assert window_counts([bam], param=ReadParam(), filter=1).totals.tolist() == [2]

    def test_dedup(self, bam_factory) -> None:
        """Test that duplicate-flagged reads are skipped with dedup."""
        bam = bam_factory(
            "s1", [se_read("chr1", 100), se_read("chr1", 100, duplicate=True)], SMALL_GENOME
        )

        assert library_totals([bam], ReadParam(dedup=True)).tolist() == [1]
        assert library_totals([bam], ReadParam(dedup=False)).tolist() == [2]

    def test_discard_regions(self, bam_factory) -> None:
        """Test that reads wholly inside a discard region are skipped."""
        bam = bam_factory("s1", [se_read("chr1", 100), se_read("chr1", 600)], SMALL_GENOME)
        param = ReadParam(discard=(Region("chr1", 550, 700),))

        data = window_counts([bam], width=50, ext=50, param=param, filter=1)

        assert data.totals.tolist() == [1]
        assert data.start.max() < 550

    def test_restrict(self, bam_factory) -> None:
        """Test that only the restricted chromosomes are counted."""
        bam = bam_factory("s1", [se_read("chr1", 100), se_read("chr2", 100)], SMALL_GENOME)

        data = window_counts([bam], param=ReadParam(restrict=("chr2",)), filter=1)

        assert set(data.chrom) == {"chr2"}
        assert list(data.chrom_lengths) == ["chr2"]
        assert data.totals.tolist() == [1]

    def test_paired_end_fragments(self, bam_factory) -> None:
        """Test that proper pairs are counted as one fragment each."""
        bam = bam_factory("pe", read_pair("chr1", 200, 200, "frag1"), SMALL_GENOME)

        data = window_counts(
            [bam], width=50, spacing=50, param=ReadParam(pe="both"), filter=1
        )

        assert data.totals.tolist() == [1]
        # fragment 200-399
        assert data.start.tolist() == [151, 201, 251, 301, 351]

    def test_paired_end_max_frag(self, bam_factory) -> None:
        """Test that pairs longer than max_frag are dropped."""
        bam = bam_factory("pe", read_pair("chr1", 200, 200, "frag1"), SMALL_GENOME)

        totals = library_totals([bam], ReadParam(pe="both", max_frag=100))

        assert totals.tolist() == [0]

    def test_first_mate_only(self, bam_factory) -> None:
        """Test that pe='first' keeps only read 1 as a single-end read."""
        bam = bam_factory("pe", read_pair("chr1", 200, 200, "frag1"), SMALL_GENOME)

        assert library_totals([bam], ReadParam(pe="first")).tolist() == [1]
        assert library_totals([bam], ReadParam(pe="none")).tolist() == [2]

    def test_mismatched_headers(self, bam_factory) -> None:
        """Test error when BAM files use different references."""
        a = bam_factory("a", [se_read("chr1", 100)], SMALL_GENOME)
        b = bam_factory("b", [se_read("chr1", 100)], {"chr1": 1000})

        with pytest.raises(AlignmentFileError, match="differ"):
            window_counts([a, b])

    def test_workers_give_same_result(self, chip_bams) -> None:
        """Test that parallel counting matches serial counting."""
        serial = window_counts(chip_bams, width=200, filter=20, workers=1)
        parallel = window_counts(chip_bams, width=200, filter=20, workers=2)

        assert np.array_equal(serial.counts, parallel.counts)
        assert serial.totals.tolist() == parallel.totals.tolist()

    def test_invalid_width(self, chip_bams) -> None:
        """Test error on a non-positive width."""
        with pytest.raises(ValueError, match="width"):
            window_counts(chip_bams, width=0)


class TestRegionCounts:
    """Tests for region_counts function."""

    def test_input_order_kept(self, bam_factory) -> None:
        """Test that rows follow the order of the regions."""
        bam = bam_factory(
            "s1", [se_read("chr1", 100), se_read("chr2", 100), se_read("chr2", 120)], SMALL_GENOME
        )
        regions = [Region("chr2", 90, 200), Region("chr1", 800, 900), Region("chr1", 1, 150)]

        data = region_counts([bam], regions, ext=50)

        assert data.chrom.tolist() == ["chr2", "chr1", "chr1"]
        assert data.counts[:, 0].tolist() == [2, 0, 1]
        assert data.totals.tolist() == [3]

    def test_totals_match_window_counts(self, chip_bams) -> None:
        """Test that region and window counts report the same library sizes."""
        windows = window_counts(chip_bams, width=500, filter=10)
        regions = region_counts(chip_bams, [Region("chr1", 9000, 11000)])

        assert check_totals(windows, regions)


class TestCheckTotals:
    """Tests for check_totals function."""

    def test_mismatch_warns(self, counts_factory, caplog) -> None:
        """Test that differing totals return False with a warning."""
        a = counts_factory(np.ones((3, 2)), totals=[100, 200])
        b = counts_factory(np.ones((3, 2)), totals=[100, 201])

        with caplog.at_level("WARNING"):
            assert not check_totals(a, b)
        assert "differ" in caplog.text


class TestCrossCorrelation:
    """Tests for fragment length estimation."""

    def test_peak_at_fragment_length(self, bam_factory) -> None:
        """Test that the cross-correlation peaks at the fragment length."""
        rng = np.random.default_rng(3)
        frag_len = 150
        reads = []
        for pos in rng.choice(np.arange(1, 19000, 37), size=300, replace=False):
            reads.append(se_read("chr1", int(pos)))
            reads.append(se_read("chr1", int(pos) + frag_len - 50, reverse=True))
        bam = bam_factory("ccf", reads)

        profile = correlate_reads([bam], max_dist=400)

        assert len(profile) == 401
        assert maximize_ccf(profile, ignore=100) == frag_len - 1

    def test_maximize_ccf_skips_leading_lags(self) -> None:
        """Test that the phantom peak below ``ignore`` is skipped."""
        profile = np.array([0.9, 0.8, 0.1, 0.3, 0.2])

        assert maximize_ccf(profile, ignore=2) == 3
        assert maximize_ccf(profile, ignore=0) == 0

    def test_maximize_ccf_ignore_too_large(self) -> None:
        """Test error when every lag is ignored."""
        with pytest.raises(ValueError, match="ignore"):
            maximize_ccf(np.zeros(10), ignore=10)
