"""Integration tests for complete differential binding workflows."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from chipdb.analysis.clustering import combine_tests, merge_windows
from chipdb.analysis.counting import library_totals, window_counts
from chipdb.analysis.filtering import CountFilter, GlobalFilter, apply_filter
from chipdb.analysis.normalization import CompositionNormalization, normalize
from chipdb.analysis.testing import find_db_windows
from chipdb.core.models import ReadParam
from chipdb.io.readers import read_clusters_tsv, read_windows_tsv
from chipdb.io.writers import write_clusters_bed, write_clusters_tsv, write_windows_tsv

PEAK = ("chr1", 9900, 10100)


@pytest.fixture
def counted(chip_bams: list[Path]):
    """Windows and background bins counted from the simulated libraries."""
    param = ReadParam()
    data = window_counts(chip_bams, width=150, ext=100, param=param)
    bins = window_counts(chip_bams, width=1000, param=param, bin=True)
    return data, bins, param


def _overlaps_peak(chrom: str, start: int, end: int) -> bool:
    return chrom == PEAK[0] and start <= PEAK[2] and end >= PEAK[1]


class TestCountingWorkflow:
    """Test BAM files to window counts."""

    def test_totals_shared(self, chip_bams: list[Path], counted) -> None:
        """Test that windows, bins and library totals agree."""
        data, bins, param = counted

        assert data.totals.tolist() == bins.totals.tolist()
        assert data.totals.tolist() == library_totals(chip_bams, param).tolist()

    def test_peak_windows_counted(self, counted) -> None:
        """Test that windows over the binding site carry the extra reads."""
        data, _, _ = counted
        at_peak = np.array(
            [_overlaps_peak(c, s, e) for c, s, e in data.intervals()], dtype=bool
        )

        assert at_peak.any()
        peak_counts = data.counts[at_peak].max(axis=0)
        assert peak_counts[2] > peak_counts[0]
        assert peak_counts[3] > peak_counts[1]


class TestTestingWorkflow:
    """Test counts through filtering, normalization and testing."""

    def test_enrichment_filter_keeps_peak(self, counted) -> None:
        """Test that the global filter retains the binding site."""
        data, bins, _ = counted

        kept, result = apply_filter(data, GlobalFilter(background=bins, min_fc=3))

        assert 0 < result.n_kept < len(data)
        assert any(_overlaps_peak(c, s, e) for c, s, e in kept.intervals())

    def test_peak_is_top_cluster(self, counted, chip_groups: list[str]) -> None:
        """Test that the gained site is the most significant cluster."""
        data, bins, _ = counted
        kept, _ = apply_filter(data, CountFilter(min_count=20))
        normed = normalize(kept, CompositionNormalization(bins=bins))

        result, fit = find_db_windows(normed, chip_groups)
        merged = merge_windows(normed, tol=100)
        clusters = combine_tests(merged.ids, result.pvalue, result.logfc)

        assert fit is not None
        assert np.all(np.isfinite(normed.norm_factors))
        top = int(np.nanargmin(clusters.pvalue))
        assert _overlaps_peak(merged.chrom[top], merged.start[top], merged.end[top])
        assert clusters.direction[top] == "up"
        assert clusters.rep_logfc[top] > 1


class TestOutputWorkflow:
    """Test writing and reading back a complete analysis."""

    def test_tables_round_trip(self, tmp_path: Path, counted, chip_groups: list[str]) -> None:
        """Test that written tables read back with consistent clusters."""
        data, bins, _ = counted
        kept, _ = apply_filter(data, CountFilter(min_count=20))
        normed = normalize(kept, CompositionNormalization(bins=bins))
        result, _ = find_db_windows(normed, chip_groups)
        merged = merge_windows(normed, tol=100)
        clusters = combine_tests(merged.ids, result.pvalue, result.logfc)

        write_windows_tsv(normed, result, tmp_path / "w.tsv", cluster_ids=merged.ids)
        write_clusters_tsv(merged, clusters, normed, tmp_path / "c.tsv")
        n_bed = write_clusters_bed(merged, clusters, tmp_path / "c.bed", fdr_threshold=1.0)

        windows = read_windows_tsv(tmp_path / "w.tsv")
        table = read_clusters_tsv(tmp_path / "c.tsv")
        assert len(windows) == len(normed)
        assert set(windows.cluster.tolist()) == set(range(1, len(merged) + 1))
        assert sorted(table.cluster.tolist()) == list(range(1, len(merged) + 1))
        assert n_bed == len(merged)


class TestGappedWindowWorkflow:
    """Test narrow windows separated by gaps, as in a typical TF analysis."""

    def test_one_result_per_window(self, chip_bams: list[Path], chip_groups: list[str]) -> None:
        """Test that every gapped window gets one result and the gain is positive."""
        data = window_counts(chip_bams, width=10, spacing=50, ext=100, param=ReadParam())
        kept, _ = apply_filter(data, CountFilter(min_count=10))

        result, _ = find_db_windows(kept, chip_groups)

        assert np.all((kept.start - 1) % 50 == 0)
        assert len(result) == len(kept)
        assert len(result.logfc) == len(result.logcpm) == len(kept)
        centre = (kept.chrom == "chr1") & (kept.start >= 9951) & (kept.end <= 10060)
        assert centre.sum() == 3
        assert np.all(result.logfc[centre] > 0)
