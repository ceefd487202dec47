"""Tests for region parsing, result writers, readers and summaries."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from chipdb.core.models import ClusterResult, DBResult, MergedRegions, Region
from chipdb.io.readers import read_clusters_tsv, read_windows_tsv
from chipdb.io.regions import (
    merge_regions,
    neighborhood_regions,
    overlaps_any,
    promoters,
    read_bed,
)
from chipdb.io.summary import AnalysisSummary, write_summary
from chipdb.io.writers import write_clusters_bed, write_clusters_tsv, write_windows_tsv


@pytest.fixture
def tested(counts_factory):
    """Three tested windows in two clusters."""
    data = counts_factory(np.array([[5, 20], [8, 30], [12, 11]]), width=50, spacing=50)
    result = DBResult(
        logfc=np.array([2.0, 1.8, -0.1]),
        logcpm=np.array([6.1, 6.5, 6.9]),
        statistic=np.array([25.0, 21.0, 0.2]),
        pvalue=np.array([1e-5, 3e-5, 0.7]),
    )
    return data, result


@pytest.fixture
def clusters() -> tuple[MergedRegions, ClusterResult]:
    """Two clusters over the ``tested`` windows plus one empty region."""
    merged = MergedRegions(
        ids=np.array([0, 0, 1]),
        chrom=np.array(["chr1", "chr1", "chr2"], dtype=object),
        start=np.array([1, 101, 1]),
        end=np.array([100, 150, 500]),
    )
    result = ClusterResult(
        n_windows=np.array([2, 1, 0]),
        n_up=np.array([2, 0, 0]),
        n_down=np.array([0, 0, 0]),
        pvalue=np.array([2e-5, 0.7, np.nan]),
        fdr=np.array([0.001, 0.7, np.nan]),
        direction=np.array(["up", "down", ""], dtype=object),
        rep_test=np.array([0, 2, -1]),
        rep_logfc=np.array([2.0, -0.1, np.nan]),
    )
    return merged, result


class TestReadBed:
    """Tests for read_bed function."""

    def test_coordinates_converted(self, tmp_path: Path) -> None:
        """Test that BED starts become 1-based."""
        bed = tmp_path / "genes.bed"
        bed.write_text(
            "track name=genes\n"
            "# comment\n"
            "chr1\t99\t200\tgeneA\t0\t-\n"
            "chr2\t0\t50\n"
        )

        regions = read_bed(bed)

        assert regions == [
            Region("chr1", 100, 200, name="geneA", strand="-"),
            Region("chr2", 1, 50),
        ]

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test error when the BED file does not exist."""
        with pytest.raises(FileNotFoundError):
            read_bed(tmp_path / "missing.bed")

    @pytest.mark.parametrize("line", ["chr1\t10\n", "chr1\tx\t20\n", "chr1\t30\t20\n"])
    def test_invalid_lines(self, tmp_path: Path, line: str) -> None:
        """Test errors on malformed lines."""
        bed = tmp_path / "bad.bed"
        bed.write_text(line)

        with pytest.raises(ValueError, match="Line 1"):
            read_bed(bed)


class TestRegionHelpers:
    """Tests for region construction helpers."""

    def test_promoters_by_strand(self) -> None:
        """Test that promoters are placed around the strand-aware TSS."""
        genes = [
            Region("chr1", 5000, 9000, name="plus", strand="+"),
            Region("chr1", 5000, 9000, name="minus", strand="-"),
            Region("chr1", 100, 500, strand="*"),
        ]

        result = promoters(genes, upstream=3000, downstream=1000)

        assert [(r.start, r.end) for r in result] == [(2000, 5999), (8001, 12000), (1, 1099)]
        assert result[1].name == "minus"

    def test_merge_regions(self) -> None:
        """Test that overlapping and adjacent regions merge."""
        merged = merge_regions(
            [Region("chr1", 50, 80), Region("chr1", 1, 10), Region("chr1", 11, 20)]
        )

        starts, ends = merged["chr1"]
        assert starts.tolist() == [1, 50]
        assert ends.tolist() == [20, 80]

    def test_overlaps_any(self) -> None:
        """Test interval overlap flags."""
        hit = overlaps_any(
            np.array(["chr1", "chr1", "chr2"], dtype=object),
            np.array([1, 100, 1]),
            np.array([10, 120, 10]),
            [Region("chr1", 110, 130)],
        )

        assert hit.tolist() == [False, True, False]

    def test_neighborhood_regions(self, counts_factory) -> None:
        """Test neighbourhoods centred on windows and clipped to the chromosome."""
        data = counts_factory(
            np.ones((2, 2)), starts=[1, 951], chrom_lengths={"chr1": 1000}
        )

        regions = neighborhood_regions(data, 100)

        assert (regions[0].start, regions[0].end) == (1, 100)
        assert (regions[1].start, regions[1].end) == (905, 1000)

    def test_neighborhood_too_narrow(self, counts_factory) -> None:
        """Test error when the neighbourhood is not wider than the windows."""
        data = counts_factory(np.ones((2, 2)))

        with pytest.raises(ValueError, match="must exceed"):
            neighborhood_regions(data, 10)


class TestWriters:
    """Tests for TSV and BED writers."""

    def test_windows_round_trip(self, tmp_path: Path, tested) -> None:
        """Test that the windows table reads back unchanged."""
        data, result = tested
        path = tmp_path / "out_windows.tsv"

        n = write_windows_tsv(data, result, path, cluster_ids=np.array([0, 0, 1]))
        table = read_windows_tsv(path)

        assert n == 3
        assert table.samples == ("s1", "s2")
        assert table.counts.tolist() == data.counts.tolist()
        assert table.start.tolist() == [1, 51, 101]
        assert table.cluster.tolist() == [1, 1, 2]
        assert table.statistic_name == "F"
        assert table.pvalue == pytest.approx(result.pvalue, rel=1e-5)
        assert table.logfc == pytest.approx(result.logfc)

    def test_windows_lrt_header(self, tmp_path: Path, tested) -> None:
        """Test that LRT results name the statistic column LR."""
        data, result = tested
        result.method = "lrt"
        path = tmp_path / "lrt_windows.tsv"

        write_windows_tsv(data, result, path)

        header = path.read_text().splitlines()[0].split("\t")
        assert "LR" in header
        assert read_windows_tsv(path).cluster.tolist() == [0, 0, 0]

    def test_windows_row_mismatch(self, tmp_path: Path, tested) -> None:
        """Test error when results and windows differ in length."""
        data, result = tested

        with pytest.raises(ValueError, match="one row per window"):
            write_windows_tsv(data.subset([0, 1]), result, tmp_path / "x.tsv")

    def test_clusters_ranked(self, tmp_path: Path, tested, clusters) -> None:
        """Test that clusters are ranked by p-value with empty ones last."""
        data, _ = tested
        merged, result = clusters
        path = tmp_path / "out_clusters.tsv"

        write_clusters_tsv(merged, result, data, path)
        table = read_clusters_tsv(path)

        assert table.cluster.tolist() == [1, 2, 3]
        assert table.direction.tolist() == ["up", "down", "NA"]
        assert np.isnan(table.fdr[2])
        lines = path.read_text().splitlines()
        # representative of cluster 1 is window 1 (1-50), midpoint 25
        assert lines[1].split("\t")[-1] == "25"
        assert lines[3].split("\t")[-1] == "NA"

    def test_bed_significant_only(self, tmp_path: Path, clusters) -> None:
        """Test that only significant clusters are written, 0-based."""
        merged, result = clusters
        path = tmp_path / "out.bed"

        n = write_clusters_bed(merged, result, path, fdr_threshold=0.05)

        assert n == 1
        assert path.read_text() == "chr1\t0\t100\tcluster_1\t30\t.\n"

    def test_read_missing_columns(self, tmp_path: Path) -> None:
        """Test error on a table without the expected columns."""
        path = tmp_path / "bad.tsv"
        path.write_text("chrom\tstart\n")

        with pytest.raises(ValueError, match="Missing required columns"):
            read_windows_tsv(path)
        with pytest.raises(ValueError, match="Missing required columns"):
            read_clusters_tsv(path)

    def test_read_missing_file(self, tmp_path: Path) -> None:
        """Test error when a results file does not exist."""
        with pytest.raises(FileNotFoundError):
            read_clusters_tsv(tmp_path / "none.tsv")


class TestSummary:
    """Tests for the analysis summary."""

    def _summary(self) -> AnalysisSummary:
        return AnalysisSummary(
            bam_paths=["wt1.bam", "ko1.bam"],
            groups=["wt", "ko"],
            library_sizes=[10_000, 12_000],
            norm_factors=[1.05, 0.95],
            normalization="composition",
            windows_counted=5000,
            filter_name="GlobalFilter",
            windows_retained=800,
            windows_significant=40,
            clusters=120,
            clusters_significant=6,
            clusters_up=4,
            clusters_down=2,
            df_prior=4.5,
            top_cluster="chr1:9901-10100",
            parameters={"width": 150, "fdr": 0.05, "dedup": False},
        )

    def test_text(self) -> None:
        """Test the human-readable report."""
        text = self._summary().to_text()

        assert "chipdb Differential Binding Summary" in text
        assert "wt1.bam [wt]: 10,000 fragments, factor 1.050" in text
        assert "Prior degrees of freedom: 4.50" in text
        assert "Top cluster: chr1:9901-10100" in text
        assert "dedup: False" in text

    def test_dict(self) -> None:
        """Test the dictionary form."""
        d = self._summary().to_dict()

        assert d["clusters"]["significant"] == 6
        assert d["testing"]["df_prior"] == 4.5
        assert d["windows"]["filter"] == "GlobalFilter"

    def test_write(self, tmp_path: Path) -> None:
        """Test writing the report to disk."""
        path = tmp_path / "summary.txt"

        write_summary(self._summary(), path)

        assert path.read_text().endswith("=" * 70 + "\n")
