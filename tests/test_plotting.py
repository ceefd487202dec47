"""Tests for plotting modules."""

from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")  # Use non-interactive backend for testing

import matplotlib.pyplot as plt
import numpy as np
import pytest

from chipdb.analysis.testing import glm_ql_fit, make_design
from chipdb.plotting.diagnostics import (
    plot_filter_histogram,
    plot_norm_ma,
    plot_ql_dispersion,
    plot_result_ma,
)
from chipdb.plotting.genome import _get_chromosome_offsets, plot_genome_wide
from chipdb.plotting.style import reset_style, set_publication_style
from chipdb.utils.sorting import (
    genomic_order,
    natural_sort_key,
    simplify_chromosome_label,
    sort_chromosomes,
)


# ============ Fixtures ============


@pytest.fixture
def tested_windows() -> dict[str, np.ndarray]:
    """Windows on two chromosomes with test results."""
    rng = np.random.default_rng(21)
    n = 300
    chrom = np.array(["chr1"] * 200 + ["chr2"] * 100, dtype=object)
    start = np.concatenate([np.arange(1, 20_000, 100), np.arange(1, 10_000, 100)])
    pvalue = rng.uniform(size=n)
    pvalue[:10] = 1e-8
    return {
        "chrom": chrom,
        "start": start,
        "end": start + 149,
        "logfc": rng.normal(size=n),
        "logcpm": rng.normal(5, 1.5, size=n),
        "pvalue": pvalue,
    }


# ============ Sorting Tests ============


class TestNaturalSorting:
    """Tests for chromosome sorting utilities."""

    def test_natural_sort_key_basic(self) -> None:
        """Test basic natural sort key generation."""
        assert natural_sort_key("chr1") < natural_sort_key("chr2")
        assert natural_sort_key("chr2") < natural_sort_key("chr10")
        assert natural_sort_key("chr10") < natural_sort_key("chrX")

    def test_natural_sort_chromosomes(self) -> None:
        """Test chromosome sorting."""
        chroms = ["Chr10", "Chr2", "Chr1", "ChrX", "Chr3"]
        assert sort_chromosomes(chroms) == ["Chr1", "Chr2", "Chr3", "Chr10", "ChrX"]

    def test_simplify_chromosome_label(self) -> None:
        """Test chromosome label simplification."""
        assert simplify_chromosome_label("Chr01") == "1"
        assert simplify_chromosome_label("chromosome10") == "10"
        assert simplify_chromosome_label("chrX") == "X"
        assert simplify_chromosome_label("chr") == "chr"

    def test_genomic_order_natural(self) -> None:
        """Test interval ordering by chromosome then start."""
        order = genomic_order(["chr10", "chr2", "chr2", "chr1"], [5, 300, 20, 900])

        assert order.tolist() == [3, 2, 1, 0]

    def test_genomic_order_explicit(self) -> None:
        """Test that an explicit chromosome ranking wins, unlisted names last."""
        order = genomic_order(
            ["chrM", "chr2", "chr1", "chrUn"], [1, 1, 1, 1], chrom_order=["chr2", "chr1"]
        )

        assert order.tolist() == [1, 2, 0, 3]


# ============ Style Tests ============


class TestPlottingStyle:
    """Tests for plotting style configuration."""

    def test_set_publication_style(self) -> None:
        """Test that publication style can be set without error."""
        set_publication_style()
        assert plt.rcParams["axes.spines.top"] is False
        assert plt.rcParams["axes.spines.right"] is False

    def test_reset_style(self) -> None:
        """Test that resetting restores matplotlib defaults."""
        set_publication_style()
        reset_style()
        assert plt.rcParams["axes.spines.top"] is True


# ============ Diagnostic Plot Tests ============


class TestFilterHistogram:
    """Tests for the filter statistic histogram."""

    def test_creates_file(self, tmp_path: Path) -> None:
        """Test that the histogram is written as PNG."""
        stat = np.random.default_rng(3).normal(size=500)

        fig = plot_filter_histogram(stat, threshold=1.0, output_path=tmp_path / "filter.png")

        assert (tmp_path / "filter.png").exists()
        plt.close(fig)

    def test_empty_statistic(self, tmp_path: Path) -> None:
        """Test that an empty statistic returns a blank figure."""
        fig = plot_filter_histogram(np.array([]), output_path=tmp_path / "empty.png")

        assert fig is not None
        assert not (tmp_path / "empty.png").exists()
        plt.close(fig)


class TestNormMA:
    """Tests for the normalization MA plot."""

    def test_creates_file(self, tmp_path: Path, counts_factory) -> None:
        """Test the MA plot over background bins."""
        counts = np.random.default_rng(6).poisson(100, size=(200, 2))
        bins = counts_factory(counts, width=1000, spacing=1000)

        fig = plot_norm_ma(bins, output_path=tmp_path / "norm.png")

        assert (tmp_path / "norm.png").exists()
        plt.close(fig)

    def test_single_library(self, tmp_path: Path, counts_factory) -> None:
        """Test that one library gives a blank figure."""
        bins = counts_factory(np.ones((5, 1)), width=1000, spacing=1000)

        fig = plot_norm_ma(bins, output_path=tmp_path / "norm.png")

        assert fig is not None
        assert not (tmp_path / "norm.png").exists()
        plt.close(fig)


class TestQLDispersion:
    """Tests for the QL dispersion plot."""

    def test_creates_file(self, tmp_path: Path, db_counts, db_groups) -> None:
        """Test the dispersion plot from a QL fit."""
        fit = glm_ql_fit(db_counts, make_design(db_groups))

        fig = plot_ql_dispersion(fit, output_path=tmp_path / "ql.png")

        assert (tmp_path / "ql.png").exists()
        plt.close(fig)


class TestResultMA:
    """Tests for the result MA plot."""

    def test_creates_file(self, tmp_path: Path, tested_windows) -> None:
        """Test the MA plot with significant windows marked."""
        w = tested_windows

        fig = plot_result_ma(
            w["logcpm"],
            w["logfc"],
            significant=w["pvalue"] < 1e-6,
            output_path=tmp_path / "ma.png",
        )

        assert (tmp_path / "ma.png").exists()
        plt.close(fig)

    def test_without_significance(self, tested_windows) -> None:
        """Test the MA plot without a significance mask or output."""
        fig = plot_result_ma(tested_windows["logcpm"], tested_windows["logfc"], title="Results")

        assert fig is not None
        plt.close(fig)


# ============ Genome-wide Plot Tests ============


class TestGenomeWidePlot:
    """Tests for the genome-wide plot."""

    def test_chromosome_offsets(self) -> None:
        """Test chromosome offsets with gaps between chromosomes."""
        offsets, lengths, total = _get_chromosome_offsets(
            np.array(["chr2", "chr1", "chr1"], dtype=object), np.array([10_000, 5_000, 20_000])
        )

        assert lengths == {"chr1": 20_000, "chr2": 10_000}
        assert offsets == {"chr1": 0, "chr2": 20_600}
        assert total == 30_600

    def test_creates_file(self, tmp_path: Path, tested_windows) -> None:
        """Test that the genome-wide plot is created."""
        w = tested_windows

        fig = plot_genome_wide(
            w["chrom"], w["start"], w["end"], w["logfc"], w["pvalue"],
            output_path=tmp_path / "genome.png",
        )

        assert (tmp_path / "genome.png").exists()
        plt.close(fig)

    def test_with_highlight(self, tmp_path: Path, tested_windows) -> None:
        """Test genome plot with significant clusters highlighted."""
        w = tested_windows

        fig = plot_genome_wide(
            w["chrom"], w["start"], w["end"], w["logfc"], w["pvalue"],
            highlight=[("chr1", 1, 1000), ("chr2", 501, 900)],
            output_path=tmp_path / "genome.png",
        )

        assert (tmp_path / "genome.png").exists()
        plt.close(fig)

    def test_empty_windows(self, tmp_path: Path) -> None:
        """Test genome plot with no windows."""
        empty = np.array([], dtype=np.int64)

        fig = plot_genome_wide(
            np.array([], dtype=object), empty, empty, np.array([]), np.array([]),
            output_path=tmp_path / "genome.png",
        )

        assert fig is not None
        plt.close(fig)
