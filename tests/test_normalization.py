"""Tests for normalization strategies."""

from __future__ import annotations

import numpy as np
import pytest

from chipdb.analysis.normalization import (
    CompositionNormalization,
    EfficiencyNormalization,
    SpikeInNormalization,
    TrendedNormalization,
    calc_norm_factors,
    normalize,
    transplant_norm_factors,
)
from chipdb.utils.errors import LibrarySizeMismatchError


def _composition_bins() -> np.ndarray:
    """Background bins equal in both samples; sample 2 is bound in 10 bins."""
    counts = np.full((100, 2), 100)
    counts[:10, 1] = 300
    return counts


class TestCalcNormFactors:
    """Tests for TMM normalization factors."""

    def test_identical_libraries(self) -> None:
        """Test that identical libraries get unit factors."""
        counts = np.random.default_rng(0).poisson(50, size=(200, 1)).repeat(3, axis=1)

        factors = calc_norm_factors(counts, counts.sum(axis=0))

        assert np.allclose(factors, 1.0)

    def test_composition_bias(self) -> None:
        """Test that extra binding in one library is scaled out."""
        counts = _composition_bins()
        totals = counts.sum(axis=0)

        factors = calc_norm_factors(counts, totals)

        # background should be equal after scaling: 100 / (f2 * 12000) == 100 / (f1 * 10000)
        assert factors[1] / factors[0] == pytest.approx(10_000 / 12_000, rel=1e-6)

    def test_geometric_mean_one(self) -> None:
        """Test that factors are centred on 1."""
        rng = np.random.default_rng(5)
        counts = rng.poisson([20, 30, 45, 60], size=(500, 4))

        factors = calc_norm_factors(counts, counts.sum(axis=0))

        assert np.prod(factors) == pytest.approx(1.0)

    def test_empty_counts(self) -> None:
        """Test that no rows gives unit factors."""
        factors = calc_norm_factors(np.zeros((0, 3)), np.array([10, 20, 30]))

        assert factors.tolist() == [1.0, 1.0, 1.0]

    def test_all_zero_rows(self) -> None:
        """Test that rows without information fall back to unit factors."""
        counts = np.array([[0, 5], [3, 0], [0, 0]])

        factors = calc_norm_factors(counts, np.array([100, 100]))

        assert np.allclose(factors, 1.0)

    def test_non_positive_library(self) -> None:
        """Test error on a zero library size."""
        with pytest.raises(ValueError, match="library sizes"):
            calc_norm_factors(np.ones((5, 2)), np.array([10, 0]))


class TestTransplant:
    """Tests for transplant_norm_factors."""

    def test_matching_totals(self, counts_factory) -> None:
        """Test that factors are copied when totals agree."""
        data = counts_factory(np.ones((4, 2)), totals=[1000, 2000])

        result = transplant_norm_factors([0.8, 1.25], [1000, 2000], data)

        assert result.norm_factors.tolist() == [0.8, 1.25]
        assert np.allclose(result.lib_sizes, [800.0, 2500.0])

    def test_mismatched_totals(self, counts_factory) -> None:
        """Test error when the factors come from other read parameters."""
        data = counts_factory(np.ones((4, 2)), totals=[1000, 2000])

        with pytest.raises(LibrarySizeMismatchError):
            transplant_norm_factors([0.8, 1.25], [1000, 1999], data)


class TestStrategies:
    """Tests for normalize and the strategy classes."""

    def test_composition(self, counts_factory) -> None:
        """Test composition normalization from large bins."""
        bins_counts = _composition_bins()
        totals = bins_counts.sum(axis=0).tolist()
        bins = counts_factory(bins_counts, width=1000, spacing=1000, totals=totals)
        data = counts_factory(np.full((20, 2), 30), totals=totals)

        result = normalize(data, CompositionNormalization(bins=bins))

        assert result.norm_factors[1] / result.norm_factors[0] == pytest.approx(
            10_000 / 12_000, rel=1e-6
        )
        assert result.offsets is None

    def test_composition_totals_mismatch(self, counts_factory) -> None:
        """Test that bins counted with other parameters are rejected."""
        bins = counts_factory(
            _composition_bins(), width=1000, spacing=1000, totals=[10_000, 12_000]
        )
        data = counts_factory(np.full((20, 2), 30), totals=[10_000, 12_001])

        with pytest.raises(LibrarySizeMismatchError):
            normalize(data, CompositionNormalization(bins=bins))

    def test_efficiency(self, counts_factory) -> None:
        """Test efficiency normalization on high-abundance windows."""
        rng = np.random.default_rng(11)
        peaks = rng.poisson(200, size=(300, 1)) * np.array([[1, 2]])
        windows = counts_factory(peaks, totals=[100_000, 100_000])
        data = counts_factory(np.full((5, 2), 30), totals=[100_000, 100_000])

        result = normalize(data, EfficiencyNormalization(windows=windows))

        assert result.norm_factors[1] / result.norm_factors[0] == pytest.approx(2.0, rel=1e-3)

    def test_spike_in(self, counts_factory) -> None:
        """Test spike-in normalization."""
        spike = counts_factory(np.array([[100, 50]] * 50), totals=[5000, 5000])
        data = counts_factory(np.full((5, 2), 30), totals=[5000, 5000])

        result = normalize(data, SpikeInNormalization(spike_counts=spike))

        assert result.norm_factors[0] / result.norm_factors[1] == pytest.approx(2.0, rel=1e-6)

    def test_trended_offsets(self, db_counts) -> None:
        """Test that trended normalization sets offsets of the count shape."""
        result = normalize(db_counts, TrendedNormalization())

        assert result.offsets is not None
        assert result.offsets.shape == db_counts.counts.shape
        assert np.all(np.isfinite(result.offsets))
        assert np.allclose(result.norm_factors, 1.0)
        assert np.allclose(result.glm_offsets(), result.offsets)

    def test_trended_identical_samples(self, counts_factory) -> None:
        """Test that identical samples get identical offsets."""
        counts = np.random.default_rng(2).poisson(40, size=(100, 1)).repeat(2, axis=1)
        data = counts_factory(counts)

        offsets = TrendedNormalization().offsets(data)

        assert np.allclose(offsets, np.log(100_000))

    def test_unknown_strategy(self, db_counts) -> None:
        """Test error on an unknown strategy object."""
        with pytest.raises(TypeError, match="Unknown normalization strategy"):
            normalize(db_counts, "tmm")
