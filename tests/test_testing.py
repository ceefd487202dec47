"""Tests for the NB GLM and quasi-likelihood testing module."""

from __future__ import annotations

import math

import numpy as np
import pytest

from chipdb.analysis.clustering import combine_tests
from chipdb.analysis.testing import (
    estimate_disp,
    find_db_windows,
    fit_nb_glm,
    glm_ql_fit,
    glm_ql_ftest,
    make_contrast,
    make_design,
    null_design,
    squeeze_var,
)
from chipdb.utils.errors import DesignError


class TestDesign:
    """Tests for design and contrast construction."""

    def test_treatment_coding(self) -> None:
        """Test the intercept design with the first level as reference."""
        design = make_design(["wt", "wt", "ko", "ko"])

        assert design.columns == ("(Intercept)", "groupko")
        assert design.matrix.tolist() == [[1, 0], [1, 0], [1, 1], [1, 1]]
        assert design.df_residual == 2

    def test_cell_means_coding(self) -> None:
        """Test one column per group without an intercept."""
        design = make_design(["a", "b", "a"], intercept=False)

        assert design.columns == ("groupa", "groupb")
        assert design.matrix.tolist() == [[1, 0], [0, 1], [1, 0]]

    def test_default_contrast_is_last_coefficient(self) -> None:
        """Test that the last coefficient is tested by default."""
        design = make_design(["a", "a", "b", "c"])

        assert make_contrast(design).tolist() == [0, 0, 1]

    def test_contrast_by_name_and_levels(self) -> None:
        """Test contrasts given as a column name or a pair of levels."""
        design = make_design(["wt", "wt", "ko", "ko"])

        assert make_contrast(design, coef="groupko").tolist() == [0, 1]
        assert make_contrast(design, levels=("ko", "wt")).tolist() == [0, 1]
        assert make_contrast(design, levels=("wt", "ko")).tolist() == [0, -1]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"coef": "groupxx"},
            {"coef": 5},
            {"vector": [1, 0, 0]},
            {"vector": [0, 0]},
            {"coef": 1, "vector": [0, 1]},
            {"levels": ("ko", "missing")},
        ],
    )
    def test_invalid_contrast(self, kwargs: dict) -> None:
        """Test that contrasts not matching the design are rejected."""
        design = make_design(["wt", "wt", "ko", "ko"])

        with pytest.raises(DesignError):
            make_contrast(design, **kwargs)

    def test_null_design_drops_contrast(self) -> None:
        """Test that the nested model spans only the intercept."""
        design = make_design(["wt", "wt", "ko", "ko"])

        X0 = null_design(design.matrix, np.array([0.0, 1.0]))

        assert X0.shape == (4, 1)
        assert np.allclose(X0[:, 0], X0[0, 0])


class TestGLMFit:
    """Tests for the row-wise NB GLM."""

    def test_group_means_recovered(self) -> None:
        """Test that a one-way fit reproduces the group means."""
        design = make_design(["a", "a", "b", "b"])
        counts = np.array([[10, 10, 40, 40], [5, 15, 5, 15]])
        offsets = np.full(counts.shape, math.log(1e6))

        fit = fit_nb_glm(counts, design.matrix, offsets, 0.05)

        assert fit.converged.all()
        assert fit.coefficients[0, 0] == pytest.approx(math.log(10 / 1e6), abs=1e-3)
        assert fit.coefficients[0, 1] == pytest.approx(math.log(4), abs=1e-3)
        assert fit.coefficients[1, 1] == pytest.approx(0.0, abs=1e-3)
        assert np.allclose(fit.fitted[0], [10, 10, 40, 40], rtol=1e-3)

    def test_zero_counts(self) -> None:
        """Test that an all-zero row fits without errors."""
        design = make_design(["a", "a", "b", "b"])
        counts = np.array([[0, 0, 0, 0], [3, 4, 5, 6]])

        fit = fit_nb_glm(counts, design.matrix, np.zeros(counts.shape), 0.1)

        assert np.all(np.isfinite(fit.deviance))
        assert fit.fitted[0].max() < 1e-3


class TestDispersion:
    """Tests for dispersion estimation."""

    def test_recovers_simulated_dispersion(self, db_counts, db_groups) -> None:
        """Test that the common dispersion is near the simulated value."""
        disp = estimate_disp(db_counts, make_design(db_groups))

        assert 0.02 < disp.common < 0.12
        assert disp.trended.shape == (len(db_counts),)
        assert np.all(disp.trended > 0)
        assert len(disp.bin_dispersion) == 4

    def test_no_residual_df(self, counts_factory) -> None:
        """Test error when every sample is its own group."""
        data = counts_factory(np.ones((10, 2)))

        with pytest.raises(DesignError, match="residual degrees of freedom"):
            estimate_disp(data, make_design(["a", "b"]))


class TestSqueezeVar:
    """Tests for empirical Bayes variance squeezing."""

    def test_constant_variances_infinite_df(self) -> None:
        """Test that variances without spread give infinite prior df."""
        result = squeeze_var(np.full(100, 0.5), df=2)

        assert result.infinite_prior_df
        assert np.allclose(result.s2_post, result.s2_prior)

    def test_constant_variances_infinite_df_robust(self) -> None:
        """Test the robust estimate on variances without spread."""
        result = squeeze_var(np.full(100, 0.5), df=2, robust=True)

        assert result.infinite_prior_df

    def test_finite_prior_df(self) -> None:
        """Test that hierarchical variances give a finite prior df."""
        rng = np.random.default_rng(9)
        n, df, df0 = 3000, 2, 10
        true_var = df0 / rng.chisquare(df0, size=n)
        var = true_var * rng.chisquare(df, size=n) / df

        result = squeeze_var(var, df=df)

        assert 3 < result.df_prior < 40
        lower = np.minimum(var, result.s2_prior)
        upper = np.maximum(var, result.s2_prior)
        assert np.all(result.s2_post >= lower - 1e-12)
        assert np.all(result.s2_post <= upper + 1e-12)

    def test_too_few_values(self) -> None:
        """Test that fewer than three variances are returned unchanged."""
        result = squeeze_var(np.array([0.2, 0.4]), df=3)

        assert result.df_prior == 0.0
        assert result.s2_post.tolist() == [0.2, 0.4]

    def test_too_few_zero_values_floored(self) -> None:
        """Test that zero variances without a prior stay positive."""
        result = squeeze_var(np.array([0.0, 0.0]), df=2)

        assert np.all(result.s2_post > 0)
        assert np.all(np.isfinite(result.s2_post))


class TestQLFit:
    """Tests for glm_ql_fit."""

    def test_abundance_follows_offsets(self, db_counts, db_groups) -> None:
        """Test that GLM offsets carry into the abundance covariate."""
        design = make_design(db_groups)
        shifted = db_counts.with_offsets(db_counts.glm_offsets() + math.log(2))

        plain = glm_ql_fit(db_counts, design, dispersion=0.05)
        fit = glm_ql_fit(shifted, design, dispersion=0.05)

        assert np.allclose(fit.abundance, plain.abundance - 1, atol=1e-3)


class TestFindDBWindows:
    """Tests for the full testing step."""

    def test_detects_simulated_binding(self, db_counts, db_groups) -> None:
        """Test that gained binding in group b is found with positive logFC."""
        result, fit = find_db_windows(db_counts, db_groups)

        assert fit is not None
        assert result.method == "ql"
        assert result.statistic_name == "F"
        assert len(result) == len(db_counts)
        assert np.all((result.pvalue >= 0) & (result.pvalue <= 1))
        assert np.mean(result.logfc[:40]) > 1
        assert abs(np.median(result.logfc[40:])) < 0.5
        assert np.median(result.pvalue[:40]) < np.median(result.pvalue[40:])
        assert np.all(fit.df_total >= fit.df_residual)

    def test_named_contrast_matches_default(self, db_counts, db_groups) -> None:
        """Test that naming the tested coefficient changes nothing."""
        default, _ = find_db_windows(db_counts, db_groups)
        named, _ = find_db_windows(db_counts, db_groups, contrast="groupb")

        assert np.allclose(default.pvalue, named.pvalue)

    def test_reversed_contrast(self, db_counts, db_groups) -> None:
        """Test that negating the contrast negates logFC but not p-values."""
        design = make_design(db_groups)
        fit = glm_ql_fit(db_counts, design)

        forward = glm_ql_ftest(fit, [0.0, 1.0])
        reverse = glm_ql_ftest(fit, [0.0, -1.0])

        assert np.allclose(forward.logfc, -reverse.logfc)
        assert np.allclose(forward.pvalue, reverse.pvalue)

    def test_lrt_without_replicates(self, counts_factory) -> None:
        """Test the likelihood ratio fallback for unreplicated designs."""
        data = counts_factory(np.array([[10, 40], [40, 10], [20, 20]]))

        result, fit = find_db_windows(data, ["a", "b"])

        assert fit is None
        assert result.method == "lrt"
        assert result.statistic_name == "LR"
        assert result.logfc[0] > 0
        assert result.logfc[1] < 0
        assert result.pvalue[2] > 0.9

    def test_two_windows_finite(self, counts_factory) -> None:
        """Test that perfectly fitted windows give finite statistics."""
        data = counts_factory(np.array([[10, 10, 20, 20], [5, 5, 5, 5]]))

        result, fit = find_db_windows(data, ["a", "a", "b", "b"])

        assert fit is not None
        assert fit.df_prior == 0.0
        assert np.all(np.isfinite(result.statistic))
        assert not np.any(np.isnan(result.pvalue))
        assert result.pvalue[0] < 0.01
        assert result.pvalue[1] == pytest.approx(1.0)

        clusters = combine_tests(np.array([0, 0]), result.pvalue, result.logfc)

        assert clusters.pvalue[0] < 0.05
        assert clusters.rep_test.tolist() == [0]

    def test_group_mismatch(self, db_counts) -> None:
        """Test error when the labels do not match the samples."""
        with pytest.raises(DesignError):
            find_db_windows(db_counts, ["a", "b"])
