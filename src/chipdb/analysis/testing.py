"""Differential binding tests for chipdb.

Windows are tested with negative binomial generalized linear models:

1. An abundance-dependent NB dispersion trend is estimated by maximizing
   the Cox-Reid adjusted profile likelihood within abundance bins.
2. Each window is fitted by IRLS with its trended dispersion.
3. Quasi-likelihood dispersions (deviance / residual df) are squeezed
   towards an abundance trend by empirical Bayes, with an optionally
   robust estimate of the prior degrees of freedom.
4. A QL F-test compares the full model with the model nested by the
   contrast.

Without replicates the QL framework cannot be used, and ``glm_lrt``
provides a likelihood ratio test at a fixed, user-supplied dispersion.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy import integrate, optimize
from scipy import stats as scipy_stats
from scipy.linalg import null_space
from scipy.special import digamma, polygamma

from chipdb.core.models import DBResult, Design
from chipdb.core.stats import (
    MIN_MEAN,
    ave_log_cpm,
    lowess_fit,
    nb_deviance,
    nb_loglik,
)
from chipdb.utils.errors import DesignError, format_group_mismatch
from chipdb.utils.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chipdb.core.models import WindowCounts

logger = get_logger(__name__)

# Prior count added before estimating log fold changes
LOGFC_PRIOR_COUNT = 0.125

# Search interval for NB dispersions
DISPERSION_BOUNDS = (1e-6, 10.0)

MAX_ETA = 50.0

# NB dispersion for the likelihood ratio test when none is supplied
DEFAULT_LRT_DISPERSION = 0.05

# Smallest QL dispersion, relative to the typical value
VAR_FLOOR = 1e-5


# =============================================================================
# Design and contrasts
# =============================================================================


def make_design(groups: Sequence[str], intercept: bool = True) -> Design:
    """Build a one-way design matrix from group labels.

    Levels are ordered by first appearance; the first level is the
    reference when ``intercept`` is True.

    Args:
        groups: Group label of every sample, in column order.
        intercept: Use treatment coding with an intercept; otherwise one
            column per group.

    Returns:
        Design with R-style column names.

    Examples:
        >>> make_design(["wt", "wt", "ko", "ko"]).columns
        ('(Intercept)', 'groupko')
    """
    groups = [str(g) for g in groups]
    levels = list(dict.fromkeys(groups))
    if len(levels) < 1:
        raise DesignError("At least one sample is required")

    indicator = np.array([[1.0 if g == lvl else 0.0 for lvl in levels] for g in groups])
    if intercept:
        matrix = np.column_stack([np.ones(len(groups)), indicator[:, 1:]])
        columns = ["(Intercept)"] + [f"group{lvl}" for lvl in levels[1:]]
    else:
        matrix = indicator
        columns = [f"group{lvl}" for lvl in levels]
    return Design(matrix=matrix, columns=tuple(columns), groups=tuple(groups))


def _level_vector(design: Design, level: str) -> np.ndarray:
    """Coefficient combination giving the mean of ``level``."""
    vec = np.zeros(design.n_coef)
    name = f"group{level}"
    if "(Intercept)" in design.columns:
        vec[design.columns.index("(Intercept)")] = 1.0
    if name in design.columns:
        vec[design.columns.index(name)] = 1.0
    elif level not in design.groups:
        raise DesignError(f"Unknown group level: {level!r}")
    return vec


def make_contrast(
    design: Design,
    coef: int | str | None = None,
    vector: Sequence[float] | None = None,
    levels: tuple[str, str] | None = None,
) -> np.ndarray:
    """Build a contrast vector.

    Exactly one of ``coef``, ``vector`` or ``levels`` may be given; with
    none of them the last coefficient is tested.

    Args:
        design: Design the contrast applies to.
        coef: Coefficient index or column name to test against zero.
        vector: Explicit contrast weights, one per coefficient.
        levels: ``(a, b)`` tests group ``a`` minus group ``b``.

    Returns:
        Contrast vector of length ``design.n_coef``.

    Raises:
        DesignError: If the contrast does not match the design.
    """
    given = sum(x is not None for x in (coef, vector, levels))
    if given > 1:
        raise DesignError("Give only one of coef, vector or levels")

    if vector is not None:
        contrast = np.asarray(vector, dtype=np.float64)
        if contrast.shape != (design.n_coef,):
            raise DesignError(
                f"Contrast has {contrast.size} entries but the design has "
                f"{design.n_coef} coefficients",
                suggestion=f"Coefficients: {', '.join(design.columns)}",
            )
    elif levels is not None:
        contrast = _level_vector(design, levels[0]) - _level_vector(design, levels[1])
    else:
        if coef is None:
            coef = design.n_coef - 1
        if isinstance(coef, str):
            if coef not in design.columns:
                raise DesignError(
                    f"Unknown coefficient: {coef!r}",
                    suggestion=f"Coefficients: {', '.join(design.columns)}",
                )
            coef = design.columns.index(coef)
        if not 0 <= coef < design.n_coef:
            raise DesignError(f"Coefficient index {coef} out of range")
        contrast = np.zeros(design.n_coef)
        contrast[coef] = 1.0

    if not np.any(contrast):
        raise DesignError("Contrast must have at least one non-zero entry")
    return contrast


def null_design(design_matrix: np.ndarray, contrast: np.ndarray) -> np.ndarray:
    """Design matrix of the model nested by ``contrast``."""
    basis = null_space(np.atleast_2d(contrast))
    return np.asarray(design_matrix, dtype=np.float64) @ basis


# =============================================================================
# NB GLM fitting
# =============================================================================


@dataclass
class GLMFit:
    """Row-wise NB GLM fit.

    Attributes:
        coefficients: Coefficients on the natural-log scale (n_rows, n_coef).
        fitted: Fitted means (n_rows, n_samples).
        deviance: Residual deviance per row.
        converged: Convergence flag per row.
    """

    coefficients: np.ndarray
    fitted: np.ndarray
    deviance: np.ndarray
    converged: np.ndarray


def _linear_predictor(beta: np.ndarray, X: np.ndarray, offsets: np.ndarray) -> np.ndarray:
    eta = offsets + beta @ X.T
    return np.clip(eta, math.log(MIN_MEAN), MAX_ETA)


def fit_nb_glm(
    counts: np.ndarray,
    design: np.ndarray,
    offsets: np.ndarray,
    dispersion: float | np.ndarray,
    max_iter: int = 50,
    tol: float = 1e-6,
) -> GLMFit:
    """Fit a log-link NB GLM to every row by IRLS.

    All rows are updated together; rows whose deviance increases have
    their step halved.

    Args:
        counts: Count matrix (n_rows, n_samples).
        design: Design matrix (n_samples, n_coef).
        offsets: Natural-log offsets broadcastable to ``counts``.
        dispersion: NB dispersion, scalar or one per row.
        max_iter: Maximum number of IRLS iterations.
        tol: Relative deviance tolerance.

    Returns:
        GLMFit with one entry per row.
    """
    y = np.asarray(counts, dtype=np.float64)
    X = np.asarray(design, dtype=np.float64)
    n_rows = y.shape[0]
    offsets = np.broadcast_to(np.asarray(offsets, dtype=np.float64), y.shape)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), (n_rows,))
    n_coef = X.shape[1]

    if n_coef == 0:
        mu = np.exp(np.clip(offsets, math.log(MIN_MEAN), MAX_ETA))
        return GLMFit(
            coefficients=np.zeros((n_rows, 0)),
            fitted=mu,
            deviance=nb_deviance(y, mu, phi),
            converged=np.ones(n_rows, dtype=bool),
        )

    beta = (np.log(y + 0.5) - offsets) @ np.linalg.pinv(X).T
    eta = _linear_predictor(beta, X, offsets)
    mu = np.exp(eta)
    dev = nb_deviance(y, mu, phi)
    converged = np.zeros(n_rows, dtype=bool)

    for _ in range(max_iter):
        w = mu / (1 + phi[:, None] * mu)
        z = (eta - offsets) + (y - mu) / mu
        xtwx = np.einsum("gn,np,nq->gpq", w, X, X)
        xtwz = np.einsum("gn,np->gp", w * z, X)
        target = (np.linalg.pinv(xtwx) @ xtwz[..., None])[..., 0]
        step = target - beta

        new_beta = beta + step
        new_eta = _linear_predictor(new_beta, X, offsets)
        new_mu = np.exp(new_eta)
        new_dev = nb_deviance(y, new_mu, phi)
        for _ in range(10):
            worse = new_dev > dev + 1e-8 * (np.abs(dev) + 1)
            if not np.any(worse):
                break
            step[worse] /= 2
            new_beta[worse] = beta[worse] + step[worse]
            new_eta[worse] = _linear_predictor(new_beta[worse], X, offsets[worse])
            new_mu[worse] = np.exp(new_eta[worse])
            new_dev[worse] = nb_deviance(y[worse], new_mu[worse], phi[worse])

        converged = np.abs(dev - new_dev) < tol * (np.abs(new_dev) + 0.1)
        beta, eta, mu, dev = new_beta, new_eta, new_mu, new_dev
        if np.all(converged):
            break

    if not np.all(converged):
        logger.debug(f"IRLS did not converge for {int((~converged).sum()):,} rows")

    return GLMFit(coefficients=beta, fitted=mu, deviance=dev, converged=converged)


def adjusted_profile_likelihood(
    counts: np.ndarray,
    design: np.ndarray,
    offsets: np.ndarray,
    dispersion: float | np.ndarray,
) -> np.ndarray:
    """Cox-Reid adjusted profile log-likelihood of every row.

    The NB log-likelihood at the fitted means minus half the log
    determinant of the Fisher information of the coefficients.

    Args:
        counts: Count matrix (n_rows, n_samples).
        design: Design matrix (n_samples, n_coef).
        offsets: Natural-log offsets broadcastable to ``counts``.
        dispersion: NB dispersion, scalar or one per row.

    Returns:
        Adjusted profile log-likelihood per row.
    """
    y = np.asarray(counts, dtype=np.float64)
    X = np.asarray(design, dtype=np.float64)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), (y.shape[0],))

    fit = fit_nb_glm(y, X, offsets, phi)
    mu = np.maximum(fit.fitted, MIN_MEAN)
    loglik = nb_loglik(y, mu, phi)

    w = mu / (1 + phi[:, None] * mu)
    info = np.einsum("gn,np,nq->gpq", w, X, X)
    _, logdet = np.linalg.slogdet(info)
    return loglik - 0.5 * logdet


def _max_apl(
    counts: np.ndarray,
    design: np.ndarray,
    offsets: np.ndarray,
) -> float:
    """Dispersion maximizing the summed APL of a set of rows."""
    lo, hi = DISPERSION_BOUNDS

    def neg_apl(log_phi: float) -> float:
        return -float(
            np.sum(adjusted_profile_likelihood(counts, design, offsets, math.exp(log_phi)))
        )

    res = optimize.minimize_scalar(
        neg_apl,
        bounds=(math.log(lo), math.log(hi)),
        method="bounded",
        options={"xatol": 1e-3},
    )
    return float(math.exp(res.x))


@dataclass
class DispersionFit:
    """Estimated NB dispersions.

    Attributes:
        common: Single dispersion for all windows.
        trended: Dispersion per window, from the abundance trend.
        bin_abundance: Median abundance of each abundance bin.
        bin_dispersion: Dispersion estimated in each bin.
        abundance: Average log2-CPM of each window.
    """

    common: float
    trended: np.ndarray
    bin_abundance: np.ndarray
    bin_dispersion: np.ndarray
    abundance: np.ndarray


def _check_design(data: WindowCounts, design: Design) -> None:
    if design.n_samples != data.n_samples:
        raise DesignError(format_group_mismatch(data.n_samples, design.n_samples))


def estimate_disp(
    data: WindowCounts,
    design: Design,
    min_bin_size: int = 100,
    max_bins: int = 30,
) -> DispersionFit:
    """Estimate common and abundance-trended NB dispersions.

    Windows are sorted by abundance and split into bins of at least
    ``min_bin_size`` windows (at most ``max_bins`` bins). Each bin gets
    the dispersion maximizing its summed adjusted profile likelihood; a
    lowess curve through the bin estimates is interpolated at every
    window's abundance.

    Args:
        data: Normalized window counts.
        design: Design of the experiment.
        min_bin_size: Minimum number of windows per bin.
        max_bins: Maximum number of bins.

    Returns:
        DispersionFit.

    Raises:
        DesignError: If the design has no residual degrees of freedom.
    """
    _check_design(data, design)
    if design.df_residual < 1:
        raise DesignError(
            "The design has no residual degrees of freedom; dispersions cannot be estimated",
            suggestion="Add replicates, or use a likelihood ratio test with a fixed dispersion.",
        )

    counts = data.counts.astype(np.float64)
    offsets = data.glm_offsets()
    X = design.matrix
    ab = ave_log_cpm(counts, data.lib_sizes, offsets=data.offsets)
    n = len(data)

    logger.info(f"Estimating NB dispersions for {n:,} windows")

    common = _max_apl(counts, X, offsets) if n else DISPERSION_BOUNDS[0]

    n_bins = int(min(max_bins, max(1, n // min_bin_size)))
    order = np.argsort(ab, kind="stable")
    bins = [b for b in np.array_split(order, n_bins) if len(b)]

    bin_ab = np.array([np.median(ab[b]) for b in bins])
    bin_disp = np.array([_max_apl(counts[b], X, offsets[b]) for b in bins])

    if len(bins) >= 4:
        log_trend = lowess_fit(np.log(bin_disp), bin_ab, frac=0.5, iterations=1)
    else:
        log_trend = np.log(bin_disp)
    trended = np.exp(np.interp(ab, bin_ab, log_trend)) if n else np.zeros(0)

    logger.info(
        f"Common dispersion {common:.4f} (BCV {math.sqrt(common):.3f}); "
        f"trend over {len(bins)} bin(s)"
    )
    return DispersionFit(
        common=common,
        trended=trended,
        bin_abundance=bin_ab,
        bin_dispersion=bin_disp,
        abundance=ab,
    )


# =============================================================================
# Empirical Bayes squeezing of QL dispersions
# =============================================================================


def trigamma_inverse(x: np.ndarray | float) -> np.ndarray:
    """Solve ``trigamma(y) = x`` for ``y`` by Newton's method."""
    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    y = np.where(x > 1e7, 1 / np.sqrt(x), np.where(x < 1e-6, 1 / x, 0.5 + 1 / x))
    mid = (x >= 1e-6) & (x <= 1e7)
    for _ in range(50):
        if not np.any(mid):
            break
        tri = polygamma(1, y[mid])
        dif = tri * (1 - tri / x[mid]) / polygamma(2, y[mid])
        y[mid] = y[mid] + dif
        if np.max(-dif / y[mid]) < 1e-8:
            break
    return y


def _log_f_moments(d1: float, d2: float, q_lo: float, q_hi: float) -> tuple[float, float]:
    """First two moments of ``log F(d1, d2)`` winsorized at ``[q_lo, q_hi]``."""
    if math.isinf(d2):
        dist = scipy_stats.chi2(d1, scale=1 / d1)
    else:
        dist = scipy_stats.f(d1, d2)

    def density(t: float) -> float:
        return float(dist.pdf(math.exp(t)) * math.exp(t))

    p_lo = float(dist.cdf(math.exp(q_lo)))
    p_hi = float(dist.sf(math.exp(q_hi)))
    m1 = integrate.quad(lambda t: t * density(t), q_lo, q_hi, limit=200)[0]
    m2 = integrate.quad(lambda t: t * t * density(t), q_lo, q_hi, limit=200)[0]
    m1 += p_lo * q_lo + p_hi * q_hi
    m2 += p_lo * q_lo**2 + p_hi * q_hi**2
    return m1, m2


def _winsorized_log_f_var(d1: float, d2: float, tail_p: tuple[float, float]) -> float:
    if math.isinf(d2):
        dist = scipy_stats.chi2(d1, scale=1 / d1)
    else:
        dist = scipy_stats.f(d1, d2)
    q_lo = math.log(dist.ppf(tail_p[0]))
    q_hi = math.log(dist.isf(tail_p[1]))
    m1, m2 = _log_f_moments(d1, d2, q_lo, q_hi)
    return m2 - m1**2


def _robust_df_prior(
    residuals: np.ndarray,
    df: float,
    tail_p: tuple[float, float],
    max_df: float = 1e5,
) -> float:
    """Prior df matching the winsorized variance of log-F."""
    lo_q, hi_q = np.quantile(residuals, [tail_p[0], 1 - tail_p[1]])
    observed = float(np.var(np.clip(residuals, lo_q, hi_q), ddof=1))

    if observed <= _winsorized_log_f_var(df, max_df, tail_p):
        return math.inf
    min_df = 0.1
    if observed >= _winsorized_log_f_var(df, min_df, tail_p):
        return min_df

    def gap(log_d2: float) -> float:
        return _winsorized_log_f_var(df, math.exp(log_d2), tail_p) - observed

    return float(math.exp(optimize.brentq(gap, math.log(min_df), math.log(max_df), xtol=1e-4)))


@dataclass
class SqueezeResult:
    """Empirical Bayes moderated variances.

    Attributes:
        s2_prior: Prior variance per observation.
        df_prior: Prior degrees of freedom (may be infinite).
        s2_post: Posterior variance per observation.
    """

    s2_prior: np.ndarray
    df_prior: float
    s2_post: np.ndarray

    @property
    def infinite_prior_df(self) -> bool:
        """True when the prior df diverged to infinity."""
        return math.isinf(self.df_prior)


def squeeze_var(
    var: np.ndarray,
    df: float,
    covariate: np.ndarray | None = None,
    robust: bool = False,
    winsor_tail_p: tuple[float, float] = (0.05, 0.1),
) -> SqueezeResult:
    """Squeeze sample variances towards a (trended) prior.

    The variances are assumed to follow a scaled F distribution with
    ``df`` and ``df_prior`` degrees of freedom around the prior. The
    prior location is a lowess trend in ``covariate`` (or a constant) on
    the log scale. The prior df comes from the excess variance of the
    log variances; when ``robust``, from their variance after
    winsorizing both tails, matched to the winsorized variance of log-F.

    Args:
        var: Sample variances.
        df: Residual degrees of freedom shared by all variances.
        covariate: Optional covariate for the prior trend.
        robust: Use winsorized moments for the prior df.
        winsor_tail_p: Lower and upper tail proportions to winsorize.

    Returns:
        SqueezeResult.
    """
    var = np.asarray(var, dtype=np.float64)
    n = len(var)
    if n < 3:
        # No prior to borrow from; keep the raw values but off zero.
        scale = float(np.max(var)) if n and np.max(var) > 0 else 1.0
        s2_post = np.maximum(var, VAR_FLOOR * scale)
        return SqueezeResult(s2_prior=var.copy(), df_prior=0.0, s2_post=s2_post)

    x = np.maximum(var, 0)
    m = float(np.median(x))
    if m <= 0:
        m = 1.0
    x = np.maximum(x, VAR_FLOOR * m)

    z = np.log(x)
    e = z - digamma(df / 2) + math.log(df / 2)
    if covariate is None:
        e_mean = np.full(n, float(np.mean(e)))
    else:
        e_mean = lowess_fit(e, covariate, frac=0.3, iterations=3)
    resid = e - e_mean

    if robust:
        df_prior = _robust_df_prior(resid, df, winsor_tail_p)
    else:
        e_var = float(np.sum(resid**2) / (n - 1)) - float(polygamma(1, df / 2))
        df_prior = 2 * float(trigamma_inverse(e_var)[0]) if e_var > 0 else math.inf

    if math.isinf(df_prior):
        s2_prior = np.exp(e_mean)
        s2_post = s2_prior.copy()
    else:
        s2_prior = np.exp(e_mean + digamma(df_prior / 2) - math.log(df_prior / 2))
        s2_post = (df_prior * s2_prior + df * var) / (df_prior + df)

    return SqueezeResult(s2_prior=s2_prior, df_prior=df_prior, s2_post=s2_post)


# =============================================================================
# Quasi-likelihood fit and tests
# =============================================================================


@dataclass(eq=False)
class QLFit:
    """Quasi-likelihood NB GLM fit of a set of windows.

    Attributes:
        data: The fitted window counts.
        design: Design of the experiment.
        coefficients: GLM coefficients per window.
        deviance: Residual deviance per window.
        dispersion: NB dispersion per window.
        df_residual: Residual degrees of freedom of each window.
        s2: Raw QL dispersion per window.
        s2_prior: Prior (trended) QL dispersion per window.
        df_prior: Prior degrees of freedom.
        s2_post: Squeezed QL dispersion per window.
        df_total: Total degrees of freedom per window.
        abundance: Average log2-CPM per window.
    """

    data: WindowCounts
    design: Design
    coefficients: np.ndarray
    deviance: np.ndarray
    dispersion: np.ndarray
    df_residual: int
    s2: np.ndarray
    s2_prior: np.ndarray
    df_prior: float
    s2_post: np.ndarray
    df_total: np.ndarray
    abundance: np.ndarray

    @property
    def infinite_prior_df(self) -> bool:
        """True when the prior df diverged to infinity."""
        return math.isinf(self.df_prior)


def glm_ql_fit(
    data: WindowCounts,
    design: Design,
    dispersion: float | np.ndarray | None = None,
    robust: bool = True,
    abundance_trend: bool = True,
    winsor_tail_p: tuple[float, float] = (0.05, 0.1),
) -> QLFit:
    """Fit the QL NB GLM and squeeze the QL dispersions.

    Args:
        data: Normalized window counts.
        design: Design of the experiment.
        dispersion: NB dispersion(s); the abundance trend from
            ``estimate_disp`` when None.
        robust: Estimate the prior df robustly.
        abundance_trend: Squeeze towards an abundance-dependent trend
            rather than a constant.
        winsor_tail_p: Tail proportions for the robust estimate.

    Returns:
        QLFit.

    Raises:
        DesignError: If the design does not match the data or has no
            residual degrees of freedom.
    """
    _check_design(data, design)
    df = design.df_residual
    if df < 1:
        raise DesignError(
            "The design has no residual degrees of freedom for a QL fit",
            suggestion="Add replicates, or use glm_lrt with a fixed dispersion.",
        )
    if len(data) == 0:
        raise DesignError("No windows to fit")

    if dispersion is None:
        dispersion = estimate_disp(data, design).trended
    disp = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), (len(data),)).copy()

    counts = data.counts.astype(np.float64)
    fit = fit_nb_glm(counts, design.matrix, data.glm_offsets(), disp)
    abundance = ave_log_cpm(counts, data.lib_sizes, offsets=data.offsets)

    s2 = fit.deviance / df
    squeezed = squeeze_var(
        s2,
        df,
        covariate=abundance if abundance_trend else None,
        robust=robust,
        winsor_tail_p=winsor_tail_p,
    )

    pooled = df * len(data)
    df_total = np.full(len(data), float(min(df + squeezed.df_prior, pooled)))

    if squeezed.infinite_prior_df:
        logger.warning(
            "Prior degrees of freedom are infinite: QL dispersions show no "
            "extra variability beyond the trend. Check for an unmodelled batch "
            "effect or too few windows."
        )
    else:
        logger.info(f"QL prior degrees of freedom: {squeezed.df_prior:.2f}")

    return QLFit(
        data=data,
        design=design,
        coefficients=fit.coefficients,
        deviance=fit.deviance,
        dispersion=disp,
        df_residual=df,
        s2=s2,
        s2_prior=squeezed.s2_prior,
        df_prior=squeezed.df_prior,
        s2_post=squeezed.s2_post,
        df_total=df_total,
        abundance=abundance,
    )


def _as_contrast(design: Design, contrast) -> np.ndarray:
    if contrast is None or isinstance(contrast, (int, str)):
        return make_contrast(design, coef=contrast)
    return make_contrast(design, vector=contrast)


def estimate_logfc(
    data: WindowCounts,
    design: Design,
    contrast: np.ndarray,
    dispersion: np.ndarray | float,
    prior_count: float = LOGFC_PRIOR_COUNT,
) -> np.ndarray:
    """Log2 fold changes from a fit with a small library-scaled prior count."""
    counts = data.counts.astype(np.float64)
    offsets = data.glm_offsets()
    lib = np.exp(offsets)
    prior = prior_count * lib / lib.mean(axis=1, keepdims=True)
    fit = fit_nb_glm(counts + prior, design.matrix, np.log(lib + 2 * prior), dispersion)
    return (fit.coefficients @ contrast) / math.log(2)


def glm_ql_ftest(fit: QLFit, contrast=None) -> DBResult:
    """QL F-test of one contrast.

    Args:
        fit: Output of ``glm_ql_fit``.
        contrast: Contrast vector, coefficient name or index; the last
            coefficient when None.

    Returns:
        DBResult with one row per window of ``fit.data``.
    """
    design = fit.design
    contrast = _as_contrast(design, contrast)
    data = fit.data

    X0 = null_design(design.matrix, contrast)
    null_fit = fit_nb_glm(
        data.counts.astype(np.float64), X0, data.glm_offsets(), fit.dispersion
    )
    df_test = design.n_coef - X0.shape[1]

    lr = np.maximum(null_fit.deviance - fit.deviance, 0)
    f_stat = lr / df_test / fit.s2_post
    pvalue = scipy_stats.f.sf(f_stat, df_test, fit.df_total)

    logfc = estimate_logfc(data, design, contrast, fit.dispersion)
    logger.info(f"Tested {len(data):,} windows; {int((pvalue <= 0.05).sum()):,} with p <= 0.05")

    return DBResult(
        logfc=logfc,
        logcpm=fit.abundance,
        statistic=f_stat,
        pvalue=pvalue,
        method="ql",
        dispersion=fit.dispersion,
        df_prior=fit.df_prior,
        s2_prior=fit.s2_prior,
        df_total=fit.df_total,
        infinite_prior_df=fit.infinite_prior_df,
    )


def glm_lrt(
    data: WindowCounts,
    design: Design,
    contrast=None,
    dispersion: float | np.ndarray = DEFAULT_LRT_DISPERSION,
) -> DBResult:
    """Likelihood ratio test at a fixed NB dispersion.

    Intended for experiments without replicates, where no dispersion can
    be estimated from the data. The result depends on the supplied
    dispersion and is less reliable than the QL F-test.

    Args:
        data: Normalized window counts.
        design: Design of the experiment.
        contrast: Contrast vector, coefficient name or index.
        dispersion: Fixed NB dispersion.

    Returns:
        DBResult with likelihood ratio statistics.
    """
    _check_design(data, design)
    contrast = _as_contrast(design, contrast)
    logger.warning(
        f"Using a likelihood ratio test with fixed dispersion {np.mean(dispersion):.3g}; "
        "p-values are only as good as this guess"
    )

    counts = data.counts.astype(np.float64)
    offsets = data.glm_offsets()
    disp = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), (len(data),)).copy()

    full = fit_nb_glm(counts, design.matrix, offsets, disp)
    X0 = null_design(design.matrix, contrast)
    null = fit_nb_glm(counts, X0, offsets, disp)
    df_test = design.n_coef - X0.shape[1]

    lr = np.maximum(null.deviance - full.deviance, 0)
    return DBResult(
        logfc=estimate_logfc(data, design, contrast, disp),
        logcpm=ave_log_cpm(counts, data.lib_sizes, offsets=data.offsets),
        statistic=lr,
        pvalue=scipy_stats.chi2.sf(lr, df_test),
        method="lrt",
        dispersion=disp,
    )


def find_db_windows(
    data: WindowCounts,
    groups: Sequence[str],
    contrast=None,
    robust: bool = True,
    dispersion: float | None = None,
) -> tuple[DBResult, QLFit | None]:
    """Run the full testing step for a one-way design.

    Uses the QL F-test when the design has replicates, otherwise a
    likelihood ratio test at ``dispersion`` (``DEFAULT_LRT_DISPERSION`` when
    None).

    Args:
        data: Normalized window counts.
        groups: Group label of each sample.
        contrast: Contrast vector, coefficient name or index.
        robust: Robust prior df estimation.
        dispersion: Fixed NB dispersion; estimated when None.

    Returns:
        Tuple of (result, QL fit or None for the LRT).
    """
    if len(groups) != data.n_samples:
        raise DesignError(format_group_mismatch(data.n_samples, len(groups)))
    design = make_design(groups)

    if design.df_residual < 1:
        if dispersion is None:
            dispersion = DEFAULT_LRT_DISPERSION
        return glm_lrt(data, design, contrast, dispersion), None

    fit = glm_ql_fit(data, design, dispersion=dispersion, robust=robust)
    return glm_ql_ftest(fit, contrast), fit
