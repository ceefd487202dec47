"""Statistical building blocks for chipdb.

Abundance summaries, negative binomial likelihood pieces, smoothing and
multiple-testing helpers shared by the filtering, normalization, testing
and clustering modules.
"""

from __future__ import annotations

import math

import numpy as np
from scipy.special import gammaln
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

# Smallest mean allowed in likelihood and weight computations
MIN_MEAN = 1e-10


def one_group_mle(
    counts: np.ndarray,
    offsets: np.ndarray,
    dispersion: float | np.ndarray = 0.05,
    max_iter: int = 50,
    tol: float = 1e-8,
) -> np.ndarray:
    """Fit a one-group NB model per row by Fisher scoring.

    Solves for ``beta`` in ``mu_ij = exp(beta_i + offset_ij)``.

    Args:
        counts: Count matrix (n_rows, n_samples).
        offsets: Log offsets, broadcastable to ``counts``.
        dispersion: NB dispersion, scalar or one per row.
        max_iter: Maximum number of scoring iterations.
        tol: Convergence tolerance on the step size.

    Returns:
        Array of ``beta`` per row; ``-inf`` for all-zero rows.
    """
    y = np.asarray(counts, dtype=np.float64)
    offsets = np.broadcast_to(np.asarray(offsets, dtype=np.float64), y.shape)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), y.shape[:1])[:, None]

    row_sums = y.sum(axis=1)
    zero = row_sums <= 0
    beta = np.full(y.shape[0], -np.inf)
    if np.all(zero):
        return beta

    active = ~zero
    ya = y[active]
    oa = offsets[active]
    pa = phi[active]
    b = np.log(row_sums[active] / np.exp(oa).sum(axis=1))

    for _ in range(max_iter):
        mu = np.exp(b[:, None] + oa)
        denom = 1 + pa * mu
        score = ((ya - mu) / denom).sum(axis=1)
        info = (mu / denom).sum(axis=1)
        step = score / info
        b = b + step
        if np.max(np.abs(step)) < tol:
            break

    beta[active] = b
    return beta


def ave_log_cpm(
    counts: np.ndarray,
    lib_sizes: np.ndarray,
    prior_count: float | np.ndarray = 2.0,
    dispersion: float = 0.05,
    offsets: np.ndarray | None = None,
) -> np.ndarray:
    """Average abundance of each row in log2 counts per million.

    The abundance is the fitted rate of a one-group NB model, so it is
    independent of the experimental design and is safe to filter on.
    With ``offsets``, their exponentials replace the library sizes
    element-wise.

    Args:
        counts: Count matrix (n_rows, n_samples).
        lib_sizes: Effective library size per sample.
        prior_count: Prior count, scalar or one per row.
        dispersion: NB dispersion used for the one-group fit.
        offsets: Optional natural-log offsets, same shape as ``counts``.

    Returns:
        Array of log2-CPM values.
    """
    counts = np.asarray(counts, dtype=np.float64)
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)
    if counts.shape[0] == 0:
        return np.zeros(0)

    if offsets is None:
        lib = np.broadcast_to(lib_sizes[None, :], counts.shape)
    else:
        lib = np.exp(np.broadcast_to(np.asarray(offsets, dtype=np.float64), counts.shape))

    prior = np.broadcast_to(np.asarray(prior_count, dtype=np.float64), counts.shape[:1])
    scaled = prior[:, None] * lib / lib.mean(axis=1, keepdims=True)
    adj_counts = counts + scaled
    adj_lib = lib + 2 * scaled

    beta = one_group_mle(adj_counts, np.log(adj_lib), dispersion=dispersion)
    with np.errstate(divide="ignore"):
        return (beta + np.log(1e6)) / np.log(2)


def nb_unit_deviance(
    y: np.ndarray,
    mu: np.ndarray,
    dispersion: np.ndarray | float,
) -> np.ndarray:
    """Unit deviances of the NB distribution (Poisson when dispersion is 0).

    Args:
        y: Observed counts.
        mu: Fitted means, same shape as ``y``.
        dispersion: NB dispersion broadcastable to ``y``.

    Returns:
        Array of unit deviances.
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mu, dtype=np.float64), MIN_MEAN)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), y.shape)

    with np.errstate(divide="ignore", invalid="ignore"):
        ylogy = np.where(y > 0, y * np.log(y / mu), 0.0)
        poisson = 2 * (ylogy - (y - mu))
        nb = 2 * (
            ylogy
            - (y + 1 / phi) * np.log((1 + phi * y) / (1 + phi * mu))
        )
    dev = np.where(phi > 1e-8, nb, poisson)
    return np.maximum(dev, 0.0)


def nb_deviance(
    y: np.ndarray,
    mu: np.ndarray,
    dispersion: np.ndarray | float,
) -> np.ndarray:
    """Total NB deviance of each row."""
    y = np.asarray(y, dtype=np.float64)
    phi = np.asarray(dispersion, dtype=np.float64)
    if phi.ndim == 1:
        phi = phi[:, None]
    return nb_unit_deviance(y, mu, phi).sum(axis=1)


def nb_loglik(
    y: np.ndarray,
    mu: np.ndarray,
    dispersion: np.ndarray | float,
) -> np.ndarray:
    """NB log-likelihood of each row.

    Args:
        y: Observed counts (n_rows, n_samples).
        mu: Fitted means, same shape as ``y``.
        dispersion: Positive NB dispersion, scalar or one per row.

    Returns:
        Array of log-likelihoods, one per row.
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mu, dtype=np.float64), MIN_MEAN)
    phi = np.asarray(dispersion, dtype=np.float64)
    if phi.ndim == 1:
        phi = phi[:, None]
    phi = np.broadcast_to(phi, y.shape)
    size = 1 / phi

    ll = (
        gammaln(y + size)
        - gammaln(size)
        - gammaln(y + 1)
        + y * np.log(phi * mu)
        - (y + size) * np.log1p(phi * mu)
    )
    return ll.sum(axis=1)


def lowess_fit(
    y: np.ndarray,
    x: np.ndarray,
    frac: float = 0.3,
    iterations: int = 3,
) -> np.ndarray:
    """Fit a lowess curve and return the fitted values in input order.

    Falls back to the mean of ``y`` when ``x`` has no spread or when
    there are too few points to smooth.

    Args:
        y: Response values.
        x: Covariate values.
        frac: Fraction of points used for each local fit.
        iterations: Robustifying iterations.

    Returns:
        Fitted values, same length as ``y``.
    """
    y = np.asarray(y, dtype=np.float64)
    x = np.asarray(x, dtype=np.float64)
    if len(y) == 0:
        return np.zeros(0)
    if len(y) < 4 or np.ptp(x) == 0:
        return np.full(len(y), float(np.mean(y)))

    delta = 0.01 * float(np.ptp(x))
    fitted = lowess(
        y, x, frac=frac, it=iterations, delta=delta, return_sorted=False
    )
    fitted = np.asarray(fitted, dtype=np.float64)
    bad = ~np.isfinite(fitted)
    if np.any(bad):
        fitted[bad] = float(np.mean(y))
    return fitted


def adjust_pvalues(pvalues: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Adjust p-values for multiple testing.

    NaN entries are ignored and stay NaN in the output.

    Args:
        pvalues: Raw p-values.
        method: Any ``statsmodels`` multipletests method
            (``fdr_bh``, ``holm``, ``bonferroni``, ...).

    Returns:
        Adjusted p-values, non-decreasing in the rank of the raw values.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    adjusted = np.full(pvalues.shape, np.nan)
    ok = ~np.isnan(pvalues)
    if np.any(ok):
        _, padj, _, _ = multipletests(np.clip(pvalues[ok], 0.0, 1.0), method=method)
        adjusted[ok] = padj
    return adjusted


def weighted_simes(
    pvalues: np.ndarray,
    weights: np.ndarray | None = None,
) -> tuple[float, int, np.ndarray]:
    """Combine p-values by the weighted Simes method.

    The combined p-value is ``min_k p_(k) * W / sum_{j<=k} w_(j)`` where
    ``p_(k)`` are the sorted p-values, ``w_(j)`` their weights and ``W``
    the total weight. It tests the joint null that no member is
    significant.

    Args:
        pvalues: P-values of the members. NaN entries are ignored.
        weights: Positive weights; equal weights when None.

    Returns:
        Tuple of (combined p-value, position of the member attaining the
        minimum, the member positions in the critical set). The combined
        p-value is NaN when every member is NaN.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    if weights is None:
        weights = np.ones(len(pvalues))
    weights = np.asarray(weights, dtype=np.float64)

    ok = np.flatnonzero(~np.isnan(pvalues))
    if len(ok) == 0:
        return math.nan, 0, np.zeros(0, dtype=np.int64)

    order = ok[np.argsort(pvalues[ok], kind="stable")]
    p_sorted = pvalues[order]
    cum_w = np.cumsum(weights[order])
    adj = p_sorted * cum_w[-1] / cum_w
    best = int(np.argmin(adj))
    combined = float(min(1.0, adj[best]))
    return combined, int(order[best]), order[: best + 1]
