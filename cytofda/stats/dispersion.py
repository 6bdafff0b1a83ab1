"""Dispersion estimation and empirical Bayes variance moderation."""

from __future__ import annotations

import logging
import warnings

import numpy as np
import statsmodels.api as sm
from scipy.special import digamma, polygamma

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-4
MAX_DISPERSION = 10.0


def trigamma_inverse(x: np.ndarray) -> np.ndarray:
    """Solve trigamma(y) = x for y > 0 by Newton iteration."""
    arr = np.asarray(x, dtype=float)
    flat = arr.ravel()
    out = np.full(flat.size, np.nan, dtype=float)
    ok = np.isfinite(flat) & (flat > 0.0)
    big = ok & (flat > 1e7)
    small = ok & (flat < 1e-6)
    mid = ok & ~big & ~small
    out[big] = 1.0 / np.sqrt(flat[big])
    out[small] = 1.0 / flat[small]
    if np.any(mid):
        xv = flat[mid]
        y = 0.5 + 1.0 / xv
        for _ in range(50):
            tri = polygamma(1, y)
            dif = tri * (1.0 - tri / xv) / polygamma(2, y)
            y = y + dif
            if np.max(-dif / y) < 1e-8:
                break
        out[mid] = y
    return out.reshape(arr.shape)


def fit_prior(s2: np.ndarray, df: np.ndarray) -> tuple[float, float]:
    """Estimate the scaled inverse chi-square prior (df_prior, s2_prior).

    Returns df_prior = inf when the spread of log(s2) is no larger than the
    sampling variation alone would produce.
    """
    s2_arr = np.asarray(s2, dtype=float).ravel()
    df_arr = np.broadcast_to(np.asarray(df, dtype=float), s2_arr.shape).ravel()
    ok = np.isfinite(s2_arr) & np.isfinite(df_arr) & (df_arr > 0.0)
    if not np.any(ok):
        raise ValueError("No finite variances with positive degrees of freedom.")
    s2_ok = s2_arr[ok]
    df_ok = df_arr[ok]
    floor = 1e-5 * float(np.median(s2_ok)) if np.median(s2_ok) > 0 else 1e-12
    s2_ok = np.maximum(s2_ok, max(floor, 1e-12))

    z = np.log(s2_ok)
    e = z - digamma(df_ok / 2.0) + np.log(df_ok / 2.0)
    e_mean = float(np.mean(e))
    if e.size < 2:
        return 0.0, float(np.exp(e_mean))
    e_var = float(np.var(e, ddof=1) - np.mean(polygamma(1, df_ok / 2.0)))
    if e_var > 0.0:
        df_prior = float(2.0 * trigamma_inverse(np.array([e_var]))[0])
        s2_prior = float(np.exp(e_mean + digamma(df_prior / 2.0) - np.log(df_prior / 2.0)))
    else:
        df_prior = float("inf")
        s2_prior = float(np.exp(e_mean))
    return df_prior, s2_prior


def squeeze_variances(
    s2: np.ndarray, df: np.ndarray
) -> tuple[np.ndarray, float, float]:
    """Shrink per-feature variances toward a common prior.

    Returns (posterior variances, df_prior, s2_prior).
    """
    s2_arr = np.asarray(s2, dtype=float).ravel()
    df_arr = np.broadcast_to(np.asarray(df, dtype=float), s2_arr.shape).ravel()
    df_prior, s2_prior = fit_prior(s2_arr, df_arr)
    if np.isinf(df_prior):
        post = np.full(s2_arr.shape, s2_prior, dtype=float)
    else:
        post = (df_prior * s2_prior + df_arr * s2_arr) / (df_prior + df_arr)
    post = np.where(np.isfinite(s2_arr), post, np.nan)
    logger.info("Variance prior: df_prior=%s s2_prior=%.4g", df_prior, s2_prior)
    return post, df_prior, s2_prior


def estimate_common_dispersion(
    counts: np.ndarray,
    offsets: np.ndarray,
    design: np.ndarray,
) -> float:
    """Common NB dispersion from Poisson-fit moments.

    Each hypersphere contributes sum(((y - mu)^2 - y) / mu^2) / df_resid;
    the median across hyperspheres is returned, clipped to a sane range.
    """
    y_all = np.asarray(counts, dtype=float)
    X = np.asarray(design, dtype=float)
    off = np.asarray(offsets, dtype=float).ravel()
    df_resid = X.shape[0] - np.linalg.matrix_rank(X)
    if df_resid <= 0:
        raise ValueError("Design has no residual degrees of freedom; cannot estimate dispersion.")

    estimates: list[float] = []
    for y in y_all:
        if y.sum() <= 0:
            continue
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                res = sm.GLM(y, X, family=sm.families.Poisson(), offset=off).fit()
        except (ValueError, np.linalg.LinAlgError):
            continue
        mu = np.asarray(res.fittedvalues, dtype=float)
        mu = np.maximum(mu, 1e-8)
        estimates.append(float(np.sum(((y - mu) ** 2 - y) / mu**2) / df_resid))
    if not estimates:
        raise ValueError("No hypersphere could be used to estimate the dispersion.")
    value = float(np.clip(np.median(estimates), MIN_DISPERSION, MAX_DISPERSION))
    logger.info("Common NB dispersion: %.4g (from %d hyperspheres)", value, len(estimates))
    return value
