"""Negative binomial GLM testing of hypersphere counts.

Each hypersphere is fitted with a statsmodels NB-GLM using log total cells
per sample as offset. Contrasts are tested by refitting with the contrast
direction removed from the design and comparing deviances. When the design
has residual degrees of freedom the deviance ratio is moderated by an
empirical Bayes quasi-likelihood dispersion and referred to an F
distribution; without replicates a fixed dispersion and a chi-square
likelihood-ratio test are used instead.
"""

from __future__ import annotations

import logging
import math
import re
import warnings
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import stats
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from cytofda.core.types import AbundanceTable, ConfigurationError
from cytofda.stats.dispersion import estimate_common_dispersion, squeeze_variances

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_NOT_TESTABLE = "not_testable"
DEFAULT_NO_REPLICATE_DISPERSION = 0.1

_SIGN_RE = re.compile(r"\s*([+-])?\s*")
_SCALE_RE = re.compile(r"((?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)\s*\*\s*")
_NAME_RE = re.compile(r"[^+\-]+")
_LEVEL_RE = re.compile(r"\[(?:T\.)?(.+)\]$")


@dataclass(frozen=True)
class Contrast:
    """Named linear combination of design coefficients."""

    name: str
    coefficients: np.ndarray
    columns: tuple[str, ...]

    def as_series(self) -> pd.Series:
        return pd.Series(self.coefficients, index=list(self.columns), name=self.name)


def make_design(
    sample_meta: pd.DataFrame,
    formula: str = "0 + group",
    latent: pd.DataFrame | None = None,
) -> pd.DataFrame:
    """Build a named design matrix (rows ordered like `sample_meta`)."""
    if sample_meta is None or sample_meta.empty:
        raise ConfigurationError("sample_meta is required to build a design.")
    try:
        design = patsy.dmatrix(formula, sample_meta, return_type="dataframe")
    except patsy.PatsyError as exc:
        raise ConfigurationError(f"Invalid design formula '{formula}': {exc}") from exc
    design.index = sample_meta.index
    if latent is not None:
        design = pd.concat([design, latent.set_index(sample_meta.index)], axis=1)
    rank = int(np.linalg.matrix_rank(design.to_numpy(dtype=float)))
    if rank < design.shape[1]:
        raise ConfigurationError(
            f"Design is not of full column rank ({rank} < {design.shape[1]})."
        )
    return design


def _resolve_column(term: str, columns: list[str]) -> str:
    if term in columns:
        return term
    matches = [c for c in columns if c.endswith(f"[{term}]") or c.endswith(f"[T.{term}]")]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ConfigurationError(
            f"Contrast term '{term}' does not match any design column: {', '.join(columns)}"
        )
    raise ConfigurationError(f"Contrast term '{term}' is ambiguous: {', '.join(matches)}")


def _term_labels(columns: list[str]) -> list[str]:
    labels = set(columns)
    for c in columns:
        m = _LEVEL_RE.search(c)
        if m:
            labels.add(m.group(1))
    return sorted(labels, key=len, reverse=True)


def _match_term(text: str, pos: int, labels: list[str]) -> tuple[str, int] | None:
    # Longest label first; a label must end at an operator or the end of text.
    for label in labels:
        if text.startswith(label, pos):
            end = pos + len(label)
            rest = text[end:].lstrip()
            if not rest or rest[0] in "+-":
                return label, end
    m = _NAME_RE.match(text, pos)
    if m is None:
        return None
    return m.group(0).strip(), m.end()


def make_contrast(
    expr: str,
    design_columns: Iterable[str],
    name: str | None = None,
) -> Contrast:
    """Parse strings such as "A - B" or "0.5*A + 0.5*B - C".

    Terms may name a design column exactly or the level inside its brackets
    (`A` resolves `group[A]`). Level names may contain hyphens
    (`post-treat - pre-treat`) and coefficients may use exponents (`1e-3*A`).
    """
    columns = [str(c) for c in design_columns]
    text = str(expr).strip()
    if not text:
        raise ConfigurationError("Contrast expression is empty.")
    labels = _term_labels(columns)
    coef = np.zeros(len(columns), dtype=float)
    pos = 0
    n_terms = 0
    while pos < len(text):
        m = _SIGN_RE.match(text, pos)
        op = m.group(1)
        if op is None and n_terms > 0:
            raise ConfigurationError(f"Missing operator in contrast '{expr}'.")
        pos = m.end()
        scale = 1.0
        s = _SCALE_RE.match(text, pos)
        if s is not None:
            scale = float(s.group(1))
            pos = s.end()
        found = _match_term(text, pos, labels)
        if found is None:
            raise ConfigurationError(f"Cannot parse contrast '{expr}' at position {pos}.")
        term, pos = found
        col = _resolve_column(term, columns)
        coef[columns.index(col)] += (-1.0 if op == "-" else 1.0) * scale
        n_terms += 1
    if not np.any(coef != 0.0):
        raise ConfigurationError(f"Contrast '{expr}' has no non-zero coefficients.")
    return Contrast(name=name or text, coefficients=coef, columns=tuple(columns))


def log_cpm(counts: np.ndarray, totals: np.ndarray, prior_count: float = 2.0) -> np.ndarray:
    y = np.asarray(counts, dtype=float)
    lib = np.asarray(totals, dtype=float).ravel()
    if y.ndim != 2 or y.shape[1] != lib.size:
        raise ValueError("counts must be (n_hyperspheres, n_samples) matching totals.")
    if np.any(lib <= 0):
        raise ConfigurationError("Total cell counts must be positive.")
    prior = float(prior_count) * lib / float(np.mean(lib))
    return np.log2((y + prior) / (lib + 2.0 * prior) * 1e6)


def average_log_cpm(counts: np.ndarray, totals: np.ndarray, prior_count: float = 2.0) -> np.ndarray:
    """Average log2 counts-per-million of each hypersphere across samples."""
    y = np.asarray(counts, dtype=float)
    lib = np.asarray(totals, dtype=float).ravel()
    if y.ndim != 2 or y.shape[1] != lib.size:
        raise ValueError("counts must be (n_hyperspheres, n_samples) matching totals.")
    if np.any(lib <= 0):
        raise ConfigurationError("Total cell counts must be positive.")
    prior = float(prior_count) * lib / float(np.mean(lib))
    cpm = (y + prior) / (lib + 2.0 * prior) * 1e6
    return np.log2(np.mean(cpm, axis=1))


def estimate_latent_factors(
    counts: np.ndarray,
    totals: np.ndarray,
    design: pd.DataFrame,
    n_factors: int,
    prior_count: float = 2.0,
) -> pd.DataFrame:
    """Leading principal components of design residuals on the log-CPM scale.

    Deterministic: SVD with signs fixed so the largest-magnitude loading of
    each factor is positive.
    """
    k = int(n_factors)
    X = design.to_numpy(dtype=float)
    n_samples = X.shape[0]
    df_resid = n_samples - int(np.linalg.matrix_rank(X))
    if k < 1:
        raise ConfigurationError("n_factors must be >= 1.")
    if k >= df_resid:
        raise ConfigurationError(
            f"n_factors={k} leaves no residual degrees of freedom (df_resid={df_resid})."
        )
    y = log_cpm(counts, totals, prior_count=prior_count)
    hat = X @ np.linalg.pinv(X)
    resid = y - y @ hat.T
    resid = resid - resid.mean(axis=1, keepdims=True)
    _, _, vt = np.linalg.svd(resid, full_matrices=False)
    factors = vt[:k].T.copy()
    for j in range(k):
        if factors[np.argmax(np.abs(factors[:, j])), j] < 0:
            factors[:, j] *= -1.0
    return pd.DataFrame(
        factors, index=design.index, columns=[f"latent{j + 1}" for j in range(k)]
    )


def _fit_nb(y: np.ndarray, X: np.ndarray, offset: np.ndarray, alpha: float):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset)
        return model.fit(maxiter=100, tol=1e-8)


def _reduced_design(X: np.ndarray, coefficients: np.ndarray) -> np.ndarray:
    """Rotate the design so the contrast is the first coefficient, then drop it."""
    c = np.asarray(coefficients, dtype=float).reshape(-1, 1)
    q, _ = np.linalg.qr(c, mode="complete")
    return (X @ q)[:, 1:]


def _is_estimable(X: np.ndarray, coefficients: np.ndarray) -> bool:
    c = np.asarray(coefficients, dtype=float)
    sol, *_ = np.linalg.lstsq(X.T, c, rcond=None)
    return bool(np.allclose(X.T @ sol, c, atol=1e-8))


def _design_array(table: AbundanceTable, design: pd.DataFrame | np.ndarray) -> tuple[np.ndarray, list[str]]:
    if isinstance(design, pd.DataFrame):
        if [str(i) for i in design.index] != list(table.sample_names):
            if set(str(i) for i in design.index) != set(table.sample_names):
                raise ConfigurationError("Design rows must match the table's samples.")
            design = design.loc[list(table.sample_names)]
        return design.to_numpy(dtype=float), [str(c) for c in design.columns]
    X = np.asarray(design, dtype=float)
    if X.ndim != 2 or X.shape[0] != table.n_samples:
        raise ConfigurationError("Design must have one row per sample.")
    return X, [f"x{j}" for j in range(X.shape[1])]


def fit_contrasts(
    table: AbundanceTable,
    design: pd.DataFrame | np.ndarray,
    contrasts: Mapping[str, str | Contrast] | Iterable[Contrast],
    *,
    dispersion: float | None = None,
    no_replicate_dispersion: float = DEFAULT_NO_REPLICATE_DISPERSION,
    prior_count: float = 2.0,
) -> dict[str, pd.DataFrame]:
    """Test every contrast on every hypersphere.

    Returns one DataFrame per contrast, indexed by hypersphere position, with
    columns logFC (log2), logCPM, F, PValue and status.
    """
    X, columns = _design_array(table, design)
    if isinstance(contrasts, Mapping):
        parsed = [
            c if isinstance(c, Contrast) else make_contrast(c, columns, name=str(name))
            for name, c in contrasts.items()
        ]
    else:
        parsed = list(contrasts)
    if not parsed:
        raise ConfigurationError("At least one contrast is required.")
    for con in parsed:
        if len(con.coefficients) != X.shape[1]:
            raise ConfigurationError(
                f"Contrast '{con.name}' has {len(con.coefficients)} coefficients; design has {X.shape[1]}."
            )

    counts = np.asarray(table.counts, dtype=float)
    totals = np.asarray(table.totals, dtype=float)
    if np.any(totals <= 0):
        raise ConfigurationError("Total cell counts must be positive.")
    offset = np.log(totals)
    n_hyper = counts.shape[0]
    df_resid = int(X.shape[0] - np.linalg.matrix_rank(X))
    ave = average_log_cpm(counts, totals, prior_count=prior_count)

    if dispersion is None:
        if df_resid > 0:
            alpha = estimate_common_dispersion(counts, offset, X)
        else:
            alpha = float(no_replicate_dispersion)
            warnings.warn(
                f"Design has no residual degrees of freedom; using fixed dispersion {alpha} "
                "and likelihood-ratio tests.",
                RuntimeWarning,
                stacklevel=2,
            )
    else:
        alpha = float(dispersion)
    if not np.isfinite(alpha) or alpha <= 0.0:
        raise ConfigurationError("dispersion must be positive.")

    testable = counts.sum(axis=1) > 0
    dev_full = np.full(n_hyper, np.nan)
    betas = np.full((n_hyper, X.shape[1]), np.nan)
    for i in np.flatnonzero(testable):
        try:
            res = _fit_nb(counts[i], X, offset, alpha)
        except (ValueError, np.linalg.LinAlgError, PerfectSeparationError) as exc:
            logger.warning("Hypersphere %d: full model fit failed (%s)", i, exc)
            testable[i] = False
            continue
        dev_full[i] = float(res.deviance)
        betas[i] = np.asarray(res.params, dtype=float)
    testable &= np.isfinite(dev_full) & np.isfinite(betas).all(axis=1)

    s2_post = np.full(n_hyper, np.nan)
    df_prior = float("nan")
    if df_resid > 0 and np.any(testable):
        s2 = np.maximum(dev_full[testable] / df_resid, 0.0)
        post, df_prior, _ = squeeze_variances(s2, np.full(s2.size, float(df_resid)))
        s2_post[testable] = post
        testable &= np.isfinite(s2_post) & (s2_post > 0)

    n_untestable = int(n_hyper - testable.sum())
    if n_untestable:
        warnings.warn(
            f"{n_untestable} of {n_hyper} hyperspheres are not testable (zero counts or failed fits).",
            RuntimeWarning,
            stacklevel=2,
        )

    results: dict[str, pd.DataFrame] = {}
    for con in parsed:
        coef = np.asarray(con.coefficients, dtype=float)
        out = pd.DataFrame(
            {
                "logFC": np.full(n_hyper, np.nan),
                "logCPM": ave,
                "F": np.full(n_hyper, np.nan),
                "PValue": np.full(n_hyper, np.nan),
                "status": np.full(n_hyper, STATUS_NOT_TESTABLE, dtype=object),
            }
        )
        if not _is_estimable(X, coef):
            warnings.warn(
                f"Contrast '{con.name}' is not estimable from the design; all hyperspheres not testable.",
                RuntimeWarning,
                stacklevel=2,
            )
            results[con.name] = out
            continue
        X0 = _reduced_design(X, coef)
        for i in np.flatnonzero(testable):
            try:
                res0 = _fit_nb(counts[i], X0, offset, alpha)
            except (ValueError, np.linalg.LinAlgError, PerfectSeparationError) as exc:
                logger.warning("Hypersphere %d: reduced fit for %s failed (%s)", i, con.name, exc)
                continue
            dev0 = float(res0.deviance)
            if not np.isfinite(dev0):
                continue
            lr = max(dev0 - dev_full[i], 0.0)
            if df_resid > 0:
                f_stat = lr / s2_post[i]
                if np.isinf(df_prior):
                    p = float(stats.chi2.sf(f_stat, 1))
                else:
                    p = float(stats.f.sf(f_stat, 1, df_resid + df_prior))
            else:
                f_stat = lr
                p = float(stats.chi2.sf(lr, 1))
            out.loc[i, "logFC"] = float(coef @ betas[i]) / math.log(2.0)
            out.loc[i, "F"] = f_stat
            out.loc[i, "PValue"] = p
            out.loc[i, "status"] = STATUS_OK
        logger.info(
            "Contrast %s: %d tested, min p=%.3g",
            con.name,
            int((out["status"] == STATUS_OK).sum()),
            float(np.nanmin(out["PValue"])) if out["PValue"].notna().any() else float("nan"),
        )
        results[con.name] = out
    return results
