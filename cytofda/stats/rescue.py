"""Union-intersection testing for consistent effects in two contrasts."""

from __future__ import annotations

import numpy as np
import pandas as pd

from cytofda.core.utils import pvalues_1d
from cytofda.stats.fdr import DEFAULT_NEIGHBORS, spatial_fdr


def union_intersection(
    logfc_a: np.ndarray,
    p_a: np.ndarray,
    logfc_b: np.ndarray,
    p_b: np.ndarray,
) -> np.ndarray:
    """Combined p-value for "both effects present with the same sign".

    p = max(p_a, p_b), set to 1 wherever the two effects differ in sign.
    NaN in either input yields NaN.
    """
    pa = pvalues_1d("p_a", p_a)
    pb = pvalues_1d("p_b", p_b)
    la = np.asarray(logfc_a, dtype=float).ravel()
    lb = np.asarray(logfc_b, dtype=float).ravel()
    if not (pa.size == pb.size == la.size == lb.size):
        raise ValueError("All inputs must have the same length.")
    combined = np.fmax(pa, pb)
    combined[np.isnan(pa) | np.isnan(pb)] = np.nan
    disagree = np.sign(la) != np.sign(lb)
    known = np.isfinite(la) & np.isfinite(lb)
    combined[disagree & known & np.isfinite(combined)] = 1.0
    combined[~known] = np.nan
    return combined


def rescue_test(
    centers: np.ndarray,
    result_a: pd.DataFrame,
    result_b: pd.DataFrame,
    *,
    neighbors: int = DEFAULT_NEIGHBORS,
    bandwidth: float | None = None,
    kernel: str = "tricube",
) -> pd.DataFrame:
    """Combine two contrast results and re-apply spatial FDR on the same centers."""
    if len(result_a) != len(result_b):
        raise ValueError("Both results must cover the same hyperspheres.")
    if not result_a.index.equals(result_b.index):
        raise ValueError("Both results must share the same hypersphere index.")
    combined = union_intersection(
        result_a["logFC"].to_numpy(dtype=float),
        result_a["PValue"].to_numpy(dtype=float),
        result_b["logFC"].to_numpy(dtype=float),
        result_b["PValue"].to_numpy(dtype=float),
    )
    fdr = spatial_fdr(centers, combined, neighbors=neighbors, bandwidth=bandwidth, kernel=kernel)
    return pd.DataFrame(
        {
            "logFC_A": result_a["logFC"].to_numpy(dtype=float),
            "logFC_B": result_b["logFC"].to_numpy(dtype=float),
            "PValue": combined,
            "FDR": fdr,
        },
        index=result_a.index,
    )
