"""Statistical utilities for differential abundance testing."""

from cytofda.stats.dispersion import (
    estimate_common_dispersion,
    fit_prior,
    squeeze_variances,
    trigamma_inverse,
)
from cytofda.stats.fdr import bh_fdr, density_weights, spatial_fdr, weighted_bh
from cytofda.stats.glm import (
    Contrast,
    average_log_cpm,
    estimate_latent_factors,
    fit_contrasts,
    log_cpm,
    make_contrast,
    make_design,
)
from cytofda.stats.rescue import rescue_test, union_intersection

__all__ = [
    "bh_fdr",
    "density_weights",
    "weighted_bh",
    "spatial_fdr",
    "trigamma_inverse",
    "fit_prior",
    "squeeze_variances",
    "estimate_common_dispersion",
    "Contrast",
    "make_design",
    "make_contrast",
    "log_cpm",
    "average_log_cpm",
    "estimate_latent_factors",
    "fit_contrasts",
    "union_intersection",
    "rescue_test",
]
