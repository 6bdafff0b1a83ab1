"""cytofda public API."""

from cytofda._version import __version__
from cytofda.core.counting import count_cells, prepare_cell_data
from cytofda.core.redundancy import find_first_spheres
from cytofda.core.types import AbundanceTable, ConfigurationError, EventStore
from cytofda.stats.fdr import spatial_fdr
from cytofda.stats.glm import fit_contrasts, make_contrast, make_design
from cytofda.stats.rescue import rescue_test


def run_preprocessing(*args, **kwargs):
    """Lazy wrapper to avoid importing I/O and plotting dependencies at import time."""
    from cytofda.pipeline.run import run_preprocessing as _run_preprocessing

    return _run_preprocessing(*args, **kwargs)


def run_analysis(*args, **kwargs):
    """Lazy wrapper to avoid importing I/O and plotting dependencies at import time."""
    from cytofda.pipeline.run import run_analysis as _run_analysis

    return _run_analysis(*args, **kwargs)


__all__ = [
    "__version__",
    "AbundanceTable",
    "ConfigurationError",
    "EventStore",
    "prepare_cell_data",
    "count_cells",
    "make_design",
    "make_contrast",
    "fit_contrasts",
    "spatial_fdr",
    "rescue_test",
    "find_first_spheres",
    "run_preprocessing",
    "run_analysis",
]
