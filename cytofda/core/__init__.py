"""Core counting subpackage."""

from cytofda.core.counting import (
    count_cells,
    filter_hyperspheres,
    hypersphere_radius,
    neighbor_distances,
    prepare_cell_data,
    select_centers,
)
from cytofda.core.redundancy import find_first_spheres, sphere_overlap
from cytofda.core.types import AbundanceTable, ConfigurationError, EventStore, PooledCells

__all__ = [
    "AbundanceTable",
    "ConfigurationError",
    "EventStore",
    "PooledCells",
    "prepare_cell_data",
    "select_centers",
    "hypersphere_radius",
    "count_cells",
    "neighbor_distances",
    "filter_hyperspheres",
    "find_first_spheres",
    "sphere_overlap",
]
