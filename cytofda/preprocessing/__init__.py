"""Event preprocessing: transformation, QC gating and channel curation."""

from cytofda.preprocessing.channels import (
    DEFAULT_DROP_PATTERNS,
    curate_channels,
    resolve_channels,
)
from cytofda.preprocessing.gating import (
    Gate,
    GateThresholds,
    OutlierGate,
    PolygonGate,
    RangeGate,
    apply_gates,
    gates_from_config,
)
from cytofda.preprocessing.pipeline import PreprocessResult, preprocess_events
from cytofda.preprocessing.transforms import (
    LogicleParams,
    TransformParams,
    apply_transform,
    arcsinh_transform,
    estimate_logicle_params,
    estimate_transform_params,
    logicle_transform,
)

__all__ = [
    "DEFAULT_DROP_PATTERNS",
    "curate_channels",
    "resolve_channels",
    "Gate",
    "GateThresholds",
    "RangeGate",
    "PolygonGate",
    "OutlierGate",
    "apply_gates",
    "gates_from_config",
    "PreprocessResult",
    "preprocess_events",
    "LogicleParams",
    "TransformParams",
    "apply_transform",
    "arcsinh_transform",
    "logicle_transform",
    "estimate_logicle_params",
    "estimate_transform_params",
]
