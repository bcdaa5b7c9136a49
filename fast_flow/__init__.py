"""Fast-Flow: dense geometric flow matching for RGB-D frame sequences."""

from fast_flow.matching import (
    ConfigurationError,
    FlowMatchError,
    FlowMatcher,
    MatchResult,
    ShapeError,
    flow_backward,
    flow_forward,
)
from fast_flow.data import CameraBatch, PointCloud, backproject_depth

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "FlowMatchError",
    "FlowMatcher",
    "MatchResult",
    "ShapeError",
    "flow_backward",
    "flow_forward",
    "CameraBatch",
    "PointCloud",
    "backproject_depth",
]
