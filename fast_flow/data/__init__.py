"""Data module for Fast-Flow.

Includes camera records, the point cloud schema and depth transforms.
"""

from fast_flow.data.calibration import CameraBatch
from fast_flow.data.schema import PointCloud
from fast_flow.data.transforms import backproject_depth

__all__ = [
    "CameraBatch",
    "PointCloud",
    "backproject_depth",
]
