"""Transform module for depth back-projection."""

from fast_flow.data.transforms.projection import backproject_depth

__all__ = [
    "backproject_depth",
]
