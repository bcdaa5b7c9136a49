"""Calibration module for per-batch camera records."""

from fast_flow.data.calibration.camera_model import CameraBatch

__all__ = [
    "CameraBatch",
]
