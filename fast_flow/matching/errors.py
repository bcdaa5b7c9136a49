"""Exceptions raised by the flow-matching operators.

Every exception is raised before any pixel is processed, so a failed call
never leaves partially written outputs behind.
"""

from __future__ import annotations


class FlowMatchError(ValueError):
    """Invalid argument passed to a flow-matching call."""


class ConfigurationError(FlowMatchError):
    """Bad operator attribute (kernel size, threshold, backend)."""


class ShapeError(FlowMatchError):
    """Input array with the wrong rank, dims, or point layout."""


__all__ = [
    "FlowMatchError",
    "ConfigurationError",
    "ShapeError",
]
