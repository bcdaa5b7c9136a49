"""Point cloud schema shared by the forward and backward matchers.

Coordinate conventions
----------------------
- ``xyz``   : (N, H, W, 3) world-space coordinates, one point per pixel.
- ``valid`` : (N, H, W) bool, True where the pixel carries a point.

On the array boundary an invalid point is encoded as a NaN triple; inside
the library validity is always read from ``valid``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple

from fast_flow.matching.backends import get_ops
from fast_flow.matching.errors import ShapeError


@dataclass(frozen=True)
class PointCloud:
    """Per-pixel world points with an explicit validity mask."""

    xyz: Any
    valid: Any

    def __post_init__(self) -> None:
        shape = tuple(self.xyz.shape)
        if len(shape) != 4 or shape[3] != 3:
            raise ShapeError(f"points must have shape (N, H, W, 3), got {shape}")
        if tuple(self.valid.shape) != shape[:3]:
            raise ShapeError(
                f"valid mask shape {tuple(self.valid.shape)} does not match points {shape[:3]}"
            )

    @property
    def shape(self) -> Tuple[int, int, int]:
        n, h, w, _ = self.xyz.shape
        return int(n), int(h), int(w)

    @classmethod
    def from_array(cls, xyz: Any) -> "PointCloud":
        """Wrap a NaN-encoded (N, H, W, 3) array.

        A point with a NaN in any channel is treated as invalid.
        """
        if xyz.ndim != 4:
            raise ShapeError(f"points must be 4-dimensional, got shape {tuple(xyz.shape)}")
        ops = get_ops(xyz)
        valid = ~ops.isnan(xyz).any(-1)
        return cls(xyz=xyz, valid=valid)

    def filled(self, value: float = 0.0) -> Any:
        """Coordinates with invalid points replaced by *value*."""
        ops = get_ops(self.xyz)
        fill = ops.scalar(value, self.xyz.dtype)
        return ops.where(self.valid[..., None], self.xyz, fill)

    def num_valid(self) -> int:
        return int(self.valid.sum())
