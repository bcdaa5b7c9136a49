"""Per-batch camera records used for back-projection.

A :class:`CameraBatch` carries, for every batch element, the inverse
intrinsic matrix (pixel ``(u, v, 1)`` -> camera ray) and the camera-to-world
pose (3x4, translation in the last column).

Legacy metadata layout (flat, per batch element, ``(N, 1, 1, >=42)``)::

    [0:9]    intrinsic matrix K           (unused here)
    [9:18]   inverse intrinsic matrix     (row-major)
    [18:30]  world-to-camera pose 3x4     (unused here)
    [30:42]  camera-to-world pose 3x4     (row-major)
    [42:48]  voxel step / voxel min       (unused here)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np

from fast_flow.matching.errors import ShapeError

META_INTRINSICS = slice(0, 9)
META_INV_INTRINSICS = slice(9, 18)
META_WORLD_TO_CAM = slice(18, 30)
META_CAM_TO_WORLD = slice(30, 42)
META_MIN_LENGTH = 42
META_FULL_LENGTH = 48


def _to_numpy(x: Any) -> np.ndarray:
    """Convert numpy arrays or torch tensors to a numpy array."""
    if hasattr(x, "detach"):
        x = x.detach().cpu().numpy()
    return np.asarray(x)


@dataclass(frozen=True)
class CameraBatch:
    """Inverse intrinsics and camera-to-world pose for each batch element.

    Attributes:
        inv_intrinsics: (N, 3, 3) inverse intrinsic matrices.
        cam_to_world: (N, 3, 4) camera-to-world transforms
            (p_world = R @ p_cam + t).
    """

    inv_intrinsics: Any
    cam_to_world: Any

    def __post_init__(self) -> None:
        inv_shape = tuple(self.inv_intrinsics.shape)
        pose_shape = tuple(self.cam_to_world.shape)
        if len(inv_shape) != 3 or inv_shape[1:] != (3, 3):
            raise ShapeError(f"inv_intrinsics must have shape (N, 3, 3), got {inv_shape}")
        if len(pose_shape) != 3 or pose_shape[1:] != (3, 4):
            raise ShapeError(f"cam_to_world must have shape (N, 3, 4), got {pose_shape}")
        if inv_shape[0] != pose_shape[0]:
            raise ShapeError(
                f"camera batch mismatch: inv_intrinsics={inv_shape[0]}, "
                f"cam_to_world={pose_shape[0]}"
            )

    @property
    def batch_size(self) -> int:
        return int(self.inv_intrinsics.shape[0])

    def select(self, index: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(inv_K, T_cw)`` for one batch element as numpy arrays."""
        return (
            _to_numpy(self.inv_intrinsics[index]),
            _to_numpy(self.cam_to_world[index]),
        )

    # -- constructors -------------------------------------------------------

    @classmethod
    def from_meta_block(cls, meta: Any) -> "CameraBatch":
        """Parse the legacy flat metadata block ``(N, 1, 1, >=42)``."""
        block = _to_numpy(meta)
        if block.ndim != 4:
            raise ShapeError(f"meta data must be 4-dimensional, got shape {block.shape}")
        if block.shape[3] < META_MIN_LENGTH:
            raise ShapeError(
                f"meta data needs at least {META_MIN_LENGTH} values per batch element, "
                f"got {block.shape[3]}"
            )
        # Only the first spatial entry is read per batch element.
        flat = block[:, 0, 0, :]
        n = flat.shape[0]
        inv_k = flat[:, META_INV_INTRINSICS].reshape(n, 3, 3).copy()
        pose = flat[:, META_CAM_TO_WORLD].reshape(n, 3, 4).copy()
        return cls(inv_intrinsics=inv_k, cam_to_world=pose)

    @classmethod
    def from_intrinsics(
        cls,
        K: Any,
        T_cw: Any,
        batch_size: Optional[int] = None,
    ) -> "CameraBatch":
        """Build from intrinsics ``K`` and camera-to-world poses ``T_cw``.

        Args:
            K: (3, 3) or (N, 3, 3) intrinsic matrices.
            T_cw: (3, 4), (4, 4), (N, 3, 4) or (N, 4, 4) camera-to-world poses.
            batch_size: broadcast single matrices to this many elements.
        """
        K = _to_numpy(K).astype(np.float64)
        T_cw = _to_numpy(T_cw).astype(np.float64)
        if K.ndim == 2:
            K = K[None]
        if T_cw.ndim == 2:
            T_cw = T_cw[None]
        if K.shape[1:] != (3, 3):
            raise ShapeError(f"K must have shape (3, 3) or (N, 3, 3), got {K.shape}")
        if T_cw.shape[1:] not in ((3, 4), (4, 4)):
            raise ShapeError(f"T_cw must be 3x4 or 4x4 per element, got {T_cw.shape}")
        n = batch_size or max(K.shape[0], T_cw.shape[0])
        if K.shape[0] not in (1, n) or T_cw.shape[0] not in (1, n):
            raise ShapeError(
                f"cannot broadcast K={K.shape} and T_cw={T_cw.shape} to batch size {n}"
            )
        inv_k = np.broadcast_to(np.linalg.inv(K), (n, 3, 3)).copy()
        pose = np.broadcast_to(T_cw[:, :3, :], (n, 3, 4)).copy()
        return cls(inv_intrinsics=inv_k, cam_to_world=pose)

    @classmethod
    def single(cls, inv_K: Any, T_cw: Any) -> "CameraBatch":
        """One camera given its inverse intrinsics and camera-to-world pose."""
        inv_K = _to_numpy(inv_K)
        T_cw = _to_numpy(T_cw)
        return cls(inv_intrinsics=inv_K[None, :3, :3], cam_to_world=T_cw[None, :3, :4])

    def to_meta_block(self, dtype=np.float32) -> np.ndarray:
        """Write the legacy ``(N, 1, 1, 48)`` block (K, world-to-camera filled in)."""
        inv_k = _to_numpy(self.inv_intrinsics).astype(np.float64)
        pose = _to_numpy(self.cam_to_world).astype(np.float64)
        n = inv_k.shape[0]
        block = np.zeros((n, 1, 1, META_FULL_LENGTH), dtype=np.float64)
        for i in range(n):
            T_cw = np.eye(4, dtype=np.float64)
            T_cw[:3, :] = pose[i]
            block[i, 0, 0, META_INTRINSICS] = np.linalg.inv(inv_k[i]).ravel()
            block[i, 0, 0, META_INV_INTRINSICS] = inv_k[i].ravel()
            block[i, 0, 0, META_WORLD_TO_CAM] = np.linalg.inv(T_cw)[:3, :].ravel()
            block[i, 0, 0, META_CAM_TO_WORLD] = pose[i].ravel()
        return block.astype(dtype)
