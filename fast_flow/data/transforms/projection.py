"""Back-project depth maps into world-space point clouds."""

from __future__ import annotations

import numpy as np

from fast_flow.data.calibration.camera_model import CameraBatch
from fast_flow.matching.errors import ShapeError


def backproject_depth(depth: np.ndarray, cameras: CameraBatch) -> np.ndarray:
    """Back-project every pixel of a depth batch into world space.

    Matrix form of the per-pixel math used by the matchers::

        ray     = K_inv @ [u, v, 1]^T
        p_cam   = ray * depth
        p_world = T_cw @ [p_cam; 1]

    Args:
        depth: (N, H, W, 1) or (N, H, W) depth; ``<= 0`` or NaN is invalid.
        cameras: per-batch inverse intrinsics and camera-to-world poses.

    Returns:
        (N, H, W, 3) float64 world points, NaN where depth is invalid.
    """
    depth = np.asarray(depth)
    if depth.ndim == 4:
        if depth.shape[3] != 1:
            raise ShapeError(f"depth must have a single channel, got shape {depth.shape}")
        depth = depth[..., 0]
    if depth.ndim != 3:
        raise ShapeError(f"depth must be (N, H, W) or (N, H, W, 1), got shape {depth.shape}")
    n, h, w = depth.shape
    if cameras.batch_size != n:
        raise ShapeError(f"cameras cover {cameras.batch_size} batch elements, depth has {n}")

    v, u = np.meshgrid(np.arange(h, dtype=np.float64), np.arange(w, dtype=np.float64), indexing="ij")
    uv1 = np.stack([u.ravel(), v.ravel(), np.ones(h * w, dtype=np.float64)], axis=0)  # (3, HW)

    out = np.full((n, h * w, 3), np.nan, dtype=np.float64)
    for i in range(n):
        inv_K, T_cw = cameras.select(i)
        d = depth[i].reshape(-1).astype(np.float64)
        valid = d > 0.0

        rays = inv_K.astype(np.float64) @ uv1[:, valid]
        p_cam = rays * d[valid]  # (3, M)
        p_world = T_cw[:, :3].astype(np.float64) @ p_cam + T_cw[:, 3:4].astype(np.float64)
        out[i, valid] = p_world.T
    return out.reshape(n, h, w, 3)
