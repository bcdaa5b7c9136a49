"""Shared fixtures and synthetic data factories for Fast-Flow tests."""

from __future__ import annotations

import math
from typing import Dict, Optional

import numpy as np
import pytest

from fast_flow.data.calibration.camera_model import CameraBatch
from fast_flow.data.transforms.projection import backproject_depth


# ---------------------------------------------------------------------------
# Synthetic data factories
# ---------------------------------------------------------------------------

def make_K(
    fx: float = 500.0,
    fy: float = 500.0,
    cx: float = 32.0,
    cy: float = 32.0,
) -> np.ndarray:
    """3x3 camera intrinsics matrix."""
    return np.array(
        [[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64
    )


def make_pose(
    tx: float = 0.0,
    ty: float = 0.0,
    tz: float = 0.0,
    yaw: float = 0.0,
) -> np.ndarray:
    """4x4 camera->world transform with optional yaw rotation (radians)."""
    c, s = math.cos(yaw), math.sin(yaw)
    T = np.eye(4, dtype=np.float64)
    T[0, 0] = c
    T[0, 1] = -s
    T[1, 0] = s
    T[1, 1] = c
    T[0, 3] = tx
    T[1, 3] = ty
    T[2, 3] = tz
    return T


def identity_cameras(n: int = 1) -> CameraBatch:
    """K_inv = I, T_cw = [I | 0]: pixel (h, w) at depth z -> (z*w, z*h, z)."""
    inv_k = np.tile(np.eye(3, dtype=np.float64), (n, 1, 1))
    pose = np.tile(np.eye(4, dtype=np.float64)[:3], (n, 1, 1))
    return CameraBatch(inv_intrinsics=inv_k, cam_to_world=pose)


def make_depth(n: int = 1, h: int = 3, w: int = 3, value: float = 1.0, dtype=np.float64) -> np.ndarray:
    """Constant (N, H, W, 1) depth map."""
    return np.full((n, h, w, 1), value, dtype=dtype)


def nan_points(n: int = 1, h: int = 3, w: int = 3, dtype=np.float64) -> np.ndarray:
    """(N, H, W, 3) point cloud with every point invalid."""
    return np.full((n, h, w, 3), np.nan, dtype=dtype)


def grid_points(n: int = 1, h: int = 3, w: int = 3, z: float = 1.0) -> np.ndarray:
    """Points seen by :func:`identity_cameras` at constant depth *z*."""
    v, u = np.meshgrid(np.arange(h, dtype=np.float64), np.arange(w, dtype=np.float64), indexing="ij")
    pts = np.stack([z * u, z * v, np.full((h, w), z)], axis=-1)
    return np.broadcast_to(pts, (n, h, w, 3)).copy()


def make_data(n: int = 1, h: int = 3, w: int = 3, c: int = 2, seed: int = 0, dtype=np.float64) -> np.ndarray:
    """Random nonzero (N, H, W, C) data."""
    rng = np.random.RandomState(seed)
    return (rng.uniform(1.0, 2.0, size=(n, h, w, c))).astype(dtype)


def make_scene(
    h: int = 12,
    w: int = 16,
    c: int = 3,
    shift: float = 0.02,
    dropout: float = 0.1,
    seed: int = 0,
    dtype=np.float32,
) -> Dict[str, object]:
    """Two views of a slanted plane; the current camera moves ``shift`` along x."""
    rng = np.random.RandomState(seed)
    K = make_K(fx=0.8 * w, fy=0.8 * w, cx=w / 2.0, cy=h / 2.0)
    rows = np.arange(h, dtype=np.float64)[:, None]
    depth = np.broadcast_to(2.0 + 0.01 * rows, (h, w)).copy()

    prev_depth = depth.copy()
    prev_depth[rng.rand(h, w) < dropout] = 0.0
    cur_depth = depth.copy()
    cur_depth[rng.rand(h, w) < dropout] = 0.0

    cams_prev = CameraBatch.from_intrinsics(K, make_pose())
    cams_cur = CameraBatch.from_intrinsics(K, make_pose(tx=shift))
    return {
        "data": rng.standard_normal((1, h, w, c)).astype(dtype),
        "points_prev": backproject_depth(prev_depth[None], cams_prev).astype(dtype),
        "depth": cur_depth[None, ..., None].astype(dtype),
        "cameras": cams_cur,
        "grad": rng.standard_normal((1, h, w, c)).astype(dtype),
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def scene():
    return make_scene()
