"""Precision tests for depth back-projection.

Every test hand-computes the expected world coordinates and compares them
against both ``backproject_depth`` and the points written by
``flow_forward``.

Back-projection math:
    ray = K_inv @ [u, v, 1]^T
    p_cam = ray * depth
    p_world = T_cw @ [p_cam; 1]

For K = [[fx, 0, cx], [0, fy, cy], [0, 0, 1]]:
    K_inv @ [u, v, 1] = [(u-cx)/fx,  (v-cy)/fy,  1]
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from fast_flow.data.calibration.camera_model import CameraBatch
from fast_flow.data.transforms.projection import backproject_depth
from fast_flow.matching.errors import ShapeError
from fast_flow.matching.flow_ops import flow_forward

from conftest import make_K, make_pose, nan_points


# ── Helpers ──────────────────────────────────────────────────────────────

def _expected_p_world(u: int, v: int, depth: float, K: np.ndarray, T_cw: np.ndarray) -> np.ndarray:
    fx, fy, cx, cy = K[0, 0], K[1, 1], K[0, 2], K[1, 2]
    p_cam = np.array([depth * (u - cx) / fx, depth * (v - cy) / fy, depth, 1.0])
    return (T_cw @ p_cam)[:3]


def _forward_points(depth: np.ndarray, cams: CameraBatch) -> np.ndarray:
    n, h, w = depth.shape
    points, _ = flow_forward(
        np.zeros((n, h, w, 1)), nan_points(n, h, w), depth[..., None], cams, 0, 0.1
    )
    return points


# ── Single-pixel exact tests ────────────────────────────────────────────

class TestSinglePixelExact:

    def test_principal_point_on_axis(self):
        K = make_K(fx=500.0, fy=500.0, cx=4.0, cy=3.0)
        depth = np.zeros((1, 6, 8))
        depth[0, 3, 4] = 2.5
        cams = CameraBatch.from_intrinsics(K, make_pose())
        pts = backproject_depth(depth, cams)
        np.testing.assert_allclose(pts[0, 3, 4], [0.0, 0.0, 2.5], atol=1e-12)
        assert np.isnan(pts[0, 0, 0]).all()

    def test_off_center_pixel(self):
        K = make_K(fx=400.0, fy=300.0, cx=4.0, cy=3.0)
        depth = np.zeros((1, 6, 8))
        depth[0, 5, 1] = 4.0
        cams = CameraBatch.from_intrinsics(K, make_pose())
        pts = backproject_depth(depth, cams)
        expected = [4.0 * (1 - 4.0) / 400.0, 4.0 * (5 - 3.0) / 300.0, 4.0]
        np.testing.assert_allclose(pts[0, 5, 1], expected, atol=1e-12)

    def test_translated_camera(self):
        K = make_K(fx=100.0, fy=100.0, cx=2.0, cy=2.0)
        T = make_pose(tx=1.0, ty=-2.0, tz=3.0)
        depth = np.full((1, 4, 4), 1.5)
        pts = backproject_depth(depth, CameraBatch.from_intrinsics(K, T))
        np.testing.assert_allclose(pts[0, 1, 3], _expected_p_world(3, 1, 1.5, K, T), atol=1e-12)

    def test_rotated_camera(self):
        K = make_K(fx=50.0, fy=60.0, cx=3.0, cy=2.0)
        T = make_pose(tx=0.2, yaw=math.pi / 6)
        depth = np.full((1, 5, 6), 3.0)
        pts = backproject_depth(depth, CameraBatch.from_intrinsics(K, T))
        for v, u in [(0, 0), (4, 5), (2, 3)]:
            np.testing.assert_allclose(pts[0, v, u], _expected_p_world(u, v, 3.0, K, T), atol=1e-12)


class TestMatchesForwardPoints:

    @pytest.mark.parametrize("yaw", [0.0, 0.4])
    def test_forward_points_agree(self, yaw):
        K = make_K(fx=20.0, fy=22.0, cx=3.5, cy=2.5)
        T = make_pose(tx=0.3, ty=0.1, tz=-0.2, yaw=yaw)
        rng = np.random.RandomState(3)
        depth = rng.uniform(0.5, 4.0, size=(2, 5, 7))
        depth[0, 1, 1] = 0.0
        depth[1, 4, 6] = -1.0
        cams = CameraBatch.from_intrinsics(K, T, batch_size=2)

        expected = backproject_depth(depth, cams)
        got = _forward_points(depth, cams)
        np.testing.assert_array_equal(np.isnan(expected), np.isnan(got))
        np.testing.assert_allclose(got, expected, rtol=1e-12, atol=1e-12)


class TestInputShapes:

    def test_accepts_channel_axis(self):
        cams = CameraBatch.from_intrinsics(make_K(), make_pose())
        a = backproject_depth(np.ones((1, 2, 3, 1)), cams)
        b = backproject_depth(np.ones((1, 2, 3)), cams)
        np.testing.assert_array_equal(a, b)

    def test_rejects_multichannel(self):
        cams = CameraBatch.from_intrinsics(make_K(), make_pose())
        with pytest.raises(ShapeError):
            backproject_depth(np.ones((1, 2, 3, 2)), cams)

    def test_rejects_batch_mismatch(self):
        cams = CameraBatch.from_intrinsics(make_K(), make_pose())
        with pytest.raises(ShapeError, match="cameras cover"):
            backproject_depth(np.ones((2, 2, 3)), cams)
