"""Per-lane matching kernels.

A *lane* is one pixel of the flattened ``(N, H, W)`` index space. Every
function here takes a 1-D index array of lanes and computes the result for
each of them independently, using only elementwise operations of the array
namespace ``ops``. Running the kernels one lane at a time, on a chunk of
lanes, or on all lanes at once yields the same values bit for bit.

Back-projection math (per pixel ``(u=w, v=h)`` with depth ``z > 0``)::

    ray     = K_inv @ [u, v, 1]^T
    p_cam   = z * ray
    p_world = R_cw @ p_cam + t_cw

Window scan: columns ``x`` in the outer loop, rows ``y`` in the inner loop,
the first strictly smaller distance wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fast_flow.matching.backends import ArrayOps

# Initial best distance. Candidates at or beyond it are never selected.
MATCH_SENTINEL = 1000.0


@dataclass(frozen=True)
class FlowGeometry:
    """Image layout and matching attributes shared by one call."""

    batch: int
    height: int
    width: int
    kernel_size: int
    threshold: float

    @property
    def num_pixels(self) -> int:
        return self.batch * self.height * self.width


@dataclass(frozen=True)
class ForwardInputs:
    """Flattened, backend-native forward inputs."""

    depth: Any  # (P,)
    inv_intrinsics: Any  # (N, 3, 3)
    cam_to_world: Any  # (N, 3, 4)
    prev_xyz: Any  # (P, 3), invalid rows zero-filled
    prev_valid: Any  # (P,) bool


@dataclass(frozen=True)
class BackwardInputs:
    """Flattened, backend-native backward inputs."""

    cur_xyz: Any  # (P, 3)
    cur_valid: Any  # (P,) bool
    prev_xyz: Any  # (P, 3), invalid rows zero-filled
    prev_valid: Any  # (P,) bool


@dataclass
class LaneResult:
    """Match outcome for the lanes that carried a valid current point.

    ``src`` is the flat index of the matched previous pixel and is only
    meaningful where ``matched`` is True.
    """

    lanes: Any
    src: Any
    fx: Any
    fy: Any
    dmin: Any
    matched: Any
    points: Any = None  # (L, 3), forward only


def split_lanes(lanes: Any, geom: FlowGeometry):
    """Flat pixel index -> (n, h, w)."""
    plane = geom.height * geom.width
    n = lanes // plane
    rem = lanes - n * plane
    h = rem // geom.width
    w = rem - h * geom.width
    return n, h, w


def backproject_lanes(ops: ArrayOps, n, h, w, z, inv_intrinsics, cam_to_world, dtype):
    """World-space point for each lane; returns three (L,) coordinate arrays."""
    u = ops.to_dtype(w, dtype)
    v = ops.to_dtype(h, dtype)

    k = inv_intrinsics[n]
    rx = (k[:, 0, 0] * u + k[:, 0, 1] * v) + k[:, 0, 2]
    ry = (k[:, 1, 0] * u + k[:, 1, 1] * v) + k[:, 1, 2]
    rz = (k[:, 2, 0] * u + k[:, 2, 1] * v) + k[:, 2, 2]

    X = z * rx
    Y = z * ry
    Z = z * rz

    T = cam_to_world[n]
    x1 = ((T[:, 0, 0] * X + T[:, 0, 1] * Y) + T[:, 0, 2] * Z) + T[:, 0, 3]
    y1 = ((T[:, 1, 0] * X + T[:, 1, 1] * Y) + T[:, 1, 2] * Z) + T[:, 1, 3]
    z1 = ((T[:, 2, 0] * X + T[:, 2, 1] * Y) + T[:, 2, 2] * Z) + T[:, 2, 3]
    return x1, y1, z1


def search_window_lanes(
    ops: ArrayOps,
    n,
    h,
    w,
    px,
    py,
    pz,
    prev_xyz,
    prev_valid,
    geom: FlowGeometry,
    dtype,
):
    """Nearest valid previous point inside the (2K+1)^2 window of each lane.

    Returns ``(src, fx, fy, dmin, matched)``. Lanes without a valid
    candidate keep ``fx = fy = -1`` and ``dmin = MATCH_SENTINEL``.
    """
    K = geom.kernel_size
    H, W = geom.height, geom.width
    count = px.shape[0]

    dmin = ops.full(count, MATCH_SENTINEL, dtype)
    fx = ops.full(count, -1, ops.index_dtype)
    fy = ops.full(count, -1, ops.index_dtype)

    for dx in range(-K, K + 1):
        x = w + dx
        in_x = (x >= 0) & (x < W)
        xc = ops.clip(x, 0, W - 1)
        for dy in range(-K, K + 1):
            y = h + dy
            inside = in_x & (y >= 0) & (y < H)
            yc = ops.clip(y, 0, H - 1)

            idx = (n * H + yc) * W + xc
            candidate = inside & prev_valid[idx]
            q = prev_xyz[idx]

            ex = px - q[:, 0]
            ey = py - q[:, 1]
            ez = pz - q[:, 2]
            dis = ops.sqrt((ex * ex + ey * ey) + ez * ez)

            better = candidate & (dis < dmin)
            dmin = ops.where(better, dis, dmin)
            fx = ops.where(better, x, fx)
            fy = ops.where(better, y, fy)

    matched = (dmin < ops.scalar(geom.threshold, dtype)) & (fx >= 0)
    src = (n * H + ops.clip(fy, 0, H - 1)) * W + ops.clip(fx, 0, W - 1)
    return src, fx, fy, dmin, matched


def forward_lanes(ops: ArrayOps, lanes, inputs: ForwardInputs, geom: FlowGeometry, dtype) -> LaneResult:
    """Back-project and match every lane with positive depth."""
    z = inputs.depth[lanes]
    keep = z > 0
    lanes = lanes[keep]
    z = z[keep]
    n, h, w = split_lanes(lanes, geom)

    px, py, pz = backproject_lanes(
        ops, n, h, w, z, inputs.inv_intrinsics, inputs.cam_to_world, dtype
    )
    src, fx, fy, dmin, matched = search_window_lanes(
        ops, n, h, w, px, py, pz, inputs.prev_xyz, inputs.prev_valid, geom, dtype
    )
    return LaneResult(
        lanes=lanes,
        src=src,
        fx=fx,
        fy=fy,
        dmin=dmin,
        matched=matched,
        points=ops.stack([px, py, pz]),
    )


def backward_lanes(ops: ArrayOps, lanes, inputs: BackwardInputs, geom: FlowGeometry, dtype) -> LaneResult:
    """Recompute the forward match for every lane with a valid current point."""
    lanes = lanes[inputs.cur_valid[lanes]]
    n, h, w = split_lanes(lanes, geom)

    p = inputs.cur_xyz[lanes]
    src, fx, fy, dmin, matched = search_window_lanes(
        ops, n, h, w, p[:, 0], p[:, 1], p[:, 2], inputs.prev_xyz, inputs.prev_valid, geom, dtype
    )
    return LaneResult(lanes=lanes, src=src, fx=fx, fy=fy, dmin=dmin, matched=matched)
