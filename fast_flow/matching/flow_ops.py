"""Forward and backward flow matching.

``flow_forward`` back-projects every pixel of the current frame into world
space and copies, for each one, the data vector of the nearest valid
previous-frame point inside a ``(2K+1) x (2K+1)`` pixel window whose
distance is strictly below ``threshold``.

``flow_backward`` recomputes the same matches from the two point clouds and
scatter-adds the upstream gradient onto the source pixels that the forward
pass read from.

Array layout is ``(batch, row, column, channel)`` throughout. Both
functions validate every argument before touching a pixel, and both return
freshly allocated outputs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

import numpy as np

from fast_flow.data.calibration.camera_model import CameraBatch
from fast_flow.data.schema import PointCloud
from fast_flow.matching.backends import ExecutionStrategy, make_strategy
from fast_flow.matching.errors import ConfigurationError, ShapeError
from fast_flow.matching.kernel import (
    MATCH_SENTINEL,
    BackwardInputs,
    FlowGeometry,
    ForwardInputs,
    backward_lanes,
    forward_lanes,
)

logger = logging.getLogger(__name__)

Backend = Union[str, ExecutionStrategy]


@dataclass(frozen=True)
class MatchResult:
    """Per-pixel routing of one call.

    Attributes:
        fx: (N, H, W) column of the matched previous pixel, -1 if none.
        fy: (N, H, W) row of the matched previous pixel, -1 if none.
        dmin: (N, H, W) smallest candidate distance (sentinel if none).
        matched: (N, H, W) bool, True where data was copied.
    """

    fx: Any
    fy: Any
    dmin: Any
    matched: Any

    def num_matched(self) -> int:
        return int(self.matched.sum())


# =============================================================================
# Validation
# =============================================================================

def check_attributes(kernel_size: int, threshold: float) -> None:
    """Raise ConfigurationError for negative kernel size or threshold."""
    if kernel_size < 0:
        raise ConfigurationError(f"Need kernel_size >= 0, got {kernel_size}")
    if threshold < 0:
        raise ConfigurationError(f"Need threshold >= 0, got {threshold}")


def _match_threshold(threshold: float) -> float:
    # The threshold attribute is single precision; float64 distances are
    # compared against the rounded value.
    return float(np.float32(threshold))


def _check_rank(name: str, x: Any) -> None:
    if x.ndim != 4:
        raise ShapeError(f"{name} must be 4-dimensional, got shape {tuple(x.shape)}")


def _check_points(name: str, x: Any, nhw: Tuple[int, ...]) -> None:
    if tuple(x.shape) != nhw + (3,):
        raise ShapeError(f"{name} must have shape {nhw + (3,)}, got {tuple(x.shape)}")


def _as_cameras(cameras: Any, batch: int) -> CameraBatch:
    if not isinstance(cameras, CameraBatch):
        _check_rank("meta data", cameras)
        cameras = CameraBatch.from_meta_block(cameras)
    if cameras.batch_size != batch:
        raise ShapeError(
            f"cameras cover {cameras.batch_size} batch elements, data has {batch}"
        )
    return cameras


# =============================================================================
# Forward
# =============================================================================

def flow_forward(
    data: Any,
    points_prev: Any,
    depth: Any,
    cameras: Any,
    kernel_size: int,
    threshold: float,
    backend: Backend = "sequential",
    num_workers: Optional[int] = None,
    chunk_size: int = 4096,
    device: Optional[str] = None,
    return_matches: bool = False,
):
    """Back-project the frame and carry previous-frame data forward.

    Args:
        data: (N, H, W, C) per-pixel data to copy from (float32/float64).
        points_prev: (N, H, W, 3) previous world points, NaN where invalid.
        depth: (N, H, W, 1) depth; ``<= 0`` marks invalid pixels.
        cameras: :class:`CameraBatch`, or a legacy ``(N, 1, 1, >=42)``
            metadata block.
        kernel_size: half-width K of the search window, ``>= 0``.
        threshold: maximum (exclusive) 3D match distance, ``>= 0``.
        backend: ``"sequential"``, ``"threaded"``, ``"torch"`` or an
            :class:`ExecutionStrategy` instance.
        return_matches: also return the :class:`MatchResult`.

    Returns:
        ``(points_cur, data_out)`` or ``(points_cur, data_out, matches)``.
        numpy arrays for the numpy backends, tensors for ``torch``.
    """
    check_attributes(kernel_size, threshold)
    _check_rank("data", data)
    _check_rank("points", points_prev)
    _check_rank("depth", depth)
    if not isinstance(cameras, CameraBatch):
        _check_rank("meta data", cameras)

    n, h, w, c = (int(s) for s in data.shape)
    _check_points("points", points_prev, (n, h, w))
    if tuple(depth.shape) != (n, h, w, 1):
        raise ShapeError(f"depth must have shape {(n, h, w, 1)}, got {tuple(depth.shape)}")
    cameras = _as_cameras(cameras, n)

    strategy = make_strategy(backend, num_workers=num_workers, chunk_size=chunk_size, device=device)
    ops = strategy.ops
    dtype = ops.float_dtype(data)
    geom = FlowGeometry(
        batch=n, height=h, width=w, kernel_size=int(kernel_size), threshold=_match_threshold(threshold)
    )

    data_flat = ops.asarray(data, dtype).reshape(geom.num_pixels, c)
    prev = PointCloud.from_array(ops.asarray(points_prev, dtype))
    inputs = ForwardInputs(
        depth=ops.asarray(depth, dtype).reshape(-1),
        inv_intrinsics=ops.asarray(cameras.inv_intrinsics, dtype),
        cam_to_world=ops.asarray(cameras.cam_to_world, dtype),
        prev_xyz=prev.filled(0.0).reshape(geom.num_pixels, 3),
        prev_valid=prev.valid.reshape(-1),
    )

    points_out = ops.full((geom.num_pixels, 3), float("nan"), dtype)
    data_out = ops.zeros((geom.num_pixels, c), dtype)
    matches = _empty_matches(ops, geom, dtype) if return_matches else None

    def kernel(lanes):
        return forward_lanes(ops, lanes, inputs, geom, dtype)

    num_valid = 0
    num_matched = 0
    for res in strategy.map_lanes(kernel, geom.num_pixels, row_size=geom.width):
        points_out[res.lanes] = res.points
        hit = res.lanes[res.matched]
        data_out[hit] = data_flat[res.src[res.matched]]
        if matches is not None:
            _record_matches(matches, res)
        num_valid += int(res.lanes.shape[0])
        num_matched += int(hit.shape[0])

    logger.debug(
        "flow_forward: shape=%s backend=%s K=%d threshold=%g prev_valid=%d valid=%d matched=%d",
        (n, h, w, c), strategy.name, geom.kernel_size, geom.threshold, prev.num_valid(), num_valid,
        num_matched,
    )

    points_cur = points_out.reshape(n, h, w, 3)
    data_out = data_out.reshape(n, h, w, c)
    if matches is not None:
        return points_cur, data_out, _finish_matches(matches, geom)
    return points_cur, data_out


# =============================================================================
# Backward
# =============================================================================

def flow_backward(
    points_prev: Any,
    points_cur: Any,
    grad: Any,
    kernel_size: int,
    threshold: float,
    backend: Backend = "sequential",
    num_workers: Optional[int] = None,
    chunk_size: int = 4096,
    device: Optional[str] = None,
    return_matches: bool = False,
):
    """Route ``grad`` (w.r.t. the forward ``data_out``) back onto ``data``.

    The matching is recomputed from ``points_prev``/``points_cur`` with the
    same window, scan order and threshold as :func:`flow_forward`, so
    ``kernel_size`` and ``threshold`` must equal the forward call's.

    Returns:
        ``grad_data`` with the shape of ``grad`` (optionally with the
        :class:`MatchResult`).
    """
    check_attributes(kernel_size, threshold)
    _check_rank("bottom points", points_prev)
    _check_rank("top points", points_cur)
    _check_rank("grad", grad)

    n, h, w, c = (int(s) for s in grad.shape)
    _check_points("bottom points", points_prev, (n, h, w))
    _check_points("top points", points_cur, (n, h, w))

    strategy = make_strategy(backend, num_workers=num_workers, chunk_size=chunk_size, device=device)
    ops = strategy.ops
    dtype = ops.float_dtype(grad)
    geom = FlowGeometry(
        batch=n, height=h, width=w, kernel_size=int(kernel_size), threshold=_match_threshold(threshold)
    )

    grad_flat = ops.asarray(grad, dtype).reshape(geom.num_pixels, c)
    prev = PointCloud.from_array(ops.asarray(points_prev, dtype))
    cur = PointCloud.from_array(ops.asarray(points_cur, dtype))
    inputs = BackwardInputs(
        cur_xyz=cur.filled(0.0).reshape(geom.num_pixels, 3),
        cur_valid=cur.valid.reshape(-1),
        prev_xyz=prev.filled(0.0).reshape(geom.num_pixels, 3),
        prev_valid=prev.valid.reshape(-1),
    )

    grad_data = ops.zeros((geom.num_pixels, c), dtype)
    matches = _empty_matches(ops, geom, dtype) if return_matches else None

    def kernel(lanes):
        return backward_lanes(ops, lanes, inputs, geom, dtype)

    num_routed = 0
    for res in strategy.map_lanes(kernel, geom.num_pixels, row_size=geom.width):
        hit = res.lanes[res.matched]
        ops.scatter_add(grad_data, res.src[res.matched], grad_flat[hit])
        if matches is not None:
            _record_matches(matches, res)
        num_routed += int(hit.shape[0])

    logger.debug(
        "flow_backward: shape=%s backend=%s K=%d threshold=%g cur_valid=%d routed=%d",
        (n, h, w, c), strategy.name, geom.kernel_size, geom.threshold, cur.num_valid(), num_routed,
    )

    grad_data = grad_data.reshape(n, h, w, c)
    if matches is not None:
        return grad_data, _finish_matches(matches, geom)
    return grad_data


# =============================================================================
# Match bookkeeping
# =============================================================================

def _empty_matches(ops, geom: FlowGeometry, dtype) -> dict:
    return {
        "fx": ops.full(geom.num_pixels, -1, ops.index_dtype),
        "fy": ops.full(geom.num_pixels, -1, ops.index_dtype),
        "dmin": ops.full(geom.num_pixels, MATCH_SENTINEL, dtype),
        "matched": ops.zeros(geom.num_pixels, ops.bool_dtype),
    }


def _record_matches(matches: dict, res) -> None:
    hit = res.lanes[res.matched]
    matches["fx"][hit] = res.fx[res.matched]
    matches["fy"][hit] = res.fy[res.matched]
    matches["dmin"][res.lanes] = res.dmin
    matches["matched"][hit] = True


def _finish_matches(matches: dict, geom: FlowGeometry) -> MatchResult:
    shape = (geom.batch, geom.height, geom.width)
    return MatchResult(
        fx=matches["fx"].reshape(shape),
        fy=matches["fy"].reshape(shape),
        dmin=matches["dmin"].reshape(shape),
        matched=matches["matched"].reshape(shape),
    )
