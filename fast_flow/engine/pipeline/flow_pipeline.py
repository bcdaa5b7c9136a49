"""Fast-Flow frame-sequence pipeline.

Carries the state between calls that the matchers themselves never keep:

- frame t is back-projected with its own depth and camera;
- each pixel picks up the data of the previous frame (t-1) at the nearest
  previous world point;
- frame t's points and data become the previous state for frame t+1.

The first frame (or the first after :meth:`FlowSequencePipeline.reset`) has
no previous points, so every output data vector is zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

import numpy as np

from fast_flow.data.calibration.camera_model import CameraBatch
from fast_flow.engine.config.flow_config import FlowConfig
from fast_flow.matching.backends import NumpyOps
from fast_flow.matching.errors import ShapeError
from fast_flow.matching.flow_ops import MatchResult
from fast_flow.matching.matcher import FlowMatcher

logger = logging.getLogger(__name__)

_NUMPY = NumpyOps()


@dataclass(frozen=True)
class FlowFrameInput:
    """Per-frame inputs.

    Attributes:
        frame_idx: Frame index.
        depth: (H, W), (N, H, W) or (N, H, W, 1) depth; ``<= 0`` is invalid.
        cameras: Inverse intrinsics + camera-to-world pose per batch element.
        data: (H, W, C) or (N, H, W, C) per-pixel data of this frame, carried
            into the next frame.
    """

    frame_idx: int
    depth: np.ndarray
    cameras: CameraBatch
    data: np.ndarray


@dataclass(frozen=True)
class FrameFlowStats:
    """Match statistics for one processed frame."""

    frame_idx: int
    num_pixels: int
    num_valid: int
    num_matched: int

    @property
    def match_ratio(self) -> float:
        return self.num_matched / self.num_valid if self.num_valid > 0 else 0.0


@dataclass
class FlowFrameResult:
    """Output of :meth:`FlowSequencePipeline.process_frame`."""

    frame_idx: int
    points: np.ndarray  # (N, H, W, 3)
    matched_data: np.ndarray  # (N, H, W, C)
    matches: MatchResult
    stats: FrameFlowStats


@dataclass
class _SequenceState:
    points: np.ndarray
    data: np.ndarray
    frame_idx: int
    shapes: Tuple[Tuple[int, ...], Tuple[int, ...]] = field(init=False)

    def __post_init__(self) -> None:
        self.shapes = (tuple(self.points.shape), tuple(self.data.shape))


def _batched_depth(depth: np.ndarray) -> np.ndarray:
    depth = np.asarray(depth)
    if depth.ndim == 2:
        depth = depth[None]
    if depth.ndim == 3:
        depth = depth[..., None]
    if depth.ndim != 4 or depth.shape[3] != 1:
        raise ShapeError(f"depth must be (H, W), (N, H, W) or (N, H, W, 1), got shape {depth.shape}")
    return depth


def _batched_data(data: np.ndarray) -> np.ndarray:
    data = np.asarray(data)
    if data.ndim == 3:
        data = data[None]
    if data.ndim != 4:
        raise ShapeError(f"data must be (H, W, C) or (N, H, W, C), got shape {data.shape}")
    return data


class FlowSequencePipeline:
    """Runs forward flow matching over an ordered sequence of frames."""

    def __init__(self, config: Optional[FlowConfig] = None, matcher: Optional[FlowMatcher] = None):
        self.config = config or FlowConfig()
        self.matcher = matcher or FlowMatcher(self.config)
        self.reset()

    def reset(self) -> None:
        self._state: Optional[_SequenceState] = None
        self._stats: List[FrameFlowStats] = []

    @property
    def stats(self) -> List[FrameFlowStats]:
        return list(self._stats)

    @property
    def previous_points(self) -> Optional[np.ndarray]:
        return None if self._state is None else self._state.points

    def process_frames(self, frames: Iterable[FlowFrameInput], reset: bool = True) -> List[FlowFrameResult]:
        """Process a sequence of frame inputs in frame order."""
        if reset:
            self.reset()
        return [self.process_frame(f) for f in sorted(frames, key=lambda x: x.frame_idx)]

    def process_frame(self, frame: FlowFrameInput) -> FlowFrameResult:
        """Match one frame against the stored previous frame."""
        depth = _batched_depth(frame.depth)
        data = _batched_data(frame.data)
        n, h, w, _ = depth.shape
        if data.shape[:3] != (n, h, w):
            raise ShapeError(f"data shape {data.shape} does not match depth {depth.shape}")

        prev_points, prev_data = self._previous(frame.frame_idx, (n, h, w), data)

        points, matched_data, matches = self.matcher.forward(
            prev_data, prev_points, depth.astype(data.dtype, copy=False), frame.cameras,
            return_matches=True,
        )
        points = _NUMPY.asarray(points)
        matched_data = _NUMPY.asarray(matched_data)
        matches = MatchResult(
            fx=_NUMPY.asarray(matches.fx),
            fy=_NUMPY.asarray(matches.fy),
            dmin=_NUMPY.asarray(matches.dmin),
            matched=_NUMPY.asarray(matches.matched),
        )

        num_valid = int((depth[..., 0] > 0).sum())
        if num_valid == 0:
            logger.warning(f"Frame {frame.frame_idx}: no valid depth, nothing to match")
        stats = FrameFlowStats(
            frame_idx=frame.frame_idx,
            num_pixels=n * h * w,
            num_valid=num_valid,
            num_matched=matches.num_matched(),
        )
        self._stats.append(stats)
        logger.log(
            logging.INFO if self.config.verbose else logging.DEBUG,
            f"Frame {frame.frame_idx}: matched {stats.num_matched}/{stats.num_valid} "
            f"valid pixels ({stats.match_ratio:.1%})"
        )

        self._state = _SequenceState(points=points, data=data, frame_idx=frame.frame_idx)
        return FlowFrameResult(
            frame_idx=frame.frame_idx,
            points=points,
            matched_data=matched_data,
            matches=matches,
            stats=stats,
        )

    def _previous(self, frame_idx: int, nhw: Tuple[int, int, int], data: np.ndarray):
        state = self._state
        if state is not None and (state.shapes[0][:3] != nhw or state.shapes[1] != data.shape):
            if not self.config.pipeline.reset_on_shape_change:
                raise ShapeError(
                    f"frame {frame_idx} shape {data.shape} differs from previous "
                    f"frame {state.frame_idx} shape {state.shapes[1]}"
                )
            logger.warning(
                f"Frame {frame_idx}: shape changed from {state.shapes[1]} to {data.shape}, "
                f"resetting sequence state"
            )
            state = None

        if state is None:
            prev_points = np.full(nhw + (3,), np.nan, dtype=data.dtype)
            prev_data = np.zeros_like(data)
            return prev_points, prev_data
        return state.points.astype(data.dtype, copy=False), state.data.astype(data.dtype, copy=False)


__all__ = [
    "FlowSequencePipeline",
    "FlowFrameInput",
    "FlowFrameResult",
    "FrameFlowStats",
]
