"""torch autograd binding for the flow matcher.

Gradient flows only to ``data``: the matching itself is a piecewise
constant index selection, so point clouds, depth and cameras receive none.
"""

from __future__ import annotations

from typing import Any, Tuple

import torch

from fast_flow.matching.backends import TorchStrategy
from fast_flow.matching.flow_ops import flow_backward, flow_forward


class FlowMatchFunction(torch.autograd.Function):
    """``(data, points_prev, depth) -> (points_cur, data_out)``."""

    @staticmethod
    def forward(ctx, data, points_prev, depth, cameras, kernel_size, threshold):
        strategy = TorchStrategy(device=str(data.device))
        points_cur, data_out = flow_forward(
            data.detach(),
            points_prev.detach(),
            depth.detach(),
            cameras,
            kernel_size,
            threshold,
            backend=strategy,
        )
        ctx.save_for_backward(points_prev, points_cur)
        ctx.kernel_size = kernel_size
        ctx.threshold = threshold
        ctx.mark_non_differentiable(points_cur)
        return points_cur, data_out

    @staticmethod
    def backward(ctx, grad_points, grad_data_out):
        points_prev, points_cur = ctx.saved_tensors
        grad_data = None
        if ctx.needs_input_grad[0]:
            strategy = TorchStrategy(device=str(grad_data_out.device))
            grad_data = flow_backward(
                points_prev,
                points_cur,
                grad_data_out.contiguous(),
                ctx.kernel_size,
                ctx.threshold,
                backend=strategy,
            )
        return grad_data, None, None, None, None, None


def flow_match(
    data: torch.Tensor,
    points_prev: torch.Tensor,
    depth: torch.Tensor,
    cameras: Any,
    kernel_size: int,
    threshold: float,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Differentiable :func:`~fast_flow.matching.flow_ops.flow_forward` (torch backend)."""
    return FlowMatchFunction.apply(data, points_prev, depth, cameras, kernel_size, threshold)
