"""Configured flow matcher shared by the forward and backward passes."""

from __future__ import annotations

from typing import Any, Optional

from fast_flow.engine.config.flow_config import BackendConfig, FlowConfig, MatchingConfig
from fast_flow.matching.backends import ExecutionStrategy, make_strategy
from fast_flow.matching.flow_ops import flow_backward, flow_forward


class FlowMatcher:
    """Holds ``kernel_size``/``threshold`` and a backend for both directions.

    Using one matcher for a forward call and its backward call guarantees
    that the recomputed routing matches the forward one.
    """

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        strategy: Optional[ExecutionStrategy] = None,
    ):
        self.config = config or FlowConfig()
        self.config.validate()
        backend: BackendConfig = self.config.backend
        self.strategy = strategy or make_strategy(
            backend.name,
            num_workers=backend.num_workers,
            chunk_size=backend.chunk_size,
            device=backend.device,
        )

    @classmethod
    def create(cls, kernel_size: int, threshold: float, backend: str = "sequential", **kwargs) -> "FlowMatcher":
        config = FlowConfig(
            matching=MatchingConfig(kernel_size=kernel_size, threshold=threshold),
            backend=BackendConfig(name=backend, **kwargs),
        )
        return cls(config)

    @property
    def kernel_size(self) -> int:
        return self.config.matching.kernel_size

    @property
    def threshold(self) -> float:
        return self.config.matching.threshold

    def forward(self, data: Any, points_prev: Any, depth: Any, cameras: Any, return_matches: bool = False):
        """See :func:`fast_flow.matching.flow_ops.flow_forward`."""
        return flow_forward(
            data,
            points_prev,
            depth,
            cameras,
            self.kernel_size,
            self.threshold,
            backend=self.strategy,
            return_matches=return_matches,
        )

    def backward(self, points_prev: Any, points_cur: Any, grad: Any, return_matches: bool = False):
        """See :func:`fast_flow.matching.flow_ops.flow_backward`."""
        return flow_backward(
            points_prev,
            points_cur,
            grad,
            self.kernel_size,
            self.threshold,
            backend=self.strategy,
            return_matches=return_matches,
        )
