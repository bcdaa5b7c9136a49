"""Flow matching operators.

``flow_forward`` / ``flow_backward`` are the pure entry points;
:class:`FlowMatcher` binds them to one configuration. The torch autograd
binding lives in :mod:`fast_flow.matching.autograd` (imports torch).
"""

from fast_flow.matching.errors import (
    FlowMatchError,
    ConfigurationError,
    ShapeError,
)
from fast_flow.matching.backends import (
    BACKENDS,
    ExecutionStrategy,
    SequentialStrategy,
    ThreadedStrategy,
    TorchStrategy,
    make_strategy,
)
from fast_flow.matching.flow_ops import (
    MatchResult,
    check_attributes,
    flow_backward,
    flow_forward,
)
from fast_flow.matching.matcher import FlowMatcher

__all__ = [
    "FlowMatchError",
    "ConfigurationError",
    "ShapeError",
    "BACKENDS",
    "ExecutionStrategy",
    "SequentialStrategy",
    "ThreadedStrategy",
    "TorchStrategy",
    "make_strategy",
    "MatchResult",
    "check_attributes",
    "flow_backward",
    "flow_forward",
    "FlowMatcher",
]
