"""Fast-Flow Pipeline module."""

from fast_flow.engine.pipeline.flow_pipeline import (
    FlowSequencePipeline,
    FlowFrameInput,
    FlowFrameResult,
    FrameFlowStats,
)

__all__ = [
    "FlowSequencePipeline",
    "FlowFrameInput",
    "FlowFrameResult",
    "FrameFlowStats",
]
