"""Fast-Flow Configuration System.

Configuration can be loaded from YAML files or created programmatically.

Usage:
    from fast_flow.engine.config import load_flow_config, FlowConfig

    # Load from YAML
    config = load_flow_config("configs/flow.yaml")

    # Access components
    print(config.matching.kernel_size)
    print(config.backend.name)
"""

from fast_flow.engine.config.flow_config import (
    FlowConfig,
    MatchingConfig,
    BackendConfig,
    PipelineConfig,
    load_flow_config,
    save_flow_config,
)

__all__ = [
    "FlowConfig",
    "MatchingConfig",
    "BackendConfig",
    "PipelineConfig",
    "load_flow_config",
    "save_flow_config",
]
