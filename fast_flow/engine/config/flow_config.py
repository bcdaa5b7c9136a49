"""Fast-Flow configuration dataclasses.

``kernel_size`` and ``threshold`` are shared by the forward and backward
matchers: a backward call only reproduces the forward routing when both
attributes are identical.
"""

from __future__ import annotations

import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from fast_flow.matching.backends import BACKENDS
from fast_flow.matching.errors import ConfigurationError


# =============================================================================
# Component Configs
# =============================================================================

@dataclass
class MatchingConfig:
    """Flow matching attributes.

    kernel_size: half-width of the square search window in pixels
        (0 checks only the pixel's own previous location).
    threshold: maximum 3D distance (exclusive) for a match, in the units
        of the point clouds (metres for metric depth).
    """
    kernel_size: int = 3
    threshold: float = 0.05

    def validate(self) -> None:
        if self.kernel_size < 0:
            raise ConfigurationError(f"Need kernel_size >= 0, got {self.kernel_size}")
        if self.threshold < 0:
            raise ConfigurationError(f"Need threshold >= 0, got {self.threshold}")


@dataclass
class BackendConfig:
    """Execution backend selection.

    name: "sequential" | "threaded" | "torch".
    num_workers: thread count for "threaded"; None uses os.cpu_count().
    chunk_size: pixels per work item for "threaded".
    device: torch device for "torch" (e.g. "cuda", "cpu").
    """
    name: str = "sequential"
    num_workers: Optional[int] = None
    chunk_size: int = 4096
    device: str = "cpu"

    def validate(self) -> None:
        if self.name not in BACKENDS:
            raise ConfigurationError(f"Unknown backend {self.name!r}, expected one of {BACKENDS}")
        if self.num_workers is not None and self.num_workers <= 0:
            raise ConfigurationError(f"Need num_workers > 0, got {self.num_workers}")
        if self.chunk_size <= 0:
            raise ConfigurationError(f"Need chunk_size > 0, got {self.chunk_size}")


@dataclass
class PipelineConfig:
    """Frame-sequence pipeline behaviour."""
    reset_on_shape_change: bool = True  # otherwise raise ShapeError


# =============================================================================
# Main Config
# =============================================================================

@dataclass
class FlowConfig:
    """Main Fast-Flow configuration."""
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)

    # Global settings
    seed: int = 42
    verbose: bool = False  # per-frame match stats at INFO instead of DEBUG

    def validate(self) -> None:
        self.matching.validate()
        self.backend.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return asdict(self)


# =============================================================================
# YAML Loading / Saving
# =============================================================================

def _build_from_dict(cls, raw: Dict[str, Any]):
    """Recursively construct dataclass from a dict."""
    if not isinstance(raw, dict):
        return cls()
    kwargs = {}
    for name, field_info in cls.__dataclass_fields__.items():
        if name not in raw:
            continue
        val = raw[name]
        ft = field_info.type
        # Resolve string annotations
        if isinstance(ft, str):
            module = sys.modules.get(cls.__module__)
            ft = getattr(module, ft, ft) if module else ft
        if hasattr(ft, "__dataclass_fields__") and isinstance(val, dict):
            kwargs[name] = _build_from_dict(ft, val)
        else:
            kwargs[name] = val
    return cls(**kwargs)


def load_flow_config(path: Union[str, Path]) -> FlowConfig:
    """Load FlowConfig from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    config = _build_from_dict(FlowConfig, data)
    config.validate()
    return config


def save_flow_config(config: FlowConfig, path: Union[str, Path]) -> None:
    """Save FlowConfig to a YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)
