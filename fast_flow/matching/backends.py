"""Array namespaces and execution strategies for the per-lane kernels.

The matching kernels in :mod:`fast_flow.matching.kernel` are written once
against a small array namespace (:class:`NumpyOps` or :class:`TorchOps`).
An :class:`ExecutionStrategy` decides how the flattened pixel range is cut
into lanes and dispatched:

- ``sequential``: one image row per kernel call, in (n, h) order.
- ``threaded``: contiguous chunks of pixels on a thread pool.
- ``torch``: every pixel as one lane of a single tensor dispatch, on any
  torch device.

Outputs are always written by the calling thread, in lane order, so
scatter-add accumulation never races.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, Optional, Union

import numpy as np

from fast_flow.matching.errors import ConfigurationError, FlowMatchError

logger = logging.getLogger(__name__)

BACKENDS = ("sequential", "threaded", "torch")


def _is_tensor(x: Any) -> bool:
    return type(x).__module__.split(".")[0] == "torch"


# =============================================================================
# Array namespaces
# =============================================================================

class NumpyOps:
    """numpy implementation of the kernel array namespace."""

    name = "numpy"
    index_dtype = np.int64
    bool_dtype = np.bool_

    def asarray(self, x: Any, dtype=None) -> np.ndarray:
        if _is_tensor(x):
            x = x.detach().cpu().numpy()
        return np.asarray(x, dtype=dtype)

    def float_dtype(self, x: Any):
        dtype = self.asarray(x).dtype
        if dtype not in (np.float32, np.float64):
            raise FlowMatchError(f"expected float32 or float64 data, got {dtype}")
        return dtype.type

    def scalar(self, value: float, dtype) -> np.ndarray:
        return np.asarray(value, dtype=dtype)

    def arange(self, start: int, stop: int) -> np.ndarray:
        return np.arange(start, stop, dtype=self.index_dtype)

    def full(self, shape, value, dtype) -> np.ndarray:
        return np.full(shape, value, dtype=dtype)

    def zeros(self, shape, dtype) -> np.ndarray:
        return np.zeros(shape, dtype=dtype)

    def to_dtype(self, x: np.ndarray, dtype) -> np.ndarray:
        return x.astype(dtype, copy=False)

    def isnan(self, x: np.ndarray) -> np.ndarray:
        return np.isnan(x)

    def sqrt(self, x: np.ndarray) -> np.ndarray:
        return np.sqrt(x)

    def where(self, cond, a, b) -> np.ndarray:
        return np.where(cond, a, b)

    def clip(self, x: np.ndarray, lo: int, hi: int) -> np.ndarray:
        return np.clip(x, lo, hi)

    def stack(self, arrays) -> np.ndarray:
        return np.stack(arrays, axis=-1)

    def scatter_add(self, target: np.ndarray, index: np.ndarray, values: np.ndarray) -> None:
        # Unbuffered: repeated indices accumulate.
        np.add.at(target, index, values)


class TorchOps:
    """torch implementation of the kernel array namespace."""

    name = "torch"

    def __init__(self, device: Optional[str] = None):
        import torch

        self._torch = torch
        self.device = torch.device(device) if device is not None else torch.device("cpu")
        self.index_dtype = torch.int64
        self.bool_dtype = torch.bool

    def asarray(self, x: Any, dtype=None):
        torch = self._torch
        if isinstance(dtype, type) and issubclass(dtype, np.generic):
            dtype = torch.from_numpy(np.zeros(0, dtype=dtype)).dtype
        return torch.as_tensor(x, dtype=dtype, device=self.device)

    def float_dtype(self, x: Any):
        torch = self._torch
        dtype = x.dtype if _is_tensor(x) else torch.as_tensor(np.asarray(x)).dtype
        if dtype not in (torch.float32, torch.float64):
            raise FlowMatchError(f"expected float32 or float64 data, got {dtype}")
        return dtype

    def scalar(self, value: float, dtype):
        return self._torch.tensor(value, dtype=dtype, device=self.device)

    def arange(self, start: int, stop: int):
        return self._torch.arange(start, stop, dtype=self.index_dtype, device=self.device)

    def full(self, shape, value, dtype):
        if isinstance(shape, int):
            shape = (shape,)
        return self._torch.full(shape, value, dtype=dtype, device=self.device)

    def zeros(self, shape, dtype):
        return self._torch.zeros(shape, dtype=dtype, device=self.device)

    def to_dtype(self, x, dtype):
        return x.to(dtype)

    def isnan(self, x):
        return self._torch.isnan(x)

    def sqrt(self, x):
        return self._torch.sqrt(x)

    def where(self, cond, a, b):
        return self._torch.where(cond, a, b)

    def clip(self, x, lo: int, hi: int):
        return self._torch.clamp(x, lo, hi)

    def stack(self, arrays):
        return self._torch.stack(arrays, dim=-1)

    def scatter_add(self, target, index, values) -> None:
        # Atomic on CUDA.
        target.index_add_(0, index, values)


ArrayOps = Union[NumpyOps, TorchOps]


def get_ops(x: Any) -> ArrayOps:
    """Pick the array namespace matching the type of *x*."""
    if _is_tensor(x):
        return TorchOps(device=str(x.device))
    return NumpyOps()


# =============================================================================
# Execution strategies
# =============================================================================

LaneKernel = Callable[[Any], Any]


class ExecutionStrategy:
    """Cuts ``[0, num_lanes)`` into lane batches and runs a kernel on each."""

    name = "base"

    def __init__(self, ops: ArrayOps):
        self.ops = ops

    def map_lanes(self, kernel: LaneKernel, num_lanes: int, row_size: int = 1) -> Iterator[Any]:
        """Yield ``kernel(lanes)`` for each lane batch, in lane order.

        ``row_size`` is the image width; strategies that walk the image row
        by row use it, the others ignore it.
        """
        raise NotImplementedError


class SequentialStrategy(ExecutionStrategy):
    """One image row at a time on the calling thread, in (n, h) order."""

    name = "sequential"

    def __init__(self):
        super().__init__(NumpyOps())

    def map_lanes(self, kernel: LaneKernel, num_lanes: int, row_size: int = 1) -> Iterator[Any]:
        step = max(int(row_size), 1)
        for start in range(0, num_lanes, step):
            yield kernel(self.ops.arange(start, min(start + step, num_lanes)))


class ThreadedStrategy(ExecutionStrategy):
    """Contiguous pixel chunks spread over a thread pool.

    numpy releases the GIL inside its vectorized loops, so chunks overlap on
    multiple cores. Results are yielded in chunk order.
    """

    name = "threaded"

    def __init__(self, num_workers: Optional[int] = None, chunk_size: int = 4096):
        super().__init__(NumpyOps())
        if num_workers is not None and num_workers <= 0:
            raise ConfigurationError(f"Need num_workers > 0, got {num_workers}")
        if chunk_size <= 0:
            raise ConfigurationError(f"Need chunk_size > 0, got {chunk_size}")
        self.num_workers = num_workers or os.cpu_count() or 1
        self.chunk_size = chunk_size

    def map_lanes(self, kernel: LaneKernel, num_lanes: int, row_size: int = 1) -> Iterator[Any]:
        starts = range(0, num_lanes, self.chunk_size)
        if len(starts) <= 1:
            for start in starts:
                yield kernel(self.ops.arange(start, min(start + self.chunk_size, num_lanes)))
            return

        def run(start: int):
            return kernel(self.ops.arange(start, min(start + self.chunk_size, num_lanes)))

        with ThreadPoolExecutor(max_workers=self.num_workers) as pool:
            yield from pool.map(run, starts)


class TorchStrategy(ExecutionStrategy):
    """One lane per pixel in a single tensor dispatch on ``device``."""

    name = "torch"

    def __init__(self, device: Optional[str] = None):
        super().__init__(TorchOps(device=device))

    @property
    def device(self):
        return self.ops.device

    def map_lanes(self, kernel: LaneKernel, num_lanes: int, row_size: int = 1) -> Iterator[Any]:
        yield kernel(self.ops.arange(0, num_lanes))


def make_strategy(
    backend: Union[str, ExecutionStrategy] = "sequential",
    num_workers: Optional[int] = None,
    chunk_size: int = 4096,
    device: Optional[str] = None,
) -> ExecutionStrategy:
    """Build an execution strategy from a backend name."""
    if isinstance(backend, ExecutionStrategy):
        return backend
    if backend == "sequential":
        return SequentialStrategy()
    if backend == "threaded":
        return ThreadedStrategy(num_workers=num_workers, chunk_size=chunk_size)
    if backend == "torch":
        return TorchStrategy(device=device)
    raise ConfigurationError(f"Unknown backend {backend!r}, expected one of {BACKENDS}")


__all__ = [
    "BACKENDS",
    "NumpyOps",
    "TorchOps",
    "ArrayOps",
    "get_ops",
    "ExecutionStrategy",
    "SequentialStrategy",
    "ThreadedStrategy",
    "TorchStrategy",
    "make_strategy",
]
