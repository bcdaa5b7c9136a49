"""Sequential, threaded and torch backends produce the same results."""

from __future__ import annotations

import time

import numpy as np
import pytest

from fast_flow.matching.backends import (
    SequentialStrategy,
    ThreadedStrategy,
    make_strategy,
)
from fast_flow.matching.errors import ConfigurationError
from fast_flow.matching.flow_ops import flow_backward, flow_forward
from fast_flow.matching.matcher import FlowMatcher

from conftest import make_scene


def _forward(scene, backend, **kwargs):
    return flow_forward(
        scene["data"], scene["points_prev"], scene["depth"], scene["cameras"], 2, 0.05,
        backend=backend, return_matches=True, **kwargs,
    )


class TestStrategyFactory:

    def test_names(self):
        assert isinstance(make_strategy("sequential"), SequentialStrategy)
        assert isinstance(make_strategy("threaded", num_workers=2), ThreadedStrategy)

    def test_instance_passthrough(self):
        strategy = ThreadedStrategy(num_workers=1, chunk_size=5)
        assert make_strategy(strategy) is strategy

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            make_strategy("opencl")

    def test_bad_threaded_settings(self):
        with pytest.raises(ConfigurationError):
            ThreadedStrategy(num_workers=0)
        with pytest.raises(ConfigurationError):
            ThreadedStrategy(chunk_size=0)

    def test_threaded_lane_chunks_cover_range_in_order(self):
        strategy = ThreadedStrategy(num_workers=3, chunk_size=4)
        chunks = list(strategy.map_lanes(lambda lanes: lanes.copy(), 10))
        assert [c.tolist() for c in chunks] == [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]]

    def test_sequential_one_row_per_call(self):
        chunks = list(SequentialStrategy().map_lanes(lambda lanes: lanes.copy(), 7, row_size=3))
        assert [c.tolist() for c in chunks] == [[0, 1, 2], [3, 4, 5], [6]]

    def test_sequential_default_row_size_is_one_pixel(self):
        chunks = list(SequentialStrategy().map_lanes(lambda lanes: lanes.copy(), 3))
        assert [c.tolist() for c in chunks] == [[0], [1], [2]]


class TestThreadedMatchesSequential:

    @pytest.mark.parametrize("chunk_size", [1, 7, 4096])
    def test_forward_bitwise(self, scene, chunk_size):
        p0, d0, m0 = _forward(scene, "sequential")
        p1, d1, m1 = _forward(scene, "threaded", num_workers=4, chunk_size=chunk_size)
        np.testing.assert_array_equal(p0, p1)
        np.testing.assert_array_equal(d0, d1)
        np.testing.assert_array_equal(m0.fx, m1.fx)
        np.testing.assert_array_equal(m0.fy, m1.fy)
        np.testing.assert_array_equal(m0.dmin, m1.dmin)

    def test_backward_bitwise(self, scene):
        points_cur, _, _ = _forward(scene, "sequential")
        g0 = flow_backward(scene["points_prev"], points_cur, scene["grad"], 2, 0.05)
        g1 = flow_backward(
            scene["points_prev"], points_cur, scene["grad"], 2, 0.05,
            backend="threaded", num_workers=4, chunk_size=7,
        )
        # Outputs are accumulated in lane order on the calling thread.
        np.testing.assert_array_equal(g0, g1)

    def test_batched_scene(self):
        a = make_scene(seed=1)
        b = make_scene(seed=2)
        batched = {
            k: np.concatenate([a[k], b[k]]) for k in ("data", "points_prev", "depth", "grad")
        }
        batched["cameras"] = type(a["cameras"])(
            inv_intrinsics=np.concatenate([a["cameras"].inv_intrinsics, b["cameras"].inv_intrinsics]),
            cam_to_world=np.concatenate([a["cameras"].cam_to_world, b["cameras"].cam_to_world]),
        )
        p0, d0, _ = _forward(batched, "sequential")
        p1, d1, _ = _forward(batched, "threaded", num_workers=2, chunk_size=33)
        np.testing.assert_array_equal(p0, p1)
        np.testing.assert_array_equal(d0, d1)


class TestTorchBackend:

    @pytest.fixture(autouse=True)
    def _torch(self):
        self.torch = pytest.importorskip("torch")

    @pytest.mark.parametrize("dtype", [np.float32, np.float64])
    def test_forward_bitwise_on_cpu(self, dtype):
        scene = make_scene(dtype=dtype)
        p0, d0, m0 = _forward(scene, "sequential")
        p1, d1, m1 = _forward(scene, "torch", device="cpu")
        assert isinstance(p1, self.torch.Tensor)
        np.testing.assert_array_equal(p0, p1.numpy())
        np.testing.assert_array_equal(d0, d1.numpy())
        np.testing.assert_array_equal(m0.fx, m1.fx.numpy())
        np.testing.assert_array_equal(m0.matched, m1.matched.numpy())

    def test_backward_close_on_cpu(self, scene):
        points_cur, _, _ = _forward(scene, "sequential")
        g0 = flow_backward(scene["points_prev"], points_cur, scene["grad"], 2, 0.05)
        g1 = flow_backward(
            self.torch.from_numpy(scene["points_prev"]),
            self.torch.from_numpy(points_cur),
            self.torch.from_numpy(scene["grad"]),
            2, 0.05, backend="torch",
        )
        np.testing.assert_allclose(g0, g1.numpy(), rtol=1e-6, atol=1e-6)

    def test_tensor_inputs_keep_dtype(self):
        scene = make_scene(dtype=np.float64)
        data = self.torch.from_numpy(scene["data"])
        points, data_out = flow_forward(
            data,
            self.torch.from_numpy(scene["points_prev"]),
            self.torch.from_numpy(scene["depth"]),
            scene["cameras"],
            1, 0.05, backend="torch",
        )
        assert data_out.dtype == self.torch.float64
        assert points.shape == (1, 12, 16, 3)

    def test_cuda_matches_cpu(self, scene):
        if not self.torch.cuda.is_available():
            pytest.skip("CUDA not available")
        p0, d0, _ = _forward(scene, "sequential")
        p1, d1, _ = _forward(scene, "torch", device="cuda")
        np.testing.assert_allclose(p0, p1.cpu().numpy(), rtol=1e-6, atol=1e-6)
        np.testing.assert_array_equal(d0, d1.cpu().numpy())


class TestFlowMatcher:

    def test_create_and_run(self, scene):
        matcher = FlowMatcher.create(2, 0.05, backend="threaded", num_workers=2, chunk_size=16)
        assert matcher.strategy.name == "threaded"
        assert matcher.kernel_size == 2
        points_cur, data_out = matcher.forward(
            scene["data"], scene["points_prev"], scene["depth"], scene["cameras"]
        )
        ref_points, ref_data = flow_forward(
            scene["data"], scene["points_prev"], scene["depth"], scene["cameras"], 2, 0.05
        )
        np.testing.assert_array_equal(points_cur, ref_points)
        np.testing.assert_array_equal(data_out, ref_data)

        grad_data, matches = matcher.backward(
            scene["points_prev"], points_cur, scene["grad"], return_matches=True
        )
        assert grad_data.shape == scene["grad"].shape
        assert matches.num_matched() > 0

    def test_invalid_config_rejected(self):
        with pytest.raises(ConfigurationError):
            FlowMatcher.create(-1, 0.05)


class TestSequentialCost:

    def test_kernel_called_once_per_row(self, scene):
        strategy = SequentialStrategy()
        calls = []
        map_lanes = strategy.map_lanes

        def counting_map_lanes(kernel, num_lanes, row_size=1):
            for res in map_lanes(kernel, num_lanes, row_size=row_size):
                calls.append(int(res.lanes.shape[0]))
                yield res

        strategy.map_lanes = counting_map_lanes
        _forward(scene, strategy)
        n, h, w, _ = scene["data"].shape
        assert len(calls) == n * h

    def test_sequential_cost_close_to_threaded(self):
        scene = make_scene(h=60, w=80)
        args = (scene["data"], scene["points_prev"], scene["depth"], scene["cameras"], 3, 0.05)

        t0 = time.perf_counter()
        flow_forward(*args, backend="threaded", num_workers=1)
        t_threaded = time.perf_counter() - t0

        t0 = time.perf_counter()
        flow_forward(*args, backend="sequential")
        t_sequential = time.perf_counter() - t0

        assert t_sequential < 50 * t_threaded + 1.0
