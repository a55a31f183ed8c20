import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl.errors import ErrorRegistry, NetworkError  # noqa: E402
from monster_rl.network import DenseQNetwork, NullQNetwork, build_network  # noqa: E402


def test_dense_network_shapes_and_parameter_count():
    net = build_network(6, 3, [5, 4], rng=np.random.default_rng(0))
    assert isinstance(net, DenseQNetwork)
    out = net.forward(np.zeros(6, dtype=np.float32))
    assert out.shape == (3,)
    assert net.parameter_count == (6 * 5 + 5 * 4 + 4 * 3) + (5 + 4 + 3)
    assert net.architecture.hidden_sizes == [5, 4]


def test_forward_rejects_bad_input():
    net = build_network(4, 2, [3], rng=np.random.default_rng(0))
    with pytest.raises(NetworkError):
        net.forward(np.zeros(5, dtype=np.float32))
    with pytest.raises(NetworkError):
        net.forward(np.array([0.0, np.nan, 0.0, 0.0], dtype=np.float32))


def test_backward_reduces_loss_on_single_sample():
    net = build_network(4, 2, [8], rng=np.random.default_rng(1))
    x = np.array([0.5, -0.2, 0.1, 0.9], dtype=np.float32)
    target = np.array([1.0, -1.0], dtype=np.float32)
    first = net.backward(x, target, learning_rate=0.05)
    for _ in range(50):
        last = net.backward(x, target, learning_rate=0.05)
    assert last < first


def test_weights_round_trip_and_size_check():
    rng = np.random.default_rng(2)
    a = build_network(4, 2, [3], rng=rng)
    b = build_network(4, 2, [3], rng=rng)
    assert not np.allclose(a.get_weights(), b.get_weights())
    b.copy_from(a)
    assert np.array_equal(a.get_weights(), b.get_weights())
    assert np.array_equal(a.get_biases(), b.get_biases())
    x = np.ones(4, dtype=np.float32)
    assert np.allclose(a.forward(x), b.forward(x))
    with pytest.raises(NetworkError):
        b.set_weights(np.zeros(3, dtype=np.float32))


def test_fallback_topology_then_null_network():
    errors = ErrorRegistry()
    net = build_network(4, 2, [0], rng=np.random.default_rng(0), errors=errors)
    assert isinstance(net, DenseQNetwork)
    assert net.architecture.hidden_sizes == [32, 16]
    assert errors.failure_count("network") == 1

    null = build_network(4, 0, [8], errors=errors)
    assert isinstance(null, NullQNetwork)
    assert null.is_null
    assert null.forward(np.zeros(4)).shape == (0,)
    assert null.backward(np.zeros(4), np.zeros(0), 0.1) == 0.0
