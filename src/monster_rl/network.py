from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .errors import ErrorRegistry, NetworkError

logger = logging.getLogger(__name__)

FALLBACK_TOPOLOGIES = ([32, 16], [16])


@dataclass
class NetworkArchitecture:
    input_size: int
    output_size: int
    hidden_sizes: List[int] = field(default_factory=list)

    def layer_sizes(self) -> List[int]:
        return [self.input_size, *self.hidden_sizes, self.output_size]

    def weight_count(self) -> int:
        sizes = self.layer_sizes()
        return sum(a * b for a, b in zip(sizes[:-1], sizes[1:]))

    def bias_count(self) -> int:
        return sum(self.hidden_sizes) + self.output_size

    def to_dict(self) -> dict:
        return {
            "input_size": self.input_size,
            "output_size": self.output_size,
            "hidden_sizes": list(self.hidden_sizes),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "NetworkArchitecture":
        return cls(
            input_size=int(payload["input_size"]),
            output_size=int(payload["output_size"]),
            hidden_sizes=[int(h) for h in payload.get("hidden_sizes", [])],
        )


class QNetwork(ABC):
    """Common contract for Q-value approximators."""

    architecture: Optional[NetworkArchitecture] = None

    @abstractmethod
    def initialize(self, input_size: int, output_size: int, hidden_sizes: Sequence[int]) -> None: ...

    @abstractmethod
    def forward(self, x: np.ndarray) -> np.ndarray: ...

    @abstractmethod
    def backward(self, x: np.ndarray, target: np.ndarray, learning_rate: float) -> float: ...

    @abstractmethod
    def get_weights(self) -> np.ndarray: ...

    @abstractmethod
    def set_weights(self, flat: np.ndarray) -> None: ...

    @abstractmethod
    def get_biases(self) -> np.ndarray: ...

    @abstractmethod
    def set_biases(self, flat: np.ndarray) -> None: ...

    @abstractmethod
    def add_noise(self, scale: float) -> None: ...

    @abstractmethod
    def reset(self) -> None: ...

    def copy_from(self, other: "QNetwork") -> None:
        self.set_weights(other.get_weights())
        self.set_biases(other.get_biases())

    @property
    def parameter_count(self) -> int:
        return int(self.get_weights().size + self.get_biases().size)

    @property
    def nbytes(self) -> int:
        return int(self.get_weights().nbytes + self.get_biases().nbytes)

    @property
    def is_null(self) -> bool:
        return False


class DenseQNetwork(QNetwork):
    """
    Small dense feed-forward Q approximator.

    Hidden layers use ReLU, the output layer is linear. `backward` performs one
    plain SGD step on a single sample against an MSE loss.
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.weights: List[np.ndarray] = []
        self.biases: List[np.ndarray] = []
        self.architecture = None

    def initialize(self, input_size: int, output_size: int, hidden_sizes: Sequence[int]) -> None:
        if input_size <= 0 or output_size <= 0:
            raise NetworkError(f"Invalid network shape: input={input_size}, output={output_size}")
        if any(h <= 0 for h in hidden_sizes):
            raise NetworkError(f"Hidden layer sizes must be positive: {list(hidden_sizes)}")
        self.architecture = NetworkArchitecture(input_size, output_size, list(hidden_sizes))
        self.reset()

    def reset(self) -> None:
        if self.architecture is None:
            raise NetworkError("Network has not been initialized.")
        sizes = self.architecture.layer_sizes()
        self.weights = []
        self.biases = []
        for fan_in, fan_out in zip(sizes[:-1], sizes[1:]):
            scale = np.sqrt(2.0 / (fan_in + fan_out))
            self.weights.append(self.rng.uniform(-scale, scale, size=(fan_in, fan_out)).astype(np.float32))
            self.biases.append(np.zeros((fan_out,), dtype=np.float32))

    def _check_input(self, x: np.ndarray) -> np.ndarray:
        if self.architecture is None:
            raise NetworkError("Network has not been initialized.")
        x = np.asarray(x, dtype=np.float32).reshape(-1)
        if x.shape[0] != self.architecture.input_size:
            raise NetworkError(f"Expected input of size {self.architecture.input_size}, got {x.shape[0]}")
        if not np.all(np.isfinite(x)):
            raise NetworkError("Input contains non-finite values.")
        return x

    def _activations(self, x: np.ndarray) -> List[np.ndarray]:
        acts = [x]
        h = x
        last = len(self.weights) - 1
        for idx, (w, b) in enumerate(zip(self.weights, self.biases)):
            h = h @ w + b
            if idx < last:
                h = np.maximum(h, 0.0)
            acts.append(h)
        return acts

    def forward(self, x: np.ndarray) -> np.ndarray:
        x = self._check_input(x)
        out = self._activations(x)[-1]
        if not np.all(np.isfinite(out)):
            raise NetworkError("Forward pass produced non-finite values.")
        return out

    def backward(self, x: np.ndarray, target: np.ndarray, learning_rate: float) -> float:
        x = self._check_input(x)
        target = np.asarray(target, dtype=np.float32).reshape(-1)
        if target.shape[0] != self.architecture.output_size:
            raise NetworkError(f"Expected target of size {self.architecture.output_size}, got {target.shape[0]}")
        acts = self._activations(x)
        out = acts[-1]
        error = out - target
        loss = float(np.mean(error**2))
        if not np.isfinite(loss):
            raise NetworkError("Loss is non-finite.")

        grad = (2.0 / error.shape[0]) * error
        for layer in range(len(self.weights) - 1, -1, -1):
            a_prev = acts[layer]
            grad_w = np.outer(a_prev, grad)
            grad_b = grad
            if layer > 0:
                # ReLU derivative on the previous layer's activation.
                grad_prev = (self.weights[layer] @ grad) * (a_prev > 0)
            self.weights[layer] -= (learning_rate * grad_w).astype(np.float32)
            self.biases[layer] -= (learning_rate * grad_b).astype(np.float32)
            if layer > 0:
                grad = grad_prev
        return loss

    def get_weights(self) -> np.ndarray:
        if not self.weights:
            return np.zeros((0,), dtype=np.float32)
        return np.concatenate([w.reshape(-1) for w in self.weights]).astype(np.float32)

    def set_weights(self, flat: np.ndarray) -> None:
        flat = np.asarray(flat, dtype=np.float32).reshape(-1)
        expected = sum(w.size for w in self.weights)
        if flat.size != expected:
            raise NetworkError(f"Weight vector has {flat.size} values, expected {expected}")
        offset = 0
        for idx, w in enumerate(self.weights):
            self.weights[idx] = flat[offset : offset + w.size].reshape(w.shape).copy()
            offset += w.size

    def get_biases(self) -> np.ndarray:
        if not self.biases:
            return np.zeros((0,), dtype=np.float32)
        return np.concatenate([b.reshape(-1) for b in self.biases]).astype(np.float32)

    def set_biases(self, flat: np.ndarray) -> None:
        flat = np.asarray(flat, dtype=np.float32).reshape(-1)
        expected = sum(b.size for b in self.biases)
        if flat.size != expected:
            raise NetworkError(f"Bias vector has {flat.size} values, expected {expected}")
        offset = 0
        for idx, b in enumerate(self.biases):
            self.biases[idx] = flat[offset : offset + b.size].copy()
            offset += b.size

    def add_noise(self, scale: float) -> None:
        for idx, w in enumerate(self.weights):
            self.weights[idx] = (w + self.rng.normal(0.0, scale, size=w.shape)).astype(np.float32)


class NullQNetwork(QNetwork):
    """Stand-in that keeps an agent alive when a real network cannot be built."""

    def __init__(self, input_size: int = 0, output_size: int = 0):
        self.architecture = NetworkArchitecture(input_size, output_size, [])

    def initialize(self, input_size: int, output_size: int, hidden_sizes: Sequence[int]) -> None:
        self.architecture = NetworkArchitecture(input_size, output_size, [])

    def forward(self, x: np.ndarray) -> np.ndarray:
        return np.zeros((self.architecture.output_size,), dtype=np.float32)

    def backward(self, x: np.ndarray, target: np.ndarray, learning_rate: float) -> float:
        return 0.0

    def get_weights(self) -> np.ndarray:
        return np.zeros((0,), dtype=np.float32)

    def set_weights(self, flat: np.ndarray) -> None:
        return

    def get_biases(self) -> np.ndarray:
        return np.zeros((0,), dtype=np.float32)

    def set_biases(self, flat: np.ndarray) -> None:
        return

    def copy_from(self, other: QNetwork) -> None:
        return

    def add_noise(self, scale: float) -> None:
        return

    def reset(self) -> None:
        return

    @property
    def is_null(self) -> bool:
        return True


def build_network(
    input_size: int,
    output_size: int,
    hidden_sizes: Sequence[int],
    rng: Optional[np.random.Generator] = None,
    errors: Optional[ErrorRegistry] = None,
) -> QNetwork:
    """Build a dense network, stepping down to smaller topologies and finally a NullQNetwork."""
    attempts = [list(hidden_sizes)] + [list(t) for t in FALLBACK_TOPOLOGIES if list(t) != list(hidden_sizes)]
    for hidden in attempts:
        try:
            net = DenseQNetwork(rng=rng)
            net.initialize(input_size, output_size, hidden)
            if hidden != list(hidden_sizes):
                logger.warning("Using fallback network topology %s", hidden)
            return net
        except (NetworkError, ValueError, MemoryError) as exc:
            if errors is not None:
                errors.log_error("network", "initialize", exc, f"input={input_size} output={output_size} hidden={hidden}")
            else:
                logger.warning("Network initialization failed for hidden=%s: %s", hidden, exc)
    logger.error("All network topologies failed; using NullQNetwork (%d -> %d)", input_size, output_size)
    return NullQNetwork(max(input_size, 0), max(output_size, 0))
