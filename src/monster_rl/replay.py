from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional

import numpy as np


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=np.float32, copy=True).reshape(-1)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class Experience:
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    terminal: bool

    @classmethod
    def create(cls, state, action: int, reward: float, next_state, terminal: bool) -> "Experience":
        return cls(
            state=_frozen(state),
            action=int(action),
            reward=float(reward),
            next_state=_frozen(next_state),
            terminal=bool(terminal),
        )

    @property
    def nbytes(self) -> int:
        return int(self.state.nbytes + self.next_state.nbytes)


class ReplayBuffer:
    """Fixed-capacity ring of experiences with uniform sampling without replacement."""

    def __init__(self, capacity: int = 10_000, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive.")
        self.capacity = capacity
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self._slots: List[Optional[Experience]] = [None] * capacity
        self._next = 0
        self._size = 0

    def add(self, experience: Experience) -> None:
        self._slots[self._next] = experience
        self._next = (self._next + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def push(self, state, action: int, reward: float, next_state, terminal: bool) -> None:
        self.add(Experience.create(state, action, reward, next_state, terminal))

    def sample_batch(self, batch_size: int) -> List[Experience]:
        if batch_size <= 0 or self._size < batch_size:
            return []
        indices = self.rng.choice(self._size, size=batch_size, replace=False)
        return [self._slots[self._physical(int(i))] for i in indices]

    def _physical(self, logical: int) -> int:
        # logical 0 is the oldest stored entry
        start = self._next if self._size == self.capacity else 0
        return (start + logical) % self.capacity

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._next = 0
        self._size = 0

    @property
    def is_full(self) -> bool:
        return self._size == self.capacity

    @property
    def nbytes(self) -> int:
        # entries share one state shape, so the oldest one is representative
        if self._size == 0:
            return 0
        return self._size * self._slots[self._physical(0)].nbytes

    def __iter__(self) -> Iterator[Experience]:
        for i in range(self._size):
            yield self._slots[self._physical(i)]

    def __len__(self) -> int:
        return self._size
