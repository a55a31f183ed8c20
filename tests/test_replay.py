import pathlib
import sys

import numpy as np
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT / "src"))

from monster_rl.replay import Experience, ReplayBuffer  # noqa: E402


def _push(buffer: ReplayBuffer, tag: float, terminal: bool = False) -> None:
    state = np.full(3, tag, dtype=np.float32)
    buffer.push(state, int(tag), tag, state + 1, terminal)


def test_ring_keeps_most_recent_entries():
    buffer = ReplayBuffer(capacity=3, seed=0)
    for tag in (1.0, 2.0, 3.0, 4.0):
        _push(buffer, tag)
    assert len(buffer) == 3
    assert buffer.is_full
    assert [exp.reward for exp in buffer] == [2.0, 3.0, 4.0]


def test_sample_is_distinct_and_empty_when_short():
    buffer = ReplayBuffer(capacity=10, seed=0)
    for tag in range(5):
        _push(buffer, float(tag))
    batch = buffer.sample_batch(5)
    assert sorted(exp.reward for exp in batch) == [0.0, 1.0, 2.0, 3.0, 4.0]
    assert buffer.sample_batch(6) == []
    assert buffer.sample_batch(0) == []


def test_stored_experience_is_read_only():
    buffer = ReplayBuffer(capacity=2, seed=0)
    state = np.zeros(3, dtype=np.float32)
    buffer.push(state, 1, 0.5, state, True)
    state[0] = 9.0
    exp = next(iter(buffer))
    assert exp.state[0] == 0.0
    assert exp.terminal is True
    with pytest.raises(ValueError):
        exp.state[0] = 1.0


def test_clear_and_nbytes():
    buffer = ReplayBuffer(capacity=4, seed=0)
    assert buffer.nbytes == 0
    buffer.add(Experience.create(np.zeros(5), 0, 0.0, np.zeros(5), False))
    assert buffer.nbytes == 2 * 5 * 4
    buffer.clear()
    assert len(buffer) == 0
    with pytest.raises(ValueError):
        ReplayBuffer(capacity=0)
