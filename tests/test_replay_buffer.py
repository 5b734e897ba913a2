import random

import numpy as np
import pytest

from drone_RL.DQN.replay_buffer import Experience, ReplayBuffer


def _experience(tag: int, done: bool = False) -> Experience:
    state = np.full(40, float(tag))
    return Experience(state=state, action=tag % 9, reward=float(tag), next_state=state + 1, done=done)


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        ReplayBuffer(0)


def test_appends_until_full():
    buffer = ReplayBuffer(3)
    for tag in range(2):
        buffer.store(_experience(tag))

    assert len(buffer) == 2
    assert buffer.current_index == 0
    assert [e.reward for e in buffer] == [0.0, 1.0]


def test_overwrites_oldest_slot_once_full():
    buffer = ReplayBuffer(3)
    for tag in (1, 2, 3, 4):
        buffer.store(_experience(tag))

    # E4 replaced E1 in slot 0; slot order is not insertion order
    assert len(buffer) == 3
    assert [e.reward for e in buffer] == [4.0, 2.0, 3.0]
    assert buffer.current_index == 1


def test_cursor_wraps():
    buffer = ReplayBuffer(2)
    for tag in range(5):
        buffer.store(_experience(tag))

    assert [e.reward for e in buffer] == [4.0, 3.0]
    assert buffer.current_index == 1
    assert len(buffer) == 2


def test_push_builds_experience():
    buffer = ReplayBuffer(10)
    buffer.push(np.zeros(40), 3, 1.5, np.ones(40), True)

    experience = buffer[0]
    assert experience.action == 3
    assert experience.reward == 1.5
    assert experience.done is True
    assert experience.state.dtype == np.float64


def test_experience_arrays_are_private_read_only_copies():
    state = np.zeros(40)
    experience = Experience(state=state, action=0, reward=0.0, next_state=state, done=False)

    state[0] = 7.0
    assert experience.state[0] == 0.0
    with pytest.raises(ValueError):
        experience.state[0] = 1.0


def test_sample_returns_everything_when_short():
    buffer = ReplayBuffer(10)
    for tag in range(3):
        buffer.store(_experience(tag))

    assert [e.reward for e in buffer.sample_batch(5)] == [0.0, 1.0, 2.0]


def test_sample_is_distinct_and_sized():
    buffer = ReplayBuffer(100, rng=random.Random(0))
    for tag in range(100):
        buffer.store(_experience(tag))

    batch = buffer.sample_batch(32)

    assert len(batch) == 32
    assert len({id(e) for e in batch}) == 32


def test_sample_full_buffer_batch():
    buffer = ReplayBuffer(8, rng=random.Random(0))
    for tag in range(8):
        buffer.store(_experience(tag))

    assert sorted(e.reward for e in buffer.sample_batch(8)) == [float(t) for t in range(8)]


def test_sampling_favours_recent_slots():
    buffer = ReplayBuffer(1000, rng=random.Random(42))
    for tag in range(1000):
        buffer.store(_experience(tag))

    recent = 0
    draws = 0
    for _ in range(200):
        for experience in buffer.sample_batch(10):
            draws += 1
            recent += experience.reward >= 800

    # Uniform sampling would give 20%; the bias adds about 30 points
    assert recent / draws > 0.35


def test_same_seed_same_batch():
    def batch(seed):
        buffer = ReplayBuffer(50, rng=random.Random(seed))
        for tag in range(50):
            buffer.store(_experience(tag))
        return [e.reward for e in buffer.sample_batch(10)]

    assert batch(3) == batch(3)


def test_clear_and_stats():
    buffer = ReplayBuffer(4)
    for tag in range(6):
        buffer.store(_experience(tag))

    assert buffer.stats() == {"size": 4, "max_size": 4, "utilization": 1.0}

    buffer.clear()
    assert len(buffer) == 0
    assert buffer.current_index == 0
    assert buffer.stats()["utilization"] == 0.0
