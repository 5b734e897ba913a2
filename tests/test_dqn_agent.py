"""
Tests for the DQN agent: epsilon schedule, training, target sync, persistence.
"""

import json
import random

import numpy as np
import pytest

from drone_RL.DQN.dqn_agent import DQNAgent, TrainingMetrics
from drone_RL.config import NetworkConfig, TrainingConfig
from drone_RL.errors import LoadError


@pytest.fixture
def agent(small_network_config, small_training_config, rng):
    return DQNAgent(small_network_config, small_training_config, rng=rng)


def _fill(agent, count, seed=0):
    states = np.random.default_rng(seed).uniform(-1, 1, (count + 1, 40))
    for i in range(count):
        agent.store_transition(states[i], i % 9, float(i % 5) - 2.0, states[i + 1], i % 7 == 6)


def test_networks_start_identical(agent):
    assert agent.target_network.get_weights() == agent.main_network.get_weights()


def test_epsilon_schedule_is_monotone_and_floored(agent):
    values = []
    for _ in range(20_000):
        values.append(agent.get_current_epsilon())
        agent.current_episode += 1

    assert values[0] == pytest.approx(0.95)
    assert all(a >= b for a, b in zip(values, values[1:]))
    assert min(values) == pytest.approx(0.05)


def test_action_names(agent):
    assert agent.get_action_value(0) == "throttle_up"
    assert agent.get_action_value(8) == "hover"


def test_q_values(agent):
    q = agent.get_q_values(np.zeros(40))
    assert q.shape == (9,)
    assert q.sum() == pytest.approx(1.0)


def test_act_reports_branch(agent):
    _, explored = agent.act(np.zeros(40), epsilon=0.0)
    assert not explored
    _, explored = agent.act(np.zeros(40), epsilon=1.0)
    assert explored


def test_train_needs_a_full_batch(agent):
    _fill(agent, 3)

    assert agent.train() == 0.0
    assert agent.total_steps == 0


def test_train_updates_main_network(agent):
    _fill(agent, 20)
    before = agent.main_network.get_weights()

    loss = agent.train()

    assert loss > 0.0
    assert agent.total_steps == 1
    assert agent.main_network.get_weights() != before


def test_target_syncs_every_update_frequency(agent):
    _fill(agent, 20)

    agent.train()
    assert agent.target_network.get_weights() != agent.main_network.get_weights()

    agent.train()
    agent.train()
    assert agent.total_steps == 3
    assert agent.target_network.get_weights() == agent.main_network.get_weights()

    agent.train()
    assert agent.target_network.get_weights() != agent.main_network.get_weights()


def test_end_episode_metrics(agent):
    agent.start_episode()
    first = agent.end_episode(total_reward=10.0, episode_length=50, collisions=1, exploration_steps=20)
    agent.start_episode()
    second = agent.end_episode(total_reward=30.0, episode_length=40, collisions=0, exploration_steps=10)

    assert first.episode == 1
    assert first.average_reward == 10.0
    assert first.exploitation_steps == 30
    assert second.episode == 2
    assert second.average_reward == 20.0
    assert agent.latest_metrics() is second


def test_average_reward_uses_last_hundred(agent):
    for i in range(150):
        agent.start_episode()
        record = agent.end_episode(float(i), 1, 0, 0)

    assert record.average_reward == pytest.approx(sum(range(50, 150)) / 100)


def test_metrics_history_is_capped(agent):
    for _ in range(1005):
        agent.start_episode()
        agent.end_episode(0.0, 1, 0, 0)

    assert len(agent.metrics) == 1000
    assert agent.metrics[-1].episode == 1005


def test_episode_loss_is_mean_of_training_steps(agent):
    _fill(agent, 20)
    agent.start_episode()
    losses = [agent.train(), agent.train()]

    record = agent.end_episode(0.0, 10, 0, 0)

    assert record.loss == pytest.approx(sum(losses) / 2)


def test_save_load_round_trip(agent, small_network_config, small_training_config):
    _fill(agent, 20)
    for _ in range(4):
        agent.start_episode()
        agent.train()
        agent.end_episode(5.0, 10, 0, 3)

    blob = agent.save()

    restored = DQNAgent(small_network_config, small_training_config, rng=random.Random(77))
    restored.load(blob)

    state = np.random.default_rng(9).uniform(-1, 1, 40)
    assert np.allclose(restored.get_q_values(state), agent.get_q_values(state))
    assert restored.target_network.get_weights() == agent.target_network.get_weights()
    assert restored.current_episode == 4
    assert restored.total_steps == 4
    assert [m.to_dict() for m in restored.metrics] == [m.to_dict() for m in agent.metrics]
    assert len(restored.replay_buffer) == 0


def test_save_keeps_last_hundred_metrics(agent):
    for _ in range(120):
        agent.start_episode()
        agent.end_episode(1.0, 1, 0, 0)

    data = json.loads(agent.save())

    assert len(data["metrics"]) == 100
    assert data["metrics"][0]["episode"] == 21
    assert data["episode"] == 120


@pytest.mark.parametrize("blob", [
    "not json",
    "[]",
    json.dumps({"episode": 3}),
    json.dumps({"mainNetwork": {"weights": [], "biases": []}, "targetNetwork": {"weights": [], "biases": []}}),
])
def test_load_rejects_bad_blobs_without_side_effects(agent, blob):
    weights = agent.main_network.get_weights()
    agent.current_episode = 7

    with pytest.raises(LoadError):
        agent.load(blob)

    assert agent.main_network.get_weights() == weights
    assert agent.current_episode == 7


def test_load_rejects_other_layout(agent, small_training_config):
    other = DQNAgent(NetworkConfig(hidden_layers=(12,), dropout=0.0), small_training_config, rng=random.Random(1))

    with pytest.raises(LoadError):
        agent.load(other.save())


def test_load_rejects_bad_metrics(agent):
    data = json.loads(agent.save())
    data["metrics"] = [{"episode": 1}]

    with pytest.raises(LoadError):
        agent.load(json.dumps(data))


@pytest.mark.parametrize("field, value", [
    ("target_update_frequency", 0),
    ("batch_size", 0),
    ("gamma", 1.5),
    ("epsilon", -0.2),
    ("replay_buffer_size", -5),
])
def test_load_rejects_out_of_range_training_config(agent, field, value):
    data = json.loads(agent.save())
    data["trainingConfig"][field] = value
    config = agent.config

    with pytest.raises(LoadError):
        agent.load(json.dumps(data))

    assert agent.config is config

    # Training still works on the kept config
    _fill(agent, 20)
    assert agent.train() > 0.0


@pytest.mark.parametrize("field, value", [("episode", -1), ("totalSteps", 2.5), ("episode", True)])
def test_load_rejects_bad_counters(agent, field, value):
    data = json.loads(agent.save())
    data[field] = value

    with pytest.raises(LoadError):
        agent.load(json.dumps(data))

    assert agent.current_episode == 0


def test_load_rejects_non_finite_weights(agent):
    data = json.loads(agent.save())
    data["mainNetwork"]["biases"][0][0] = float("nan")
    weights = agent.main_network.get_weights()

    with pytest.raises(LoadError):
        agent.load(json.dumps(data))

    assert agent.main_network.get_weights() == weights


def test_training_metrics_from_dict():
    record = TrainingMetrics(1, 2.0, 3, 0.5, 2.0, 0, 1, 2, 0.1)
    assert TrainingMetrics.from_dict(record.to_dict()) == record

    with pytest.raises(LoadError):
        TrainingMetrics.from_dict({**record.to_dict(), "loss": "high"})


def test_load_restores_training_config(agent, small_network_config):
    source = DQNAgent(small_network_config, TrainingConfig(gamma=0.5, batch_size=4), rng=random.Random(2))

    agent.load(source.save())

    assert agent.config.gamma == 0.5
    assert agent.replay_buffer.max_size == 50


def test_reset(agent):
    _fill(agent, 20)
    agent.start_episode()
    agent.train()
    agent.end_episode(1.0, 1, 0, 0)

    agent.reset()

    assert agent.current_episode == 0
    assert agent.total_steps == 0
    assert agent.metrics == []
    assert len(agent.replay_buffer) == 0
    assert agent.target_network.get_weights() == agent.main_network.get_weights()
