"""
Tests for the training driver against a scripted simulator.
"""

import random
from dataclasses import replace

import pytest

from drone_RL.DQN.dqn_agent import DQNAgent
from drone_RL.config import EnvironmentConfig, ImitationConfig, RewardConfig
from drone_RL.environment import TrainingEnvironment
from drone_RL.imitation import DemonstrationData, ImitationLearning
from drone_RL.telemetry import DroneAction
from drone_RL.training import run_episode, train

from conftest import make_telemetry


class ScriptedSimulator:
    """Drone that drifts 1m closer to the target per tick and fails on cue."""

    def __init__(self, die_at=None, crash_at=None, nan_at=None):
        self.die_at = die_at
        self.crash_at = crash_at
        self.nan_at = nan_at
        self.resets = 0
        self.reset()

    @property
    def obstacles(self):
        return []

    def reset(self):
        self.resets += 1
        self.tick = 0
        self.actions = []
        self.damage_calls = []
        self.telemetry = make_telemetry(throttle=0.5)
        return self.telemetry

    def advance(self, action):
        self.tick += 1
        self.actions.append(action)

        damage = self.telemetry.damage + (10.0 if self.tick == self.crash_at else 0.0)
        self.telemetry = make_telemetry(
            throttle=float("nan") if self.tick == self.nan_at else 0.5,
            damage=damage,
            is_dead=self.telemetry.is_dead or self.tick == self.die_at,
            distance_to_target=max(0.0, self.telemetry.distance_to_target - 1.0),
        )
        return self.telemetry

    def apply_damage(self, amount, kill):
        self.damage_calls.append((amount, kill))
        self.telemetry = replace(
            self.telemetry,
            damage=self.telemetry.damage + amount,
            is_dead=self.telemetry.is_dead or kill,
        )
        return self.telemetry


ENV_CONFIG = EnvironmentConfig(max_steps=5, train_interval=2, episode_end_train_steps=5, imitation_batch_size=16)


@pytest.fixture
def agent(small_network_config, small_training_config, rng):
    return DQNAgent(small_network_config, small_training_config, rng=rng)


@pytest.fixture
def env(agent, clock):
    return TrainingEnvironment(agent, config=ENV_CONFIG, clock=clock)


def test_episode_runs_until_step_limit(env):
    simulator = ScriptedSimulator()

    result = run_episode(env, simulator, rng=random.Random(0))

    assert result.steps == 5
    assert len(simulator.actions) == 4
    assert not result.died
    assert not result.mission_completed
    assert env.agent.current_episode == 1
    assert len(env.agent.metrics) == 1
    assert env.agent.metrics[0].total_reward == pytest.approx(result.total_reward)


def test_training_schedule(env):
    env.start_training()

    result = run_episode(env, ScriptedSimulator(), rng=random.Random(0))

    # Only the end-of-episode passes find a full batch (4 transitions)
    assert len(env.agent.replay_buffer) == 4
    assert env.agent.total_steps == 5
    assert result.loss > 0.0


def test_no_training_outside_training_mode(env):
    run_episode(env, ScriptedSimulator(), rng=random.Random(0))
    run_episode(env, ScriptedSimulator(), rng=random.Random(0))

    assert len(env.agent.replay_buffer) == 8
    assert env.agent.total_steps == 0


def test_death_ends_episode(env):
    simulator = ScriptedSimulator(die_at=2)

    result = run_episode(env, simulator, rng=random.Random(0))

    assert result.died
    assert result.steps == 3
    assert env.agent.replay_buffer[-1].done


def test_collisions_are_counted(env):
    result = run_episode(env, ScriptedSimulator(crash_at=2), rng=random.Random(0))

    assert result.collisions == 1
    assert env.agent.metrics[-1].collisions == 1


def test_reward_damage_is_applied(agent, clock):
    env = TrainingEnvironment(agent, RewardConfig(time_step_penalty=-150.0), ENV_CONFIG, clock=clock)
    simulator = ScriptedSimulator()

    result = run_episode(env, simulator, rng=random.Random(0))

    assert simulator.damage_calls == [(15.0, False)]
    assert result.collisions == 0


def test_reward_damage_can_kill(agent, clock):
    env = TrainingEnvironment(agent, RewardConfig(time_step_penalty=-450.0), ENV_CONFIG, clock=clock)
    simulator = ScriptedSimulator()

    result = run_episode(env, simulator, rng=random.Random(0))

    assert simulator.damage_calls == [(15.0, True)]
    assert result.died
    assert result.steps == 2


def test_invalid_telemetry_falls_back_to_hover(env):
    simulator = ScriptedSimulator(nan_at=1)

    result = run_episode(env, simulator, rng=random.Random(0))

    assert simulator.actions[1] is DroneAction.HOVER
    assert result.steps == 5
    assert env.training_state.current_step == 5
    assert env.agent.metrics[-1].episode_length == 5


def _imitation(weight):
    imitation = ImitationLearning(ImitationConfig(enabled=True, imitation_weight=weight), rng=random.Random(0))
    imitation.demonstrations = [
        DemonstrationData(state=[0.0] * 40, action=i % 9, timestamp=float(i), quality=0.8) for i in range(20)
    ]
    return imitation


@pytest.mark.parametrize("weight, expected_calls", [(1.0, [16]), (0.0, [])])
def test_imitation_blend(env, monkeypatch, weight, expected_calls):
    imitation = _imitation(weight)
    calls = []
    monkeypatch.setattr(
        imitation, "train_from_demonstrations", lambda network, batch_size: calls.append(batch_size) or 0.0
    )
    env.start_training()

    run_episode(env, ScriptedSimulator(), imitation=imitation, rng=random.Random(0))

    assert calls == expected_calls


def test_imitation_skipped_when_disabled(env, monkeypatch):
    imitation = _imitation(1.0)
    imitation.set_enabled(False)
    calls = []
    monkeypatch.setattr(
        imitation, "train_from_demonstrations", lambda network, batch_size: calls.append(batch_size) or 0.0
    )
    env.start_training()

    run_episode(env, ScriptedSimulator(), imitation=imitation, rng=random.Random(0))

    assert calls == []


def test_train_loop_saves_models(env, tmp_path, small_network_config, small_training_config, capsys):
    simulator = ScriptedSimulator()
    path = tmp_path / "drone_model.json"

    rewards = train(env, simulator, num_episodes=3, save_path=path, rng=random.Random(0))

    assert len(rewards) == 3
    assert simulator.resets == 4
    assert env.agent.current_episode == 3
    assert not env.training_state.is_training
    assert path.exists()
    assert (tmp_path / "drone_model_best.json").exists()
    assert "Training complete!" in capsys.readouterr().out

    restored = DQNAgent(small_network_config, small_training_config, rng=random.Random(5))
    restored.load(path.read_text())
    assert restored.current_episode == 3


def test_train_loop_without_saving(env):
    rewards = train(env, ScriptedSimulator(), num_episodes=2, rng=random.Random(0))

    assert len(rewards) == 2
    assert not env.training_state.model_saved
