"""
DQN Agent: The Learning Controller
===================================

## Overview

This module implements the DQN (Deep Q-Network) agent that learns to fly
the drone. The agent:
1. Observes the 40-element state vector built by the TrainingEnvironment
2. Picks one of 9 discrete actions (throttle, strafe, move, rotate, hover)
3. Learns from stored transitions to make better decisions

## Key Concepts Implemented:

### 1. Target Network

The Bellman target of each transition is computed with a second network
whose weights are a frozen copy of the main network. The copy is refreshed
("hard sync") every ``target_update_frequency`` training steps. There is no
soft/Polyak blending.

### 2. Experience Replay

Transitions go into a ReplayBuffer and training draws recency-biased
batches from it (see replay_buffer.py).

### 3. Epsilon-Greedy Exploration with a Per-Episode Schedule

    epsilon(episode) = max(epsilon_min, epsilon_0 * epsilon_decay ** episode)

Epsilon only depends on the episode counter, so it never increases until
reset() rewinds the counter.

### 4. Single-Slot Supervision

For each sampled transition the training target equals the network's own
current output with ONLY the taken action's slot replaced:

    y = reward                                         if done
    y = reward + gamma * max(target_net(next_state))   otherwise

    target = main_net(state); target[action] = y

All other slots carry zero error, so only the chosen action is supervised.

## Training Loop (conceptual):

    agent.start_episode()
    while not done:
        action = agent.select_action(state, agent.get_current_epsilon())
        ...
        agent.store_transition(state, action, reward, next_state, done)
        if tick % 10 == 0:
            agent.train()
    agent.end_episode(total_reward, length, collisions, exploration_steps)
"""

import json
import logging
import random
from dataclasses import asdict, dataclass
from typing import Any, Dict, Final, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, FiniteFloat, StrictFloat, StrictInt

from drone_RL.DQN.neural_network import NetworkWeights, NeuralNetwork
from drone_RL.DQN.replay_buffer import Experience, ReplayBuffer
from drone_RL.config import NetworkConfig, NonNegativeFloat, NonNegativeInt, TrainingConfig, UnitFloat, validate_payload
from drone_RL.errors import InvalidWeights, LoadError
from drone_RL.telemetry import ACTION_CONTROL_FLAG, DroneAction

_log: Final[logging.Logger] = logging.getLogger(__name__)

METRICS_HISTORY: Final[int] = 1000
SAVED_METRICS: Final[int] = 100
AVERAGE_WINDOW: Final[int] = 100


@dataclass
class TrainingMetrics:
    """Summary of one finished episode."""
    episode: NonNegativeInt
    total_reward: StrictFloat
    episode_length: NonNegativeInt
    epsilon: UnitFloat
    average_reward: StrictFloat     # trailing 100-episode mean, this one included
    collisions: NonNegativeInt
    exploration_steps: NonNegativeInt
    exploitation_steps: StrictInt
    loss: NonNegativeFloat          # mean train() loss during the episode

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingMetrics":
        return validate_payload(cls, data, "metrics entry")


class WeightsPayload(BaseModel):
    """Nested-list weights as written by NetworkWeights.to_dict()."""
    weights: List[List[List[FiniteFloat]]]
    biases: List[List[FiniteFloat]]


class ModelBlob(BaseModel):
    """JSON layout written by DQNAgent.save()."""
    mainNetwork: WeightsPayload
    targetNetwork: WeightsPayload
    config: Optional[NetworkConfig] = None
    trainingConfig: Optional[TrainingConfig] = None
    episode: NonNegativeInt = 0
    totalSteps: NonNegativeInt = 0
    metrics: List[TrainingMetrics] = []


class DQNAgent:
    """
    Deep Q-Network agent for autonomous drone flight.

    Key Components:
        main_network: Network being trained and used for action selection
        target_network: Periodically synced copy used for Bellman targets
        replay_buffer: Ring buffer of past transitions

    Actions (DroneAction values):
        0: THROTTLE_UP      1: THROTTLE_DOWN
        2: MOVE_LEFT        3: MOVE_RIGHT
        4: MOVE_FORWARD     5: MOVE_BACKWARD
        6: ROTATE_LEFT      7: ROTATE_RIGHT
        8: HOVER

    Example Usage:
        >>> agent = DQNAgent(NetworkConfig(), TrainingConfig(), rng=random.Random(0))
        >>> agent.start_episode()
        >>> action = agent.select_action(state, agent.get_current_epsilon())
        >>> control = agent.get_action_value(action)   # 'throttle_up', ...
    """

    # Action mapping: network output index -> control the simulator applies
    ACTION_MAP = ACTION_CONTROL_FLAG

    def __init__(
        self,
        network_config: Optional[NetworkConfig] = None,
        training_config: Optional[TrainingConfig] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Args:
            network_config: Layer sizes, learning rate and dropout
            training_config: Gamma, epsilon schedule, batch size, buffer size
                and target sync frequency
            rng: Seedable source shared by both networks and the buffer
        """
        self.network_config = network_config if network_config is not None else NetworkConfig()
        self.config = training_config if training_config is not None else TrainingConfig()
        self.rng = rng if rng is not None else random.Random()

        self.main_network = NeuralNetwork(self.network_config, rng=self.rng)
        self.target_network = NeuralNetwork(self.network_config, rng=self.rng)
        self.replay_buffer = ReplayBuffer(self.config.replay_buffer_size, rng=self.rng)

        self.metrics: List[TrainingMetrics] = []
        self.current_episode = 0
        self.total_steps = 0        # train() calls that actually trained

        self._episode_loss = 0.0
        self._episode_train_calls = 0

        # Start both networks from identical weights
        self.update_target_network()

    # ==== ACTING ====

    def select_action(self, state: np.ndarray, epsilon: Optional[float] = None) -> int:
        """Epsilon-greedy action from the main network (current epsilon by default)."""
        return self.act(state, epsilon)[0]

    def act(self, state: np.ndarray, epsilon: Optional[float] = None) -> Tuple[int, bool]:
        """Return ``(action, explored)`` where explored tells which branch was taken."""
        if epsilon is None:
            epsilon = self.get_current_epsilon()
        return self.main_network.select_action_with_info(state, epsilon)

    def get_action_value(self, action_idx: int) -> str:
        """Name of the control flag the simulator should raise for this action."""
        return self.ACTION_MAP[DroneAction(action_idx)]

    def get_q_values(self, state: np.ndarray) -> np.ndarray:
        return self.main_network.forward(state).numpy()

    # ==== LEARNING ====

    def store_experience(self, experience: Experience) -> None:
        self.replay_buffer.store(experience)

    def store_transition(
        self,
        state: np.ndarray,
        action: int,
        reward: float,
        next_state: np.ndarray,
        done: bool
    ) -> None:
        self.replay_buffer.push(state, action, reward, next_state, done)

    def train(self) -> float:
        """
        One training step over a replay batch.

        Returns:
            Mean loss over the batch, or 0.0 when the buffer holds fewer
            than batch_size experiences (nothing is trained then)
        """
        if len(self.replay_buffer) < self.config.batch_size:
            return 0.0

        batch = self.replay_buffer.sample_batch(self.config.batch_size)
        total_loss = 0.0

        for experience in batch:
            current_q = self.main_network.forward(experience.state)

            if experience.done:
                target_q = experience.reward
            else:
                next_q = self.target_network.forward(experience.next_state)
                target_q = experience.reward + self.config.gamma * float(next_q.max())

            target_output = current_q.clone()
            target_output[experience.action] = target_q

            total_loss += self.main_network.backward(target_output)

        self.total_steps += 1
        if self.total_steps % self.config.target_update_frequency == 0:
            self.update_target_network()

        loss = total_loss / len(batch)
        self._episode_loss += loss
        self._episode_train_calls += 1
        return loss

    def update_target_network(self) -> None:
        """Hard sync: copy main network weights into the target network."""
        self.target_network.set_weights(self.main_network.get_weights())
        _log.debug("Target network synced at step %d", self.total_steps)

    def get_current_epsilon(self) -> float:
        decayed = self.config.epsilon * self.config.epsilon_decay ** self.current_episode
        return max(decayed, self.config.epsilon_min)

    # ==== EPISODE BOOKKEEPING ====

    def start_episode(self) -> None:
        self.current_episode += 1
        self._episode_loss = 0.0
        self._episode_train_calls = 0

    def end_episode(
        self,
        total_reward: float,
        episode_length: int,
        collisions: int,
        exploration_steps: int
    ) -> TrainingMetrics:
        """Record metrics for the finished episode and return them."""
        recent = self.metrics[-(AVERAGE_WINDOW - 1):]
        average_reward = (sum(m.total_reward for m in recent) + total_reward) / (len(recent) + 1)

        record = TrainingMetrics(
            episode=self.current_episode,
            total_reward=total_reward,
            episode_length=episode_length,
            epsilon=self.get_current_epsilon(),
            average_reward=average_reward,
            collisions=collisions,
            exploration_steps=exploration_steps,
            exploitation_steps=episode_length - exploration_steps,
            loss=self._episode_loss / self._episode_train_calls if self._episode_train_calls else 0.0,
        )
        self.metrics.append(record)

        if len(self.metrics) > METRICS_HISTORY:
            self.metrics = self.metrics[-METRICS_HISTORY:]

        return record

    def latest_metrics(self) -> Optional[TrainingMetrics]:
        return self.metrics[-1] if self.metrics else None

    def buffer_stats(self) -> Dict[str, float]:
        return self.replay_buffer.stats()

    # ==== PERSISTENCE ====

    def save(self) -> str:
        """
        Serialize the agent to a JSON string.

        Contains both networks, both configs, the episode and step counters
        and the last 100 episode metrics. The replay buffer is NOT saved.
        """
        return json.dumps({
            "mainNetwork": self.main_network.get_weights().to_dict(),
            "targetNetwork": self.target_network.get_weights().to_dict(),
            "config": self.network_config.to_dict(),
            "trainingConfig": self.config.to_dict(),
            "episode": self.current_episode,
            "totalSteps": self.total_steps,
            "metrics": [m.to_dict() for m in self.metrics[-SAVED_METRICS:]],
        })

    def load(self, model_data: str) -> None:
        """
        Restore a blob written by save().

        Everything is parsed and validated before any state changes, so a
        malformed blob leaves the agent exactly as it was.

        Raises:
            LoadError: the blob is not valid JSON, breaks the ModelBlob
                layout or its value ranges, or its weights do not fit this
                agent's network layout
        """
        try:
            data = json.loads(model_data)
        except (TypeError, ValueError) as e:
            raise LoadError(f"Invalid model data: {e}") from e

        blob = validate_payload(ModelBlob, data, "model data")

        network_config = blob.config if blob.config is not None else self.network_config
        if network_config.to_dict() != self.network_config.to_dict():
            raise LoadError(f"Model was saved with a different network layout: {network_config}")

        try:
            main_weights = NetworkWeights.from_dict(blob.mainNetwork.model_dump())
            target_weights = NetworkWeights.from_dict(blob.targetNetwork.model_dump())
            self.main_network.validate_weights(main_weights)
            self.target_network.validate_weights(target_weights)
        except InvalidWeights as e:
            raise LoadError(f"Invalid model data: {e}") from e

        # Validated, now commit
        self.main_network.set_weights(main_weights)
        self.target_network.set_weights(target_weights)
        if blob.trainingConfig is not None:
            self.config = blob.trainingConfig
        self.current_episode = blob.episode
        self.total_steps = blob.totalSteps
        self.metrics = list(blob.metrics)

        _log.info("Model loaded: Episode %d, Total steps: %d", self.current_episode, self.total_steps)

    def reset(self) -> None:
        """Fresh networks, empty buffer, counters and metrics cleared."""
        self.current_episode = 0
        self.total_steps = 0
        self.metrics = []
        self._episode_loss = 0.0
        self._episode_train_calls = 0
        self.replay_buffer.clear()

        self.main_network = NeuralNetwork(self.network_config, rng=self.rng)
        self.target_network = NeuralNetwork(self.network_config, rng=self.rng)
        self.update_target_network()
