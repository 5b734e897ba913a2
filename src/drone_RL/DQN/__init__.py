"""
DQN (Deep Q-Network) Module for Autonomous Drone Flight
=======================================================

This module implements a Deep Q-Network reinforcement learning agent that
learns to fly a drone to a target and land there, using nothing but a
telemetry snapshot per simulation tick.

## In Drone Flight Context:

- **State** (40 elements): position, velocity, rotation, throttle/battery/
  damage/engine power, 16 LiDAR distances plus their mean/min/max, flight
  flags, target position, distance and direction to target
- **Actions** (9 options): throttle up/down, move left/right/forward/
  backward, rotate left/right, hover
- **Rewards**: shaped per tick by the TrainingEnvironment (progress toward
  the target, altitude bands, obstacle proximity, landing, collisions)
- **Goal**: reach the target and land inside the 3m landing zone

Module Components:
    DQNAgent: The agent that learns and makes decisions
    NeuralNetwork: Feedforward network with manual backpropagation
    ReplayBuffer: Ring buffer of experiences with recency-biased sampling
"""

from drone_RL.DQN.dqn_agent import DQNAgent, TrainingMetrics
from drone_RL.DQN.neural_network import NetworkWeights, NeuralNetwork
from drone_RL.DQN.replay_buffer import Experience, ReplayBuffer

__all__ = [
    "DQNAgent",
    "Experience",
    "NetworkWeights",
    "NeuralNetwork",
    "ReplayBuffer",
    "TrainingMetrics",
]
