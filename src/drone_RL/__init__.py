"""
Autonomous drone flight learning engine.

A DQN agent with a hand-written feedforward network, a training environment
that turns simulator telemetry into states and shaped rewards, and an
imitation learner that replays scored human demonstrations.
"""

from drone_RL.DQN import DQNAgent, Experience, NetworkWeights, NeuralNetwork, ReplayBuffer, TrainingMetrics
from drone_RL.config import (
    EnvironmentConfig,
    ImitationConfig,
    NetworkConfig,
    RewardConfig,
    TrainingConfig,
    difficulty_preset,
)
from drone_RL.environment import FlightPhase, RewardDamage, StepResult, TrainingEnvironment, TrainingState
from drone_RL.errors import DimensionMismatch, DroneRLError, InvalidWeights, LoadError, NumericInvalid
from drone_RL.imitation import DemonstrationData, ImitationLearning
from drone_RL.telemetry import (
    ACTION_NAMES,
    BoxObstacle,
    ControlInputs,
    CylinderObstacle,
    DroneAction,
    DroneTelemetry,
    SensorReading,
    Vector3,
    action_to_controls,
    validate_network_input,
)

__version__ = "0.1.0"
