"""
Hyperparameters and configuration for the drone learning engine.

The configs are plain dataclasses. Their field annotations carry pydantic
constraints, which only apply when a config is rebuilt from untrusted data
(from_dict, or as part of a saved model blob).
"""

from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Annotated, Any, Dict, Tuple

from pydantic import Field, StrictBool, StrictFloat, StrictInt, TypeAdapter, ValidationError

from drone_RL.errors import LoadError

# Constrained field types
PositiveInt = Annotated[StrictInt, Field(gt=0)]
NonNegativeInt = Annotated[StrictInt, Field(ge=0)]
PositiveFloat = Annotated[StrictFloat, Field(gt=0)]
NonNegativeFloat = Annotated[StrictFloat, Field(ge=0)]
UnitFloat = Annotated[StrictFloat, Field(ge=0, le=1)]


@lru_cache(maxsize=None)
def _adapter(type_: Any) -> TypeAdapter:
    return TypeAdapter(type_)


def validate_payload(type_: Any, data: Any, what: str):
    """Validate decoded JSON against ``type_``; any violation raises LoadError."""
    try:
        return _adapter(type_).validate_python(data)
    except ValidationError as e:
        raise LoadError(f"Invalid {what}: {e}") from e


class _ConfigMixin:
    """Dictionary round trip shared by every config dataclass."""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # JSON has no tuples
        return {k: list(v) if isinstance(v, tuple) else v for k, v in data.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Missing keys keep their defaults, unknown keys are ignored."""
        return validate_payload(cls, data, cls.__name__)


@dataclass
class NetworkConfig(_ConfigMixin):
    """Neural network architecture parameters."""
    input_size: PositiveInt = 40                # 3 pos + 3 vel + 3 rot + 4 status + 16 lidar + 3 lidar stats + 2 flags + 6 mission
    hidden_layers: Tuple[PositiveInt, ...] = (256, 128, 64)
    output_size: PositiveInt = 9                # one per DroneAction
    learning_rate: PositiveFloat = 0.0005
    dropout: UnitFloat = 0.1                    # applied in training and inference


@dataclass
class TrainingConfig(_ConfigMixin):
    """DQN training hyperparameters."""
    episode_length: PositiveInt = 3000
    max_episodes: PositiveInt = 100_000
    epsilon: UnitFloat = 0.95                   # starting exploration rate
    epsilon_decay: UnitFloat = 0.9998           # per episode
    epsilon_min: UnitFloat = 0.05
    gamma: UnitFloat = 0.99                     # discount factor
    batch_size: PositiveInt = 32
    target_update_frequency: PositiveInt = 100  # training steps between hard syncs
    replay_buffer_size: PositiveInt = 100_000


@dataclass(frozen=True)
class RewardConfig(_ConfigMixin):
    """Reward shaping coefficients. Immutable once the environment holds it."""
    time_step_penalty: StrictFloat = -0.01
    progress_to_target: StrictFloat = 3.0       # times metres gained
    moving_away_from_target: StrictFloat = -2.0  # times metres lost
    collision: StrictFloat = -30.0
    out_of_bounds: StrictFloat = -100.0
    mission_complete: StrictFloat = 1000.0
    stable_flight_bonus: StrictFloat = 0.2

    # Reward-based damage
    reward_damage_threshold: StrictFloat = -200.0
    reward_damage_amount: NonNegativeFloat = 15.0


@dataclass
class EnvironmentConfig(_ConfigMixin):
    """Episode limits, world bounds and the training schedule."""
    max_steps: PositiveInt = 2000
    max_episode_seconds: PositiveFloat = 120.0
    world_bounds: PositiveFloat = 50.0          # |x| and |z| limit in metres
    max_altitude: PositiveFloat = 100.0
    landing_zone_radius: NonNegativeFloat = 3.0

    # Schedule used by the training driver
    train_interval: PositiveInt = 10            # ticks between train() calls
    episode_end_train_steps: NonNegativeInt = 5
    imitation_batch_size: PositiveInt = 16
    damage_limit: PositiveFloat = 100.0         # accumulated damage that kills the drone


@dataclass
class ImitationConfig(_ConfigMixin):
    """Imitation learning parameters."""
    enabled: StrictBool = False
    max_demonstrations: PositiveInt = 10_000
    imitation_weight: UnitFloat = 0.3           # 30% imitation, 70% reinforcement
    quality_threshold: UnitFloat = 0.6


# World sizes per difficulty; bounds are measured from the origin
_DIFFICULTY_WORLD_SIZE = {
    "beginner": 150.0,
    "intermediate": 200.0,
    "advanced": 250.0,
    "expert": 300.0,
}


def difficulty_preset(name: str) -> EnvironmentConfig:
    """Return an EnvironmentConfig sized for the given difficulty level."""
    try:
        world_size = _DIFFICULTY_WORLD_SIZE[name]
    except KeyError:
        raise ValueError(
            f"Unknown difficulty {name!r}, expected one of {sorted(_DIFFICULTY_WORLD_SIZE)}"
        ) from None
    return EnvironmentConfig(world_bounds=world_size / 2)
