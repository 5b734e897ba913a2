import random

import pytest

from drone_RL.config import NetworkConfig, TrainingConfig
from drone_RL.telemetry import DroneTelemetry, Vector3


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def small_network_config():
    return NetworkConfig(hidden_layers=(16, 8), dropout=0.0)


@pytest.fixture
def small_training_config():
    return TrainingConfig(batch_size=4, target_update_frequency=3, replay_buffer_size=50)


def make_telemetry(**overrides) -> DroneTelemetry:
    """Hovering drone at 10m with the target 40m away on the x axis."""
    values = dict(
        position=Vector3(0.0, 10.0, 0.0),
        target_position=Vector3(40.0, 10.0, 0.0),
        distance_to_target=40.0,
        is_flying=True,
        is_landed=False,
    )
    values.update(overrides)
    return DroneTelemetry(**values)


@pytest.fixture
def telemetry_factory():
    return make_telemetry
