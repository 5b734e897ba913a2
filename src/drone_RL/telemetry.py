"""
Telemetry, controls and obstacles exchanged with the flight simulator.

The simulator owns the physics. Each tick it hands the engine an immutable
DroneTelemetry snapshot and receives a DroneAction back, which it maps to
its own control signals (see action_to_controls).
"""

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Final, NamedTuple, Optional, Protocol, Sequence, Tuple

import numpy as np

_log: Final[logging.Logger] = logging.getLogger(__name__)


class DroneAction(IntEnum):
    """Discrete action space. The value is the network output index."""
    THROTTLE_UP = 0
    THROTTLE_DOWN = 1
    MOVE_LEFT = 2
    MOVE_RIGHT = 3
    MOVE_FORWARD = 4
    MOVE_BACKWARD = 5
    ROTATE_LEFT = 6
    ROTATE_RIGHT = 7
    HOVER = 8


ACTION_NAMES: Final[Tuple[str, ...]] = tuple(a.name for a in DroneAction)


class Vector3(NamedTuple):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def length(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def sub(self, other: "Vector3") -> "Vector3":
        return Vector3(self.x - other.x, self.y - other.y, self.z - other.z)

    def distance_to(self, other: "Vector3") -> float:
        return self.sub(other).length()

    def normalize(self) -> "Vector3":
        """Unit vector in the same direction; the zero vector stays zero."""
        length = self.length()
        if length == 0:
            return Vector3()
        return Vector3(self.x / length, self.y / length, self.z / length)


class SensorReading(NamedTuple):
    """One ranged-sensor ray. distance is None when the ray hit nothing."""
    distance: Optional[float]
    hit: str = "none"


@dataclass(frozen=True)
class DroneTelemetry:
    """Per-tick snapshot produced by the physics simulator."""
    position: Vector3 = Vector3()
    velocity: Vector3 = Vector3()
    rotation: Vector3 = Vector3()
    throttle: float = 0.0                       # 0-1
    battery: float = 100.0                      # percent
    damage: float = 0.0                         # percent
    engine_power: float = 0.0                   # 0-1
    lidar_readings: Tuple[SensorReading, ...] = ()
    is_flying: bool = False
    is_landed: bool = True
    is_dead: bool = False
    start_position: Vector3 = Vector3()
    target_position: Vector3 = Vector3()
    mission_completed: bool = False
    distance_to_target: float = 0.0


@dataclass(frozen=True)
class ControlInputs:
    """Control flags as pressed by a pilot or produced from an action."""
    throttle_up: bool = False
    throttle_down: bool = False
    move_left: bool = False
    move_right: bool = False
    move_forward: bool = False
    move_backward: bool = False
    rotate_left: bool = False
    rotate_right: bool = False
    hover: bool = False


ACTION_CONTROL_FLAG: Final = {
    DroneAction.THROTTLE_UP: "throttle_up",
    DroneAction.THROTTLE_DOWN: "throttle_down",
    DroneAction.MOVE_LEFT: "move_left",
    DroneAction.MOVE_RIGHT: "move_right",
    DroneAction.MOVE_FORWARD: "move_forward",
    DroneAction.MOVE_BACKWARD: "move_backward",
    DroneAction.ROTATE_LEFT: "rotate_left",
    DroneAction.ROTATE_RIGHT: "rotate_right",
    DroneAction.HOVER: "hover",
}


def action_to_controls(action: int) -> ControlInputs:
    """Map an action index to controls with exactly one flag set."""
    return ControlInputs(**{ACTION_CONTROL_FLAG[DroneAction(action)]: True})


class Obstacle(Protocol):
    def surface_distance(self, point: Vector3) -> float:
        ...


@dataclass(frozen=True)
class BoxObstacle:
    """Building-like obstacle; size is the full extent on each axis."""
    position: Vector3
    size: Vector3

    def surface_distance(self, point: Vector3) -> float:
        return point.distance_to(self.position) - max(self.size.x, self.size.z) / 2


@dataclass(frozen=True)
class CylinderObstacle:
    """Tree-like obstacle."""
    position: Vector3
    radius: float = 1.0

    def surface_distance(self, point: Vector3) -> float:
        return point.distance_to(self.position) - self.radius


def validate_network_input(values: Sequence[float], expected_size: int) -> bool:
    """Check length and finiteness of a state vector without raising."""
    if len(values) != expected_size:
        _log.error("Invalid input size: expected %d, got %d", expected_size, len(values))
        return False

    bad = np.flatnonzero(~np.isfinite(np.asarray(values, dtype=np.float64)))
    if bad.size:
        _log.error("Invalid input value at index %d: %s", bad[0], values[bad[0]])
        return False

    return True
