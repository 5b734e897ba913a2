"""
Imitation Learning: Learning From a Human Pilot
================================================

## Why Imitate?

Early in training the agent flies at random and rarely reaches the target,
so the landing reward almost never shows up. A few minutes of a human
flying the same missions gives the network examples of what good actions
look like long before reinforcement learning finds them on its own.

## Recording

While a pilot flies manually, record_step() turns the pressed controls into
ONE DroneAction per tick (first match wins):

    throttle up > throttle down > forward > backward
        > left > right > rotate left > rotate right > hover

Ticks with nothing pressed, or whose state barely moved since the last
recorded frame (no component changed by more than 0.01), are skipped.

## Scoring a Flight

When the recording stops the whole flight gets one quality score:

    quality = 0.5
            + 0.4                        if the mission succeeded
            + min(reward / 1000, 0.3)    if reward > 0
            + max(reward / 500, -0.3)    otherwise
            - 0.1 * collisions
            + 0.2 * (120 - seconds) / 120   (only if under 2 minutes)

clamped to [0, 1]. Flights below ``quality_threshold`` are thrown away; the
rest are stamped with their score and kept in a buffer sorted best-first.

## Training

train_from_demonstrations() samples frames (70% from the best half) and
trains the SAME network the DQN agent uses, through the same backward()
primitive:

    target = one_hot(action) * quality

so poor-but-acceptable flights pull on the network less than great ones.
"""

import json
import logging
import random
import time
from dataclasses import asdict, dataclass, replace
from typing import Annotated, Any, Callable, Dict, Final, List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, Field, FiniteFloat, StrictInt

from drone_RL.DQN.neural_network import NeuralNetwork
from drone_RL.config import ImitationConfig, UnitFloat, validate_payload
from drone_RL.environment import STATE_SIZE
from drone_RL.errors import LoadError
from drone_RL.telemetry import ControlInputs, DroneAction, DroneTelemetry

_log: Final[logging.Logger] = logging.getLogger(__name__)

NUM_ACTIONS: Final[int] = len(DroneAction)
STATE_CHANGE_THRESHOLD: Final[float] = 0.01

# Quality score terms
BASE_QUALITY: Final[float] = 0.5
SUCCESS_BONUS: Final[float] = 0.4
REWARD_BONUS_SCALE: Final[float] = 1000.0
REWARD_PENALTY_SCALE: Final[float] = 500.0
MAX_REWARD_TERM: Final[float] = 0.3
COLLISION_PENALTY: Final[float] = 0.1
TIME_BONUS: Final[float] = 0.2
TIME_BONUS_WINDOW: Final[float] = 120.0     # seconds

HIGH_QUALITY_FRACTION: Final[float] = 0.5
HIGH_QUALITY_PROBABILITY: Final[float] = 0.7

# First pressed control wins
_CONTROL_PRIORITY: Final = (
    ("throttle_up", DroneAction.THROTTLE_UP),
    ("throttle_down", DroneAction.THROTTLE_DOWN),
    ("move_forward", DroneAction.MOVE_FORWARD),
    ("move_backward", DroneAction.MOVE_BACKWARD),
    ("move_left", DroneAction.MOVE_LEFT),
    ("move_right", DroneAction.MOVE_RIGHT),
    ("rotate_left", DroneAction.ROTATE_LEFT),
    ("rotate_right", DroneAction.ROTATE_RIGHT),
    ("hover", DroneAction.HOVER),
)


@dataclass
class DemonstrationData:
    """One recorded state/action pair."""
    state: Annotated[List[FiniteFloat], Field(min_length=STATE_SIZE, max_length=STATE_SIZE)]
    action: Annotated[StrictInt, Field(ge=0, lt=NUM_ACTIONS)]
    timestamp: FiniteFloat
    quality: UnitFloat = 1.0        # stamped when the recording stops

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DemonstrationData":
        return validate_payload(cls, data, "demonstration")


class DemonstrationExport(BaseModel):
    """JSON layout written by ImitationLearning.export_demonstrations()."""
    demonstrations: List[DemonstrationData] = []
    config: Optional[ImitationConfig] = None
    exportTime: Optional[float] = None


def controls_to_action(controls: ControlInputs) -> Optional[DroneAction]:
    """Dominant pressed control as an action, or None when nothing is pressed."""
    for flag, action in _CONTROL_PRIORITY:
        if getattr(controls, flag):
            return action
    return None


def states_similar(state1: Sequence[float], state2: Sequence[float]) -> bool:
    """True when no component differs by more than 0.01."""
    if len(state1) != len(state2):
        return False
    diff = np.abs(np.asarray(state1, dtype=np.float64) - np.asarray(state2, dtype=np.float64))
    return bool((diff <= STATE_CHANGE_THRESHOLD).all())


class ImitationLearning:
    """
    Records, scores and replays human demonstrations.

    Args:
        config: Buffer size, quality threshold and blend weight
        clock: Returns seconds; used for frame timestamps and recording length
        rng: Source for demonstration sampling
    """

    def __init__(
        self,
        config: Optional[ImitationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.config = config if config is not None else ImitationConfig()
        self.clock = clock
        self.rng = rng if rng is not None else random.Random()

        self.recording = False
        self.demonstrations: List[DemonstrationData] = []
        self.current_recording: List[DemonstrationData] = []
        self.recording_start_time = 0.0
        self.last_recorded_state: Optional[List[float]] = None

    # ==== RECORDING ====

    def start_recording(self) -> None:
        self.recording = True
        self.current_recording = []
        self.recording_start_time = self.clock()
        self.last_recorded_state = None
        _log.info("Started recording human demonstration")

    def record_step(
        self,
        telemetry: DroneTelemetry,
        controls: ControlInputs,
        state_vector: Sequence[float],
    ) -> bool:
        """
        Record one manual-flight tick. Returns True when a frame was added.

        Nothing is recorded when not recording, when no control is pressed,
        or when the state barely changed since the last recorded frame.
        ``telemetry`` is accepted for parity with the environment's step();
        the state vector already encodes it.
        """
        if not self.recording:
            return False

        action = controls_to_action(controls)
        if action is None:
            return False

        if self.last_recorded_state is not None and states_similar(self.last_recorded_state, state_vector):
            return False

        state = [float(v) for v in state_vector]
        self.current_recording.append(DemonstrationData(state=state, action=int(action), timestamp=self.clock()))
        self.last_recorded_state = list(state)
        return True

    def stop_recording(self, mission_success: bool, total_reward: float, collisions: int) -> Optional[float]:
        """
        Score the recording and keep it if it is good enough.

        Returns:
            The quality score, or None when there was nothing to score
        """
        if not self.recording or not self.current_recording:
            self.recording = False
            return None

        self.recording = False
        quality = self.calculate_demonstration_quality(mission_success, total_reward, collisions)

        if quality >= self.config.quality_threshold:
            for demo in self.current_recording:
                demo.quality = quality
            self._add_demonstrations(self.current_recording)
            _log.info("Recorded %d demonstrations with quality %.2f", len(self.current_recording), quality)
        else:
            _log.info(
                "Demonstration quality too low (%.2f < %.2f), discarding",
                quality, self.config.quality_threshold,
            )

        self.current_recording = []
        return quality

    def calculate_demonstration_quality(self, mission_success: bool, total_reward: float, collisions: int) -> float:
        quality = BASE_QUALITY

        if mission_success:
            quality += SUCCESS_BONUS

        if total_reward > 0:
            quality += min(total_reward / REWARD_BONUS_SCALE, MAX_REWARD_TERM)
        else:
            quality += max(total_reward / REWARD_PENALTY_SCALE, -MAX_REWARD_TERM)

        quality -= collisions * COLLISION_PENALTY

        duration = self.clock() - self.recording_start_time
        quality += max(0.0, (TIME_BONUS_WINDOW - duration) / TIME_BONUS_WINDOW * TIME_BONUS)

        return max(0.0, min(1.0, quality))

    def _add_demonstrations(self, demonstrations: List[DemonstrationData]) -> None:
        self.demonstrations.extend(demonstrations)

        excess = len(self.demonstrations) - self.config.max_demonstrations
        if excess > 0:
            # Drop the oldest frames, whatever their quality
            oldest_first = sorted(range(len(self.demonstrations)), key=lambda i: self.demonstrations[i].timestamp)
            dropped = set(oldest_first[:excess])
            self.demonstrations = [d for i, d in enumerate(self.demonstrations) if i not in dropped]

        self.demonstrations.sort(key=lambda d: d.quality, reverse=True)

    # ==== TRAINING ====

    def train_from_demonstrations(self, network: NeuralNetwork, batch_size: int = 32) -> float:
        """
        Supervise ``network`` toward demonstrated actions.

        Each sampled frame yields a one-hot target over the 9 actions scaled
        by the frame's quality. Returns the mean loss, or 0.0 when the
        buffer holds fewer than ``batch_size`` frames.

        Raises:
            DimensionMismatch, NumericInvalid: a sampled frame does not fit
                the network; raised before any weight is touched
        """
        if len(self.demonstrations) < batch_size:
            return 0.0

        # ==== STEP 1: Sample frames, biased toward the best flights ====
        batch = self.sample_demonstrations(batch_size)

        # ==== STEP 2: Check every state before the first update ====
        states = [network.validate_input(demo.state) for demo in batch]

        # ==== STEP 3: Supervise toward the demonstrated actions ====
        total_loss = 0.0
        for demo, state in zip(batch, states):
            # One-hot on the pilot's action, scaled by how good the flight was
            target = np.zeros(NUM_ACTIONS, dtype=np.float64)
            target[demo.action] = demo.quality

            network.forward(state)
            total_loss += network.backward(target)

        return total_loss / len(batch)

    def sample_demonstrations(self, batch_size: int) -> List[DemonstrationData]:
        """Draw with replacement, 70% of draws from the best half of the buffer."""
        size = len(self.demonstrations)
        high_quality_range = int(size * HIGH_QUALITY_FRACTION)

        batch = []
        for _ in range(batch_size):
            if self.rng.random() < HIGH_QUALITY_PROBABILITY and high_quality_range > 0:
                index = int(self.rng.random() * high_quality_range)
            else:
                index = int(self.rng.random() * size)
            batch.append(self.demonstrations[index])
        return batch

    # ==== MANAGEMENT ====

    def set_enabled(self, enabled: bool) -> None:
        self.config = replace(self.config, enabled=enabled)

    def stats(self) -> Dict[str, Any]:
        total = len(self.demonstrations)
        return {
            "enabled": self.config.enabled,
            "recording": self.recording,
            "total_demonstrations": total,
            "average_quality": sum(d.quality for d in self.demonstrations) / total if total else 0.0,
            "current_recording_length": len(self.current_recording),
        }

    def clear_demonstrations(self) -> None:
        self.demonstrations = []
        self.current_recording = []
        _log.info("Cleared all demonstrations")

    def export_demonstrations(self) -> str:
        return json.dumps({
            "demonstrations": [d.to_dict() for d in self.demonstrations],
            "config": self.config.to_dict(),
            "exportTime": time.time(),
        })

    def import_demonstrations(self, data: str) -> int:
        """
        Replace the buffer with demonstrations from an export.

        Returns:
            Number of demonstrations imported

        Raises:
            LoadError: the payload is malformed; the buffer is unchanged
        """
        try:
            imported = json.loads(data)
        except (TypeError, ValueError) as e:
            raise LoadError(f"Invalid demonstration data: {e}") from e

        export = validate_payload(DemonstrationExport, imported, "demonstration data")

        demonstrations = sorted(export.demonstrations, key=lambda d: d.quality, reverse=True)
        self.demonstrations = demonstrations[: self.config.max_demonstrations]

        _log.info("Imported %d demonstrations", len(self.demonstrations))
        return len(self.demonstrations)
