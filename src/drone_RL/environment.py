"""
Training Environment: From Telemetry to States and Rewards
===========================================================

## What Does the Environment Do?

The physics lives in an external simulator. Every tick it hands over an
immutable DroneTelemetry snapshot and the environment:

1. Encodes it as the 40-element state vector the network reads
2. Asks the DQN agent for the next action
3. Scores the tick with a shaped reward
4. Stores the transition (previous state, previous action) -> this state

## Reward Shaping

Reaching the landing zone is rare early on, so the reward adds many small
signals on every tick instead of one big one at the end:

    reward = time step penalty           (-0.01, keeps the drone moving)
           + 3.0 * metres gained  /  -2.0 * metres lost toward the target
           + proximity tiers              (within 50m / 20m / 10m / 5m)
           + 1000 for landing in the zone
           + landing approach / stable flight / altitude band bonuses
           - 30 on the tick the drone dies, -100 while out of bounds
           - obstacle proximity penalty   (nearest obstacle under 10m)

Nothing is clamped. A run of bad ticks can also hurt the drone directly:
see check_reward_based_damage().

## Episode lifecycle


    IDLE --first step--> AIRBORNE --+--> MISSION_COMPLETE
                                    +--> DEAD
                                    +--> TIMEOUT
    start_episode() returns to IDLE.
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Final, Iterable, List, NamedTuple, Optional

import numpy as np

from drone_RL.DQN.dqn_agent import DQNAgent, TrainingMetrics
from drone_RL.DQN.replay_buffer import Experience
from drone_RL.config import EnvironmentConfig, RewardConfig
from drone_RL.telemetry import DroneAction, DroneTelemetry, Obstacle

_log: Final[logging.Logger] = logging.getLogger(__name__)

# State vector normalization. Changing any of these breaks saved models.
POSITION_SCALE: Final[float] = 50.0
VELOCITY_SCALE: Final[float] = 10.0
LIDAR_MAX_RANGE: Final[float] = 50.0
LIDAR_RAYS: Final[int] = 16
TARGET_DISTANCE_SCALE: Final[float] = 100.0
STATE_SIZE: Final[int] = 40

# Reward shaping
PROXIMITY_RANGE: Final[float] = 50.0
NEAR_TARGET_DISTANCE: Final[float] = 8.0
OPTIMAL_ALTITUDE_MIN: Final[float] = 5.0
OPTIMAL_ALTITUDE_MAX: Final[float] = 20.0
STABLE_SPEED: Final[float] = 3.0
OBSTACLE_AWARENESS: Final[float] = 10.0

RECENT_REWARDS: Final[int] = 100


class FlightPhase(Enum):
    IDLE = "idle"
    AIRBORNE = "airborne"
    MISSION_COMPLETE = "mission_complete"
    DEAD = "dead"
    TIMEOUT = "timeout"


class RewardDamage(NamedTuple):
    should_take_damage: bool
    damage_amount: float
    should_die: bool


class StepResult(NamedTuple):
    action: DroneAction
    reward: float
    done: bool


@dataclass
class TrainingState:
    """Mutable session state of the environment."""
    is_training: bool = False
    current_episode: int = 0
    current_step: int = 0
    total_steps: int = 0
    episode_reward: float = 0.0
    best_reward: float = -math.inf
    recent_rewards: List[float] = field(default_factory=list)
    metrics: List[TrainingMetrics] = field(default_factory=list)
    model_saved: bool = False
    last_save_time: float = 0.0


class TrainingEnvironment:
    """
    Drives a DQNAgent from simulator telemetry.

    Args:
        agent: The learner; the environment calls act/store/train on it
        reward_config: Reward coefficients (immutable)
        config: Episode limits and world bounds
        clock: Returns seconds; episode durations are measured with it
    """

    def __init__(
        self,
        agent: DQNAgent,
        reward_config: Optional[RewardConfig] = None,
        config: Optional[EnvironmentConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.agent = agent
        self.reward_config = reward_config if reward_config is not None else RewardConfig()
        self.config = config if config is not None else EnvironmentConfig()
        self.clock = clock

        self.phase = FlightPhase.IDLE
        self._state = TrainingState()
        self._reset_episode_tracking()

    def _reset_episode_tracking(self) -> None:
        self.episode_start_time = self.clock()
        self.exploration_steps = 0
        self.previous_state: Optional[np.ndarray] = None
        self.previous_action: Optional[int] = None
        self.previous_distance: Optional[float] = None
        self.previous_is_dead = False
        self.last_reward_damage_check = 0.0

    # ==== STATE ENCODING ====

    def drone_state_to_vector(self, telemetry: DroneTelemetry) -> np.ndarray:
        """
        Encode telemetry as the 40-element network input.

        Layout:
            0-2    position / 50
            3-5    tanh(velocity / 10)
            6-8    rotation / pi
            9-12   throttle, battery / 100, damage / 100, engine power
            13-28  16 LiDAR distances / 50, capped at 1 (missing rays and
                   zero readings = max range)
            29-31  mean, min, max of those 16 readings
            32-33  is_flying, is_landed
            34-36  target position / 50
            37     distance to target / 100, capped at 1
            38-39  x and z of the unit direction to the target
        """
        position = telemetry.position
        velocity = telemetry.velocity
        rotation = telemetry.rotation

        lidar = []
        for i in range(LIDAR_RAYS):
            reading = telemetry.lidar_readings[i] if i < len(telemetry.lidar_readings) else None
            # A zero distance reads as "nothing hit", same as a missing ray
            distance = reading.distance if reading is not None and reading.distance else LIDAR_MAX_RANGE
            lidar.append(distance)

        direction = telemetry.target_position.sub(position).normalize()

        vector = [
            position.x / POSITION_SCALE,
            position.y / POSITION_SCALE,
            position.z / POSITION_SCALE,
            math.tanh(velocity.x / VELOCITY_SCALE),
            math.tanh(velocity.y / VELOCITY_SCALE),
            math.tanh(velocity.z / VELOCITY_SCALE),
            rotation.x / math.pi,
            rotation.y / math.pi,
            rotation.z / math.pi,
            telemetry.throttle,
            telemetry.battery / 100,
            telemetry.damage / 100,
            telemetry.engine_power,
            *(min(d / LIDAR_MAX_RANGE, 1.0) for d in lidar),
            min(sum(lidar) / LIDAR_RAYS / LIDAR_MAX_RANGE, 1.0),
            min(min(lidar) / LIDAR_MAX_RANGE, 1.0),
            min(max(lidar) / LIDAR_MAX_RANGE, 1.0),
            1.0 if telemetry.is_flying else 0.0,
            1.0 if telemetry.is_landed else 0.0,
            telemetry.target_position.x / POSITION_SCALE,
            telemetry.target_position.y / POSITION_SCALE,
            telemetry.target_position.z / POSITION_SCALE,
            min(telemetry.distance_to_target / TARGET_DISTANCE_SCALE, 1.0),
            direction.x,
            direction.z,
        ]
        return np.array(vector, dtype=np.float64)

    # ==== REWARD ====

    def calculate_reward(
        self,
        telemetry: DroneTelemetry,
        action: int,
        obstacles: Iterable[Obstacle] = (),
        previous_distance: Optional[float] = None,
    ) -> float:
        """
        Shaped reward for one tick. Pure with respect to its arguments and
        the episode's death flag; every term is added, none is clamped.

        ``action`` is accepted for a stable call signature; no term depends
        on it yet.
        """
        rc = self.reward_config
        position = telemetry.position
        current_distance = telemetry.distance_to_target
        speed = telemetry.velocity.length()
        alive_and_flying = telemetry.is_flying and not telemetry.is_dead

        reward = rc.time_step_penalty

        # Progress toward / away from the target
        if previous_distance is not None:
            if current_distance < previous_distance:
                reward += rc.progress_to_target * (previous_distance - current_distance)
            elif current_distance > previous_distance:
                reward += rc.moving_away_from_target * (current_distance - previous_distance)

        # Proximity tiers
        if current_distance <= PROXIMITY_RANGE:
            reward += max(0.0, (PROXIMITY_RANGE - current_distance) / PROXIMITY_RANGE) * 0.5
            if current_distance <= 20:
                reward += 0.5
            if current_distance <= 10:
                reward += 1.0
            if current_distance <= 5:
                reward += 2.0

        in_landing_zone = current_distance <= self.config.landing_zone_radius

        if in_landing_zone and telemetry.is_landed and not telemetry.mission_completed:
            reward += rc.mission_complete
            _log.info("Mission completed: +%.1f", rc.mission_complete)

        if in_landing_zone and telemetry.is_flying and position.y <= 3.0 and speed <= 2.0:
            reward += 0.3

        # Collision penalty only on the tick the drone dies
        if telemetry.is_dead and not self.previous_is_dead:
            reward += rc.collision
            _log.info("Collision: %.1f", rc.collision)

        bounds = self.config.world_bounds
        if (abs(position.x) > bounds or abs(position.z) > bounds
                or position.y < 0 or position.y > self.config.max_altitude):
            reward += rc.out_of_bounds
            _log.debug("Out of bounds at %s: %.1f", tuple(position), rc.out_of_bounds)

        if alive_and_flying and speed < STABLE_SPEED:
            reward += rc.stable_flight_bonus

        if alive_and_flying:
            reward += self._altitude_reward(position.y, current_distance, in_landing_zone)

        if telemetry.is_flying:
            reward += self._obstacle_penalty(position, obstacles)

        return reward

    def _altitude_reward(self, altitude: float, distance: float, in_landing_zone: bool) -> float:
        if in_landing_zone:
            # Should be descending to land
            return 0.5 if altitude <= 3.0 else (3.0 - altitude) * 0.2

        if distance <= NEAR_TARGET_DISTANCE:
            if 2.0 <= altitude <= 12.0:
                return 0.2
            return -0.1 if altitude < 2.0 else 0.0

        # Cruise
        if OPTIMAL_ALTITUDE_MIN <= altitude <= OPTIMAL_ALTITUDE_MAX:
            return 0.2
        if altitude < OPTIMAL_ALTITUDE_MIN:
            penalty = (OPTIMAL_ALTITUDE_MIN - altitude) * -0.2
            if altitude < 2.0:
                penalty += -0.5
            return penalty
        return (altitude - OPTIMAL_ALTITUDE_MAX) * -0.1

    @staticmethod
    def _obstacle_penalty(position, obstacles: Iterable[Obstacle]) -> float:
        nearest = min((o.surface_distance(position) for o in obstacles), default=math.inf)
        if nearest >= OBSTACLE_AWARENESS:
            return 0.0
        if nearest < 2:
            return -2.0
        if nearest < 4:
            return -1.0
        if nearest < 6:
            return -0.5
        return -0.1

    def check_reward_based_damage(self, cumulative_reward: float) -> RewardDamage:
        """
        Damage the drone when the episode reward sinks below the threshold.

        Fires once, on the call where the cumulative reward crosses the
        (negative) threshold from above. Crossing to twice the threshold
        or worse also asks for the drone to die.
        """
        threshold = self.reward_config.reward_damage_threshold
        crossed = cumulative_reward <= threshold < self.last_reward_damage_check
        self.last_reward_damage_check = cumulative_reward

        if not crossed:
            return RewardDamage(False, 0.0, False)

        should_die = cumulative_reward <= threshold * 2
        _log.info(
            "Reward damage: total reward %.1f <= %.1f, applying %.1f damage%s",
            cumulative_reward, threshold, self.reward_config.reward_damage_amount,
            " (fatal)" if should_die else "",
        )
        return RewardDamage(True, self.reward_config.reward_damage_amount, should_die)

    # ==== EPISODES ====

    def start_episode(self) -> None:
        self.agent.start_episode()
        self._state.current_episode = self.agent.current_episode
        self._state.current_step = 0
        self._state.episode_reward = 0.0
        self._reset_episode_tracking()
        self.phase = FlightPhase.IDLE
        _log.info("Episode %d started", self._state.current_episode)

    def is_episode_complete(self, telemetry: Optional[DroneTelemetry] = None) -> bool:
        if telemetry is not None and telemetry.mission_completed:
            return True
        return (
            self._state.current_step >= self.config.max_steps
            or self.clock() - self.episode_start_time >= self.config.max_episode_seconds
        )

    def step(self, telemetry: DroneTelemetry, obstacles: Iterable[Obstacle] = ()) -> StepResult:
        """
        Process one simulator tick.

        Returns:
            (action, reward, done) where action is what the drone should do
            next and done tells whether the episode is over

        Raises:
            NumericInvalid: the telemetry produced a non-finite state vector;
                nothing is recorded for this tick
        """
        obstacles = list(obstacles)

        # ==== STEP 1: Encode the telemetry and pick the next action ====
        state = self.drone_state_to_vector(telemetry)
        action, explored = self.agent.act(state, self.agent.get_current_epsilon())
        if explored:
            self.exploration_steps += 1

        # ==== STEP 2: Score this tick ====
        reward = self.calculate_reward(telemetry, action, obstacles, self.previous_distance)

        self.previous_distance = telemetry.distance_to_target
        self.previous_is_dead = telemetry.is_dead

        self._count_tick(reward)
        done = telemetry.is_dead or self.is_episode_complete(telemetry)

        # ==== STEP 3: Store the transition that led here ====
        if self.previous_state is not None and self.previous_action is not None:
            self.agent.store_experience(Experience(
                state=self.previous_state,
                action=self.previous_action,
                reward=reward,
                next_state=state,
                done=done,
                timestamp=self.clock(),
            ))

        self.previous_state = state
        self.previous_action = action
        self.phase = self._phase_after(telemetry, done)

        return StepResult(DroneAction(action), reward, done)

    def skip_tick(self, telemetry: DroneTelemetry) -> StepResult:
        """
        Count a tick whose telemetry could not be encoded.

        The drone hovers, the tick earns no reward and nothing is stored.
        The transition chain restarts on the next good tick, since the
        hover was never chosen by the agent.
        """
        self._count_tick(0.0)
        done = telemetry.is_dead or self.is_episode_complete(telemetry)

        self.previous_state = None
        self.previous_action = None
        self.phase = self._phase_after(telemetry, done)

        return StepResult(DroneAction.HOVER, 0.0, done)

    def _count_tick(self, reward: float) -> None:
        self._state.current_step += 1
        self._state.total_steps += 1
        self._state.episode_reward += reward

    def _phase_after(self, telemetry: DroneTelemetry, done: bool) -> FlightPhase:
        if telemetry.mission_completed:
            return FlightPhase.MISSION_COMPLETE
        if telemetry.is_dead:
            return FlightPhase.DEAD
        if done:
            return FlightPhase.TIMEOUT
        return FlightPhase.AIRBORNE

    def end_episode(self, total_reward: Optional[float] = None, collisions: int = 0) -> TrainingMetrics:
        """Close the episode; total_reward defaults to the sum of step rewards."""
        if total_reward is None:
            total_reward = self._state.episode_reward

        record = self.agent.end_episode(
            total_reward,
            self._state.current_step,
            collisions,
            self.exploration_steps,
        )

        self._state.recent_rewards.append(total_reward)
        self._state.recent_rewards = self._state.recent_rewards[-RECENT_REWARDS:]
        self._state.best_reward = max(self._state.best_reward, total_reward)
        self._state.metrics = list(self.agent.metrics)

        _log.info(
            "Episode %d ended after %d steps, reward %.2f (%s)",
            record.episode, record.episode_length, total_reward, self.phase.value,
        )
        return record

    def train(self) -> float:
        return self.agent.train()

    # ==== SESSION ====

    @property
    def training_state(self) -> TrainingState:
        """Snapshot copy; mutating it does not affect the environment."""
        return replace(
            self._state,
            recent_rewards=list(self._state.recent_rewards),
            metrics=list(self._state.metrics),
        )

    def start_training(self) -> None:
        self._state.is_training = True

    def stop_training(self) -> None:
        self._state.is_training = False

    def save_model(self) -> str:
        model_data = self.agent.save()
        self._state.model_saved = True
        self._state.last_save_time = self.clock()
        return model_data

    def load_model(self, model_data: str) -> None:
        """Raises LoadError and leaves the session untouched on bad input."""
        self.agent.load(model_data)
        self._state.current_episode = self.agent.current_episode
        self._state.total_steps = self.agent.total_steps
        self._state.metrics = list(self.agent.metrics)

    def reset(self) -> None:
        self.agent.reset()
        self._state = TrainingState()
        self._reset_episode_tracking()
        self.phase = FlightPhase.IDLE
