"""
Training Loop: Flying Episodes Against a Simulator
===================================================

The engine never simulates physics itself. Anything implementing the
FlightSimulator protocol (a headless physics model, a bridge to a 3D
front end, a test double) can be driven by run_episode()/train().

## One Episode

    env.start_episode(); telemetry = simulator.reset()
    loop:
        action, reward, done = env.step(telemetry)     # act + score + store
        reward-based damage check on the running total
        stop if done
        telemetry = simulator.advance(action)          # physics
        apply reward damage back to the simulator
        every train_interval ticks: env.train()
    env.end_episode()
    episode_end_train_steps more env.train() calls
    maybe one imitation batch (probability imitation_weight)

Ticks whose telemetry contains NaN or infinity are skipped: the drone
hovers and the tick still counts toward max_steps.
"""

import logging
import random
from pathlib import Path
from typing import Final, List, NamedTuple, Optional, Protocol, Sequence, Union

from .environment import TrainingEnvironment
from .errors import NumericInvalid
from .imitation import ImitationLearning
from .telemetry import DroneAction, DroneTelemetry, Obstacle

_log: Final[logging.Logger] = logging.getLogger(__name__)


class FlightSimulator(Protocol):
    """Physics collaborator: owns the drone, applies actions, reports telemetry."""

    @property
    def obstacles(self) -> Sequence[Obstacle]:
        ...

    def reset(self) -> DroneTelemetry:
        """Respawn the drone for a new mission and return the first snapshot."""
        ...

    def advance(self, action: DroneAction) -> DroneTelemetry:
        """Apply the action for one tick and return the resulting snapshot."""
        ...

    def apply_damage(self, amount: float, kill: bool) -> DroneTelemetry:
        """Add damage outside of physics (reward-based damage)."""
        ...


class EpisodeResult(NamedTuple):
    total_reward: float
    steps: int
    collisions: int
    mission_completed: bool
    died: bool
    loss: float                 # mean loss of the in-flight and end-of-episode training


def run_episode(
    env: TrainingEnvironment,
    simulator: FlightSimulator,
    imitation: Optional[ImitationLearning] = None,
    rng: Optional[random.Random] = None,
) -> EpisodeResult:
    """
    Fly one episode with the agent in control.

    While env is in training mode the agent trains every
    ``config.train_interval`` ticks and ``config.episode_end_train_steps``
    more times once the episode ends. If imitation learning is enabled and
    has demonstrations, one imitation batch follows with probability
    ``imitation_weight``.
    """
    rng = rng if rng is not None else random.Random()
    config = env.config
    training = env.training_state.is_training

    env.start_episode()
    telemetry = simulator.reset()

    total_reward = 0.0
    collisions = 0
    total_loss = 0.0
    train_calls = 0
    steps = 0

    while True:
        # ==== STEP 1: Let the agent act on the current snapshot ====
        try:
            action, reward, done = env.step(telemetry, simulator.obstacles)
        except NumericInvalid as e:
            _log.warning("Skipping tick %d, hovering instead: %s", steps, e)
            action, reward, done = env.skip_tick(telemetry)

        steps += 1
        total_reward += reward
        damage = env.check_reward_based_damage(total_reward)

        if done:
            break

        # ==== STEP 2: Advance the physics ====
        previous_damage = telemetry.damage
        telemetry = simulator.advance(action)

        # Only physics damage is a collision; reward damage comes next
        if telemetry.damage > previous_damage:
            collisions += 1

        # ==== STEP 3: Chronic poor rewards hurt the drone ====
        if damage.should_take_damage:
            kill = damage.should_die or telemetry.damage + damage.damage_amount >= config.damage_limit
            telemetry = simulator.apply_damage(damage.damage_amount, kill)
            if kill:
                _log.info("Drone killed by negative rewards, total reward %.1f", total_reward)

        # ==== STEP 4: Learn from replay every few ticks ====
        if training and steps % config.train_interval == 0:
            total_loss += env.train()
            train_calls += 1

    env.end_episode(total_reward, collisions)

    if training:
        for _ in range(config.episode_end_train_steps):
            total_loss += env.train()
            train_calls += 1

        if (imitation is not None and imitation.config.enabled and imitation.demonstrations
                and rng.random() < imitation.config.imitation_weight):
            imitation_loss = imitation.train_from_demonstrations(
                env.agent.main_network, config.imitation_batch_size
            )
            if imitation_loss > 0:
                _log.info("Imitation learning loss: %.4f", imitation_loss)

    return EpisodeResult(
        total_reward=total_reward,
        steps=steps,
        collisions=collisions,
        mission_completed=telemetry.mission_completed,
        died=telemetry.is_dead,
        loss=total_loss / train_calls if train_calls else 0.0,
    )


def train(
    env: TrainingEnvironment,
    simulator: FlightSimulator,
    num_episodes: int = 500,
    imitation: Optional[ImitationLearning] = None,
    render_interval: int = 10,
    save_interval: int = 50,
    save_path: Optional[Union[str, Path]] = None,
    rng: Optional[random.Random] = None,
) -> List[float]:
    """
    Train the agent for ``num_episodes`` episodes.

    Args:
        env: Environment wrapping the agent to train
        simulator: Physics collaborator
        num_episodes: Number of episodes (missions) to fly
        imitation: Optional demonstration learner blended into training
        render_interval: Episodes between progress prints
        save_interval: Episodes between model saves
        save_path: Where to write the model blob; None disables saving.
            The best episode so far is written next to it with a
            ``_best`` suffix.
        rng: Source for the imitation blend coin

    Returns:
        List of total rewards per episode (for plotting learning curves)
    """
    rng = rng if rng is not None else random.Random()
    path = Path(save_path) if save_path is not None else None
    best_path = path.with_name(f"{path.stem}_best{path.suffix}") if path is not None else None

    episode_rewards = []
    best_reward = float('-inf')

    env.start_training()
    print(f"Training DQN Agent for {num_episodes} episodes")
    print(f"Max steps: {env.config.max_steps}, Max time: {env.config.max_episode_seconds:.0f}s")
    print("-" * 60)

    for episode in range(num_episodes):
        result = run_episode(env, simulator, imitation=imitation, rng=rng)
        episode_rewards.append(result.total_reward)

        if result.total_reward > best_reward:
            best_reward = result.total_reward
            if best_path is not None:
                best_path.write_text(env.save_model())

        if episode % render_interval == 0:
            print(
                f"Episode {env.agent.current_episode:4d} | "
                f"Reward: {result.total_reward:8.2f} | "
                f"Best: {best_reward:8.2f} | "
                f"Epsilon: {env.agent.get_current_epsilon():.3f} | "
                f"Steps: {result.steps:4d} | "
                f"Avg Loss: {result.loss:.4f}"
            )

        if path is not None and episode > 0 and episode % save_interval == 0:
            path.write_text(env.save_model())
            _log.info("Model saved to %s", path)

    env.stop_training()

    if path is not None:
        path.write_text(env.save_model())
        _log.info("Model saved to %s", path)

    print("-" * 60)
    print(f"Training complete! Best reward: {best_reward:.2f}")

    return episode_rewards
