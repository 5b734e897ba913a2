"""
Experience Replay Buffer for DQN Training
==========================================

## Why Do We Need a Replay Buffer?

Consecutive flight ticks are highly correlated - a drone at 12m altitude
now will be at ~12m next tick. Training on them in order overfits the
network to whatever it is doing right now. The replay buffer keeps a large
pool of past transitions and trains on samples drawn from it instead.

## What is a "Transition"?

    (state, action, reward, next_state, done)

    state      = 40-element vector at tick t
    action     = DroneAction chosen at tick t
    reward     = shaped reward observed at tick t+1
    next_state = 40-element vector at tick t+1
    done       = the episode ended at tick t+1

## Storage

A fixed-capacity ring buffer: while below capacity new experiences are
appended, afterwards a write cursor overwrites the oldest slot and advances
modulo the capacity. Slot order is therefore NOT insertion order once the
buffer has wrapped.

## Recency-Biased Sampling

Plain uniform sampling reacts slowly once the buffer holds 100k transitions.
Each draw picks from the newest 20% of slots with probability 0.3 and from
the whole buffer otherwise; duplicate indices are redrawn.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import numpy as np


@dataclass(frozen=True, eq=False)
class Experience:
    """One stored transition. The state arrays are read-only copies."""
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        for name in ("state", "next_state"):
            array = np.array(getattr(self, name), dtype=np.float64)
            array.setflags(write=False)
            object.__setattr__(self, name, array)


class ReplayBuffer:
    """
    Ring buffer of Experience records with recency-biased sampling.

    Attributes:
        max_size: Capacity; len(buffer) never exceeds it
        current_index: Slot the next overwrite goes to once full

    Example Usage:
        >>> buffer = ReplayBuffer(max_size=10_000, rng=random.Random(0))
        >>> buffer.push(state, action, reward, next_state, done)
        >>> batch = buffer.sample_batch(32)
    """

    RECENT_FRACTION = 0.8       # slots at or beyond this fraction count as recent
    RECENT_PROBABILITY = 0.3

    def __init__(self, max_size: int = 100_000, rng: Optional[random.Random] = None):
        if max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self.rng = rng if rng is not None else random.Random()
        self.experiences: List[Experience] = []
        self.current_index = 0

    def store(self, experience: Experience) -> None:
        """O(1) insert: append while below capacity, else overwrite the oldest slot."""
        if len(self.experiences) < self.max_size:
            self.experiences.append(experience)
        else:
            self.experiences[self.current_index] = experience
            self.current_index = (self.current_index + 1) % self.max_size

    def push(
        self,
        state: np.ndarray,
        action: int,
        reward: float,
        next_state: np.ndarray,
        done: bool
    ) -> None:
        """Store a transition given as separate fields."""
        self.store(Experience(state, int(action), float(reward), next_state, bool(done)))

    def sample_batch(self, batch_size: int) -> List[Experience]:
        """
        Sample ``batch_size`` distinct experiences, biased toward recent slots.

        Returns the whole buffer (in slot order) when it holds fewer than
        ``batch_size`` experiences.
        """
        size = len(self.experiences)
        if size < batch_size:
            return list(self.experiences)

        recent_threshold = int(size * self.RECENT_FRACTION)

        # dict keeps draw order and gives O(1) duplicate checks
        indices: Dict[int, None] = {}
        while len(indices) < batch_size:
            if self.rng.random() < self.RECENT_PROBABILITY:
                index = recent_threshold + int(self.rng.random() * (size - recent_threshold))
            else:
                index = int(self.rng.random() * size)
            indices[index] = None

        return [self.experiences[i] for i in indices]

    def clear(self) -> None:
        self.experiences = []
        self.current_index = 0

    def stats(self) -> Dict[str, float]:
        size = len(self.experiences)
        return {"size": size, "max_size": self.max_size, "utilization": size / self.max_size}

    def __getitem__(self, index: int) -> Experience:
        return self.experiences[index]

    def __iter__(self) -> Iterator[Experience]:
        return iter(self.experiences)

    def __len__(self) -> int:
        return len(self.experiences)
