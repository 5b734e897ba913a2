"""
Error types raised by the learning engine.

All of them are local and recoverable: the caller that schedules ticks
decides whether to skip the tick, fall back to a default action, or stop
training.
"""


class DroneRLError(Exception):
    """Base class for every error raised by drone_RL."""


class DimensionMismatch(DroneRLError, ValueError):
    """A vector handed to the network has the wrong length."""

    def __init__(self, expected: int, got: int, what: str = "input"):
        super().__init__(f"{what} size mismatch. Expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class InvalidWeights(DroneRLError, ValueError):
    """Weight matrices or bias vectors do not fit the network layout."""


class LoadError(DroneRLError, ValueError):
    """A serialized model or demonstration payload could not be restored."""


class NumericInvalid(DroneRLError, ValueError):
    """An input vector contains NaN or infinite values."""

    def __init__(self, index: int, value: float):
        super().__init__(f"Invalid input value at index {index}: {value}")
        self.index = index
        self.value = value
