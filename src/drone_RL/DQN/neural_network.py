"""
Neural Network: Feedforward Policy/Q Network with Manual Backpropagation
========================================================================

## What Does This Network Do?

It maps the 40-element drone state vector to one score per action:

    Input Layer (40 neurons)
         │
         │  state = [position, velocity, rotation, status, lidar, mission info]
         ▼
    Hidden Layers (256 → 128 → 64 neurons) + ReLU + dropout
         │
         ▼
    Output Layer (9 neurons) + softmax
         │
         └──► [p(THROTTLE_UP), p(THROTTLE_DOWN), ..., p(HOVER)]

The output is a probability vector (non-negative, sums to 1). The DQN agent
treats these values as Q-estimates and the imitation learner treats them as
action probabilities; both train through the same backward() primitive.

## Why Manual Gradients?

The weights are plain float64 tensors and the gradients are written out by
hand instead of going through autograd and an optimizer. This keeps every
update explicit and reproducible:

    error   = output - target                  (no softmax Jacobian)
    loss    = mean(error²)
    dW[l]   = error ⊗ activation[l]
    error'  = (W[l]ᵀ · error) * relu'(activation[l])

The gradients of all layers are then clipped together: if their global L2
norm exceeds 1.0 every gradient is scaled by 1.0 / norm before the plain SGD
step ``W -= learning_rate * dW * clip_ratio``.

## He Initialization

ReLU networks keep their activation variance stable when weights are drawn
from N(0, 2 / fan_in). The normal samples come from the Box-Muller
transform applied to uniform draws, and every bias starts at 0.01 so ReLU
units begin slightly active.

## Dropout

Each hidden activation is zeroed with probability ``dropout`` on EVERY
forward pass, inference included. Pass ``dropout=0`` in the config when a
deterministic forward pass is needed.
"""

import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Any, Dict, Final, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from drone_RL.config import NetworkConfig
from drone_RL.errors import DimensionMismatch, InvalidWeights, NumericInvalid

_log: Final[logging.Logger] = logging.getLogger(__name__)

MAX_GRADIENT_NORM: Final[float] = 1.0
EXPLORATION_TEMPERATURE: Final[float] = 2.0
INITIAL_BIAS: Final[float] = 0.01

ArrayLike = Union[Sequence[float], np.ndarray, torch.Tensor]


@dataclass(eq=False)
class NetworkWeights:
    """
    Per-layer weight matrices (outputs × inputs) and bias vectors.

    Two instances compare equal when every tensor matches exactly.
    """
    weights: List[torch.Tensor]
    biases: List[torch.Tensor]

    def clone(self) -> "NetworkWeights":
        """Deep copy: no tensor storage is shared with the original."""
        return NetworkWeights(
            weights=[w.detach().clone() for w in self.weights],
            biases=[b.detach().clone() for b in self.biases],
        )

    def shapes(self) -> List[Tuple[Tuple[int, ...], Tuple[int, ...]]]:
        return [(tuple(w.shape), tuple(b.shape)) for w, b in zip(self.weights, self.biases)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": [w.tolist() for w in self.weights],
            "biases": [b.tolist() for b in self.biases],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkWeights":
        """Build from nested lists; shape checks are left to set_weights()."""
        if not isinstance(data, dict) or "weights" not in data or "biases" not in data:
            raise InvalidWeights("weights payload needs 'weights' and 'biases'")
        try:
            weights = [torch.tensor(w, dtype=torch.float64) for w in data["weights"]]
            biases = [torch.tensor(b, dtype=torch.float64) for b in data["biases"]]
        except (TypeError, ValueError, RuntimeError) as e:
            raise InvalidWeights(f"weights payload is not numeric: {e}") from e
        return cls(weights=weights, biases=biases)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NetworkWeights):
            return NotImplemented
        if len(self.weights) != len(other.weights) or len(self.biases) != len(other.biases):
            return False
        return all(torch.equal(a, b) for a, b in zip(self.weights, other.weights)) and all(
            torch.equal(a, b) for a, b in zip(self.biases, other.biases)
        )


def _softmax(values: torch.Tensor) -> torch.Tensor:
    # Subtract the max so exp() cannot overflow
    exp_values = torch.exp(values - values.max())
    return exp_values / exp_values.sum()


class NeuralNetwork:
    """
    Fully connected network with ReLU hidden layers and a softmax output.

    Attributes:
        config: Architecture and learning-rate settings (a private copy)
        layer_sizes: [input_size, *hidden_layers, output_size]
        rng: Source for the exploration coin and action sampling
        generator: Torch generator for He initialization and dropout masks

    Example:
        >>> net = NeuralNetwork(NetworkConfig(dropout=0.0), rng=random.Random(7))
        >>> probs = net.forward([0.0] * 40)      # tensor of 9 probabilities
        >>> action = net.select_action([0.0] * 40, epsilon=0.1)
        >>> target = probs.clone(); target[action] = 1.0
        >>> loss = net.backward(target)
    """

    def __init__(self, config: Optional[NetworkConfig] = None, rng: Optional[random.Random] = None):
        self.config = replace(config) if config is not None else NetworkConfig()
        self.rng = rng if rng is not None else random.Random()
        self.generator = torch.Generator().manual_seed(self.rng.getrandbits(63))

        self.layer_sizes = [
            self.config.input_size,
            *self.config.hidden_layers,
            self.config.output_size,
        ]

        self._weights = self._initialize_weights()

        # Filled by forward(), consumed by backward()
        self._activations: List[torch.Tensor] = []

    @property
    def input_size(self) -> int:
        return self.config.input_size

    @property
    def output_size(self) -> int:
        return self.config.output_size

    def _initialize_weights(self) -> NetworkWeights:
        """He initialization with Box-Muller normal samples."""
        weights, biases = [], []

        for fan_in, fan_out in zip(self.layer_sizes[:-1], self.layer_sizes[1:]):
            stddev = math.sqrt(2 / fan_in)

            # 1 - U[0, 1) lies in (0, 1], so log() stays finite
            u1 = 1.0 - torch.rand((fan_out, fan_in), generator=self.generator, dtype=torch.float64)
            u2 = torch.rand((fan_out, fan_in), generator=self.generator, dtype=torch.float64)
            z0 = torch.sqrt(-2 * torch.log(u1)) * torch.cos(2 * math.pi * u2)

            weights.append(z0 * stddev)
            biases.append(torch.full((fan_out,), INITIAL_BIAS, dtype=torch.float64))

        return NetworkWeights(weights=weights, biases=biases)

    def _as_vector(self, values: ArrayLike, expected: int, what: str) -> torch.Tensor:
        if isinstance(values, torch.Tensor):
            vector = values.detach().to(torch.float64)
        else:
            # np.array copies, so read-only Experience arrays are never shared
            vector = torch.from_numpy(np.array(values, dtype=np.float64))

        if vector.dim() != 1 or vector.shape[0] != expected:
            got = vector.shape[0] if vector.dim() == 1 else vector.numel()
            raise DimensionMismatch(expected, got, what=what)

        finite = torch.isfinite(vector)
        if not bool(finite.all()):
            index = int(torch.nonzero(~finite)[0])
            raise NumericInvalid(index, float(vector[index]))

        return vector

    def validate_input(self, input: ArrayLike) -> torch.Tensor:
        """Check a state vector without running the network; returns it as a tensor."""
        return self._as_vector(input, self.config.input_size, "Input")

    @torch.no_grad()
    def forward(self, input: ArrayLike) -> torch.Tensor:
        """
        Run the state through the network.

        Args:
            input: State vector of length config.input_size

        Returns:
            1-D float64 tensor of output_size probabilities summing to 1

        Raises:
            DimensionMismatch: input has the wrong length
            NumericInvalid: input contains NaN or infinity
        """
        x = self._as_vector(input, self.config.input_size, "Input")
        activations = [x]

        hidden = zip(self._weights.weights[:-1], self._weights.biases[:-1])
        for w, b in hidden:
            x = torch.relu(w @ x + b)
            if self.config.dropout > 0:
                keep = torch.rand(x.shape, generator=self.generator, dtype=torch.float64) >= self.config.dropout
                x = x * keep
            activations.append(x)

        logits = self._weights.weights[-1] @ x + self._weights.biases[-1]
        output = _softmax(logits)
        activations.append(output)

        self._activations = activations
        return output.clone()

    def select_action(self, input: ArrayLike, epsilon: float) -> int:
        """
        Epsilon-greedy action choice with softened exploration.

        With probability epsilon the action is sampled from
        softmax(probabilities / 2.0), so even exploration leans toward
        promising actions. Otherwise the most probable action is returned
        (the lowest index wins ties).
        """
        return self.select_action_with_info(input, epsilon)[0]

    def select_action_with_info(self, input: ArrayLike, epsilon: float) -> Tuple[int, bool]:
        """Like select_action(), also reporting whether the step explored."""
        probabilities = self.forward(input)

        if self.rng.random() < epsilon:
            softened = _softmax(probabilities / EXPLORATION_TEMPERATURE)
            cumulative = torch.cumsum(softened, dim=0)
            draw = torch.tensor([self.rng.random()], dtype=torch.float64)
            index = int(torch.searchsorted(cumulative, draw)[0])
            return min(index, self.config.output_size - 1), True

        return int(torch.argmax(probabilities)), False

    @torch.no_grad()
    def backward(self, target_output: ArrayLike, learning_rate: Optional[float] = None) -> float:
        """
        Backpropagate against the last forward() pass and update weights.

        Args:
            target_output: Desired output vector (length output_size)
            learning_rate: Overrides config.learning_rate for this call

        Returns:
            Mean squared error between the last output and the target
        """
        if not self._activations:
            raise RuntimeError("backward() called before forward()")

        target = self._as_vector(target_output, self.config.output_size, "Target")
        lr = self.config.learning_rate if learning_rate is None else learning_rate

        weights = self._weights.weights
        num_layers = len(weights)

        errors = self._activations[-1] - target
        loss = float((errors * errors).mean())

        weight_grads: List[torch.Tensor] = [torch.empty(0)] * num_layers
        bias_grads: List[torch.Tensor] = [torch.empty(0)] * num_layers

        for layer in range(num_layers - 1, -1, -1):
            layer_input = self._activations[layer]
            weight_grads[layer] = torch.outer(errors, layer_input)
            bias_grads[layer] = errors.clone()

            if layer > 0:
                # ReLU derivative gates the error (dropped units are gated too)
                errors = (weights[layer].T @ errors) * (layer_input > 0)

        self._apply_gradients(weight_grads, bias_grads, lr)
        return loss

    def _apply_gradients(
        self,
        weight_grads: List[torch.Tensor],
        bias_grads: List[torch.Tensor],
        learning_rate: float,
    ) -> None:
        """SGD step with the gradients clipped by their global L2 norm."""
        squared = sum(float((g * g).sum()) for g in weight_grads) + sum(
            float((g * g).sum()) for g in bias_grads
        )
        gradient_norm = math.sqrt(squared)
        clip_ratio = MAX_GRADIENT_NORM / gradient_norm if gradient_norm > MAX_GRADIENT_NORM else 1.0

        step = learning_rate * clip_ratio
        for w, b, gw, gb in zip(self._weights.weights, self._weights.biases, weight_grads, bias_grads):
            w.sub_(gw * step)
            b.sub_(gb * step)

    def get_weights(self) -> NetworkWeights:
        """Independent deep copy of the current weights."""
        return self._weights.clone()

    def set_weights(self, weights: Union[NetworkWeights, Dict[str, Any]]) -> None:
        """
        Replace the weights with a deep copy of ``weights``.

        Raises:
            InvalidWeights: layer count, shapes or values do not fit this
                network; the current weights are kept
        """
        if isinstance(weights, dict):
            weights = NetworkWeights.from_dict(weights)
        self.validate_weights(weights)

        self._weights = NetworkWeights(
            weights=[w.detach().to(torch.float64).clone() for w in weights.weights],
            biases=[b.detach().to(torch.float64).clone() for b in weights.biases],
        )
        self._activations = []

    def validate_weights(self, weights: NetworkWeights) -> None:
        expected_layers = len(self.layer_sizes) - 1
        if len(weights.weights) != expected_layers or len(weights.biases) != expected_layers:
            raise InvalidWeights(
                f"Expected {expected_layers} layers, got {len(weights.weights)} weight "
                f"matrices and {len(weights.biases)} bias vectors"
            )

        for i, (w, b) in enumerate(zip(weights.weights, weights.biases)):
            fan_in, fan_out = self.layer_sizes[i], self.layer_sizes[i + 1]
            if tuple(w.shape) != (fan_out, fan_in):
                raise InvalidWeights(f"Layer {i} weights have shape {tuple(w.shape)}, expected {(fan_out, fan_in)}")
            if tuple(b.shape) != (fan_out,):
                raise InvalidWeights(f"Layer {i} biases have shape {tuple(b.shape)}, expected {(fan_out,)}")
            if not (bool(torch.isfinite(w).all()) and bool(torch.isfinite(b).all())):
                raise InvalidWeights(f"Layer {i} contains NaN or infinite values")

    def get_config(self) -> NetworkConfig:
        return replace(self.config)

    def clone(self) -> "NeuralNetwork":
        """New network with the same config and a deep copy of the weights."""
        copy = NeuralNetwork(self.config, rng=self.rng)
        copy.set_weights(self._weights)
        return copy
