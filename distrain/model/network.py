"""
distrain Feed-Forward Network
=============================
The neural-network model family: a plain multi-layer perceptron whose
parameters can be read and written as ONE flat float64 vector. The flat
vector is what travels between the coordinator and the workers.

Architecture:
    Input (input_count)
      → [Linear → activation] × n_hidden_layers
      → Linear (→ output_count)
      → Sigmoid
    Output (output_count), each value in (0, 1)

Flat Weight Order:
    Parameters in registration order (layer 0 weight, layer 0 bias,
    layer 1 weight, ...), each flattened row-major. Every worker builds
    the same architecture from the same configuration, so positions in
    the vector mean the same thing everywhere.

Usage:
    >>> net = FeedForwardNetwork(input_count=10, output_count=1,
    ...                          hidden_nodes=[8], activations=["tanh"])
    >>> flat = net.flat_weights()          # numpy float64, len == weight_count
    >>> net.set_flat_weights(flat * 0.5)
    >>> net.compute(np.zeros(10))          # array([0.5...])
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
from torch.nn.utils import parameters_to_vector, vector_to_parameters

from distrain.config import (
    ACTIVATION_FUNC,
    NUM_HIDDEN_LAYERS,
    NUM_HIDDEN_NODES,
    ModelConfig,
)
from distrain.model.base import ModelKind, ScorableModel

logger = logging.getLogger(__name__)

_ACTIVATIONS = {
    "sigmoid": nn.Sigmoid,
    "tanh": nn.Tanh,
    "relu": nn.ReLU,
    "linear": nn.Identity,
}


def make_activation(name: str) -> nn.Module:
    try:
        return _ACTIVATIONS[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown activation '{name}'. Choose from: {', '.join(_ACTIVATIONS)}"
        ) from None


class FeedForwardNetwork(nn.Module, ScorableModel):
    """
    Multi-layer perceptron with a flat-vector weight interface.

    Parameters
    ----------
    input_count : int
        Number of input nodes.
    output_count : int
        Number of output nodes.
    hidden_nodes : Sequence[int]
        Width of each hidden layer.
    activations : Sequence[str]
        Activation name per hidden layer (sigmoid, tanh, relu, linear).
    seed : int or None
        Seed for the initial weights. Initial weights rarely matter on a
        worker: the coordinator's weights overwrite them.
    """

    kind = ModelKind.NEURAL_NETWORK

    def __init__(
        self,
        input_count: int,
        output_count: int,
        hidden_nodes: Sequence[int] = (),
        activations: Sequence[str] = (),
        seed: Optional[int] = None,
    ):
        super().__init__()

        if input_count <= 0 or output_count <= 0:
            raise ValueError(
                f"Node counts must be positive, got input={input_count}, "
                f"output={output_count}"
            )
        if len(activations) < len(hidden_nodes):
            raise ValueError(
                f"{len(hidden_nodes)} hidden layers need as many activations, "
                f"got {len(activations)}"
            )

        self._input_count = input_count
        self.output_count = output_count
        self.hidden_nodes = list(hidden_nodes)
        self.activations = [str(a).lower() for a in activations[: len(hidden_nodes)]]

        # A seed fixes the initial weights without touching the global RNG.
        seeded = torch.random.fork_rng(devices=[]) if seed is not None else nullcontext()
        with seeded:
            if seed is not None:
                torch.manual_seed(seed)
            layers: list[nn.Module] = []
            width = input_count
            for nodes, activation in zip(self.hidden_nodes, self.activations):
                layers.append(nn.Linear(width, nodes))
                layers.append(make_activation(activation))
                width = nodes
            layers.append(nn.Linear(width, output_count))
            layers.append(nn.Sigmoid())

        self.layers = nn.Sequential(*layers).double()

    @classmethod
    def from_config(
        cls,
        input_count: int,
        output_count: int,
        model_config: ModelConfig,
        seed: Optional[int] = None,
    ) -> FeedForwardNetwork:
        """Build the architecture a job's configuration describes."""
        params = model_config.train.params
        n_layers = int(params.get(NUM_HIDDEN_LAYERS, 0))
        hidden_nodes = [int(n) for n in params.get(NUM_HIDDEN_NODES, [])][:n_layers]
        activations = list(params.get(ACTIVATION_FUNC, []))[:n_layers]
        return cls(input_count, output_count, hidden_nodes, activations, seed=seed)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Inputs, shape (batch_size, input_count), float64.

        Returns
        -------
        torch.Tensor
            Outputs, shape (batch_size, output_count).
        """
        return self.layers(x)

    @property
    def input_count(self) -> int:
        return self._input_count

    @property
    def weight_count(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def flat_weights(self) -> np.ndarray:
        """All parameters as one float64 vector."""
        return parameters_to_vector(self.parameters()).detach().cpu().numpy().copy()

    def set_flat_weights(self, weights: Sequence[float] | np.ndarray) -> None:
        """
        Overwrite all parameters from a flat vector.

        Raises
        ------
        ValueError
            If the vector length differs from ``weight_count``.
        """
        vector = torch.as_tensor(np.asarray(weights, dtype=np.float64))
        if vector.numel() != self.weight_count:
            raise ValueError(
                f"Weight vector has {vector.numel()} values, network needs "
                f"{self.weight_count}"
            )
        with torch.no_grad():
            vector_to_parameters(vector, self.parameters())

    @torch.no_grad()
    def compute(self, inputs: np.ndarray) -> np.ndarray:
        x = torch.as_tensor(np.asarray(inputs, dtype=np.float64)).unsqueeze(0)
        return self.forward(x).squeeze(0).numpy().copy()

    def __repr__(self) -> str:
        return (
            f"FeedForwardNetwork(input={self.input_count}, "
            f"hidden={self.hidden_nodes}, activations={self.activations}, "
            f"output={self.output_count}, weights={self.weight_count})"
        )
