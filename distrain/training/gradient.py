"""
distrain Gradient Engine
========================
Computes, for one worker, the gradient and error of the current global
weights over its local training partition. The coordinator sums these
gradients across workers and owns the actual weight update.

What One ``run()`` Does:
    1. Zero all parameter gradients
    2. For each batch of the training tier:
         out   = network(inputs)
         loss  = Σ significance × ½ Σ (out − ideal)²
         loss.backward()          # gradients accumulate across batches
    3. Flatten the accumulated gradients into one float64 vector (same
       order as the flat weight vector)
    4. Record the significance-weighted mean squared error

The gradient is a SUM over records, not a mean: the coordinator divides
by the total training size it collects from every worker's report.

Cross-Over:
    When ``run`` is given a seed, the training view for that run mixes in
    validation rows: row i comes from validation when ``(i + seed) % 4 == 3``
    (a 3:1 training/validation mix), so which rows cross over changes
    with every seed. Without a seed the training tier is used as is.

Usage:
    >>> engine = GradientEngine(network, training, validation, batch_size=256)
    >>> engine.set_weights(global_weights)
    >>> engine.run()
    >>> engine.gradients, engine.error, engine.calculate_error()
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset

from distrain.data.dataset import TieredDataset
from distrain.model.network import FeedForwardNetwork

logger = logging.getLogger(__name__)

# Every CROSS_OVER_PERIOD-th row of a cross-over run is a validation row.
CROSS_OVER_PERIOD = 4


class CrossOverView(Dataset):
    """Training rows with a seed-dependent share replaced by validation rows."""

    def __init__(self, training: TieredDataset, validation: TieredDataset, seed: int):
        self.training = training
        self.validation = validation
        self.seed = seed

    def __len__(self) -> int:
        return len(self.training)

    def __getitem__(self, idx: int):
        if len(self.validation) > 0 and (idx + self.seed) % CROSS_OVER_PERIOD == CROSS_OVER_PERIOD - 1:
            return self.validation[(idx + self.seed) % len(self.validation)]
        return self.training[idx]


class GradientEngine:
    """
    Gradient and error computation over a worker's partitions.

    Parameters
    ----------
    network : FeedForwardNetwork
        The model whose weights are being optimized.
    training : TieredDataset
        Finalized training partition.
    validation : TieredDataset
        Finalized validation partition (may be empty).
    batch_size : int
        Rows per forward/backward pass.
    """

    def __init__(
        self,
        network: FeedForwardNetwork,
        training: TieredDataset,
        validation: TieredDataset,
        batch_size: int = 256,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.network = network
        self.training = training
        self.validation = validation
        self.batch_size = batch_size

        self._gradients = np.zeros(network.weight_count, dtype=np.float64)
        self._error = 0.0
        self._train_weight = 0.0

        logger.info(
            f"GradientEngine initialized: {network!r}, "
            f"{len(training):,} training / {len(validation):,} validation records"
        )

    # ─── Weights ────────────────────────────────────────────────────────

    @property
    def weights(self) -> np.ndarray:
        return self.network.flat_weights()

    def set_weights(self, weights: np.ndarray) -> None:
        self.network.set_flat_weights(weights)

    def updated_weights(self, learning_rate: float) -> np.ndarray:
        """
        Current weights after one local descent step on the last gradient.

        The step uses the mean gradient (gradient sum / total significance).
        """
        if self._train_weight <= 0:
            return self.weights
        return self.weights - learning_rate * self._gradients / self._train_weight

    # ─── Gradient pass ──────────────────────────────────────────────────

    def run(self, seed: Optional[int] = None) -> None:
        """
        Accumulate the gradient of the training error at the current weights.

        Parameters
        ----------
        seed : int or None
            Cross-over seed for this run; None disables cross-over.
        """
        source: Dataset = self.training
        if seed is not None:
            source = CrossOverView(self.training, self.validation, seed)

        self.network.train()
        self.network.zero_grad()

        total_squared = 0.0
        total_weight = 0.0
        for inputs, ideal, significance in self._loader(source):
            outputs = self.network(inputs)
            squared = ((outputs - ideal) ** 2).sum(dim=1)
            loss = 0.5 * (significance * squared).sum()
            loss.backward()

            total_squared += float((significance * squared).sum().item())
            total_weight += float(significance.sum().item())

        self._gradients = self._flatten_gradients()
        self._train_weight = total_weight
        self._error = self._mean_error(total_squared, total_weight)

    @property
    def gradients(self) -> np.ndarray:
        return self._gradients.copy()

    @property
    def error(self) -> float:
        """Training error of the last ``run``."""
        return self._error

    @torch.no_grad()
    def calculate_error(self) -> float:
        """Weighted mean squared error over the full validation tier."""
        self.network.eval()
        total_squared = 0.0
        total_weight = 0.0
        for inputs, ideal, significance in self._loader(self.validation):
            squared = ((self.network(inputs) - ideal) ** 2).sum(dim=1)
            total_squared += float((significance * squared).sum().item())
            total_weight += float(significance.sum().item())
        return self._mean_error(total_squared, total_weight)

    def _loader(self, dataset: Dataset) -> DataLoader:
        return DataLoader(dataset, batch_size=self.batch_size, shuffle=False, num_workers=0)

    def _flatten_gradients(self) -> np.ndarray:
        parts = []
        for p in self.network.parameters():
            if p.grad is None:
                parts.append(torch.zeros(p.numel(), dtype=torch.float64))
            else:
                parts.append(p.grad.detach().reshape(-1))
        return torch.cat(parts).cpu().numpy().astype(np.float64)

    def _mean_error(self, total_squared: float, total_weight: float) -> float:
        if total_weight <= 0:
            return 0.0
        return total_squared / (total_weight * self.network.output_count)

    def __repr__(self) -> str:
        return (
            f"GradientEngine(weights={self.network.weight_count}, "
            f"batch_size={self.batch_size}, error={self._error:.6f})"
        )
