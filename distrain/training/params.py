"""
distrain Iteration Messages
===========================
What a worker exchanges with the external coordinator each round.

    coordinator → worker : IterationContext (last global weights, flags)
    worker → coordinator : NNParams (gradients, errors, train size)

Workers never report weights: the weights vector of a worker report is
always empty. A report with empty gradients is a no-op (dry run or first
iteration).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

# Error reported by no-op iterations.
DRY_ERROR = 0.0


def _empty() -> np.ndarray:
    return np.zeros(0, dtype=np.float64)


@dataclass
class NNParams:
    """One worker's contribution to one iteration."""
    gradients: np.ndarray = field(default_factory=_empty)
    train_error: float = DRY_ERROR
    test_error: float = DRY_ERROR
    weights: np.ndarray = field(default_factory=_empty)
    train_size: int = 0

    @classmethod
    def empty(cls) -> NNParams:
        """The no-op report of dry runs and first iterations."""
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.gradients.size == 0

    def to_dict(self) -> dict:
        return {
            "gradients": self.gradients.tolist(),
            "trainError": self.train_error,
            "testError": self.test_error,
            "weights": self.weights.tolist(),
            "trainRecordCount": self.train_size,
        }


@dataclass
class IterationContext:
    """
    What the coordinator hands a worker at the start of a round.

    ``last_weights`` is None when the coordinator's previous result is
    missing.
    """
    current_iteration: int
    last_weights: Optional[np.ndarray] = None
    is_first_iteration: bool = False
