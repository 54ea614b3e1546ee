"""
distrain Scorable Model Capability
==================================
Every trained model the scorer can combine exposes the same small
capability: how many inputs it expects, and a pure ``compute`` from an
input vector to an output vector. The ``kind`` tag tells the scorer how
to turn outputs into scores; it never needs the concrete class.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod

import numpy as np


class ModelKind(enum.Enum):
    NEURAL_NETWORK = "NN"
    SVM = "SVM"
    LOGISTIC_REGRESSION = "LR"
    TREE_ENSEMBLE = "TREE"


class ScorableModel(ABC):
    """A trained model usable by the ensemble scorer."""

    kind: ModelKind

    @property
    @abstractmethod
    def input_count(self) -> int:
        """Width of the input vector this model expects."""

    @abstractmethod
    def compute(self, inputs: np.ndarray) -> np.ndarray:
        """
        Score one input vector.

        Must be a pure function of model state and input so one model
        can be shared by concurrent scoring threads.
        """
