"""
distrain Linear Models
======================
The two single-output linear model families:

    - LogisticRegressionModel: sigmoid(w · x + b), in torch float64, with
      the same flat-weight interface as the feed-forward network.
    - SVMModel: a fitted scikit-learn SVM, scored through its probability
      estimate when it has one, else its decision function.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
from sklearn.base import BaseEstimator
from torch.nn.utils import parameters_to_vector, vector_to_parameters

from distrain.model.base import ModelKind, ScorableModel

logger = logging.getLogger(__name__)


class LogisticRegressionModel(nn.Module, ScorableModel):
    """
    Logistic regression over the dense input vector.

    Parameters
    ----------
    input_count : int
        Number of inputs.
    weights : sequence of float or None
        Flat ``[w_1 .. w_n, b]``; random initialization if None.
    """

    kind = ModelKind.LOGISTIC_REGRESSION

    def __init__(self, input_count: int, weights: Optional[Sequence[float]] = None):
        super().__init__()
        if input_count <= 0:
            raise ValueError(f"input_count must be positive, got {input_count}")
        self._input_count = input_count
        self.linear = nn.Linear(input_count, 1).double()
        if weights is not None:
            self.set_flat_weights(weights)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(self.linear(x))

    @property
    def input_count(self) -> int:
        return self._input_count

    def flat_weights(self) -> np.ndarray:
        return parameters_to_vector(self.parameters()).detach().cpu().numpy().copy()

    def set_flat_weights(self, weights: Sequence[float] | np.ndarray) -> None:
        vector = torch.as_tensor(np.asarray(weights, dtype=np.float64))
        if vector.numel() != self._input_count + 1:
            raise ValueError(
                f"Logistic regression over {self._input_count} inputs needs "
                f"{self._input_count + 1} weights, got {vector.numel()}"
            )
        with torch.no_grad():
            vector_to_parameters(vector, self.parameters())

    @torch.no_grad()
    def compute(self, inputs: np.ndarray) -> np.ndarray:
        x = torch.as_tensor(np.asarray(inputs, dtype=np.float64)).unsqueeze(0)
        return self.forward(x).squeeze(0).numpy().copy()

    def __repr__(self) -> str:
        return f"LogisticRegressionModel(input={self._input_count})"


class SVMModel(ScorableModel):
    """
    A fitted scikit-learn SVM (``SVC``, ``LinearSVC``, ...).

    Parameters
    ----------
    estimator : BaseEstimator
        Already fitted on dense input vectors.
    """

    kind = ModelKind.SVM

    def __init__(self, estimator: BaseEstimator):
        if not hasattr(estimator, "n_features_in_"):
            raise ValueError("SVM estimator must be fitted before scoring")
        self.estimator = estimator

    @property
    def input_count(self) -> int:
        return int(self.estimator.n_features_in_)

    def compute(self, inputs: np.ndarray) -> np.ndarray:
        x = np.asarray(inputs, dtype=np.float64).reshape(1, -1)
        if hasattr(self.estimator, "predict_proba"):
            value = self.estimator.predict_proba(x)[0, -1]
        else:
            value = self.estimator.decision_function(x)[0]
        return np.array([float(value)], dtype=np.float64)

    def __repr__(self) -> str:
        return f"SVMModel({type(self.estimator).__name__}, input={self.input_count})"
