"""
distrain Model Persistence
==========================
Saves and loads trained models for scoring.

Formats (chosen by file extension):
    .pt      — torch checkpoint of a FeedForwardNetwork or
               LogisticRegressionModel (architecture + state dict)
    .joblib  — a fitted scikit-learn SVM estimator
    .json    — a TreeEnsemble

Usage:
    >>> save_model(network, "models/model0.pt")
    >>> models = [load_model(p) for p in sorted(Path("models").glob("model*"))]
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import joblib
import torch

from distrain.model.base import ModelKind, ScorableModel
from distrain.model.linear import LogisticRegressionModel, SVMModel
from distrain.model.network import FeedForwardNetwork
from distrain.model.tree import TreeEnsemble

logger = logging.getLogger(__name__)


def save_model(model: ScorableModel, path: str | Path) -> None:
    """
    Save a model in the format matching its kind.

    Raises
    ------
    TypeError
        If the model kind cannot be persisted.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if isinstance(model, FeedForwardNetwork):
        torch.save(
            {
                "kind": model.kind.value,
                "input_count": model.input_count,
                "output_count": model.output_count,
                "hidden_nodes": model.hidden_nodes,
                "activations": model.activations,
                "state_dict": model.state_dict(),
            },
            path,
        )
    elif isinstance(model, LogisticRegressionModel):
        torch.save(
            {
                "kind": model.kind.value,
                "input_count": model.input_count,
                "state_dict": model.state_dict(),
            },
            path,
        )
    elif isinstance(model, SVMModel):
        joblib.dump(model.estimator, path)
    elif isinstance(model, TreeEnsemble):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(model.to_dict(), f)
    else:
        raise TypeError(f"Cannot save model of type {type(model).__name__}")

    logger.info(f"{model.kind.value} model saved to {path}")


def load_model(path: str | Path) -> ScorableModel:
    """
    Load a model saved by ``save_model``.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the extension or the stored kind is unknown.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".joblib":
        model: ScorableModel = SVMModel(joblib.load(path))
    elif suffix == ".json":
        with open(path, "r", encoding="utf-8") as f:
            model = TreeEnsemble.from_dict(json.load(f))
    elif suffix == ".pt":
        model = _load_torch_model(path)
    else:
        raise ValueError(f"Unknown model file extension: {path.name}")

    logger.info(f"Loaded {model!r} from {path}")
    return model


def _load_torch_model(path: Path) -> ScorableModel:
    checkpoint = torch.load(path, map_location="cpu", weights_only=False)
    kind = ModelKind(checkpoint["kind"])

    if kind is ModelKind.NEURAL_NETWORK:
        model = FeedForwardNetwork(
            checkpoint["input_count"],
            checkpoint["output_count"],
            checkpoint["hidden_nodes"],
            checkpoint["activations"],
        )
    elif kind is ModelKind.LOGISTIC_REGRESSION:
        model = LogisticRegressionModel(checkpoint["input_count"])
    else:
        raise ValueError(f"Checkpoint {path} holds unexpected kind {kind.value}")

    model.load_state_dict(checkpoint["state_dict"])
    model.eval()
    return model
