"""
distrain Ensemble Scorer
========================
Turns one raw record and a list of trained models into integer scores.

Scoring Pipeline:
    raw record (column name → string)
        → assemble_data_pair()     dense input vector + ground-truth tag
        → every model's compute()  raw outputs in [0, 1] (mostly)
        → to_score()               round(output × 1000), half away from zero
        → ScoreObject(scores, tag)

Two Branches, picked by the job's algorithm:
    Tree algorithms (GBT/GBDT, RF):
        The first model is the whole tree ensemble. Its per-tree weights
        are re-derived from the algorithm (GBDT: [1, lr, lr, ...],
        RF: all 1.0) and it yields exactly one score.
    Everything else:
        Every model is scored independently. A model whose input width
        differs from the record's is skipped with an error log; the rest
        still score. A binary-classification network yields one score,
        a multi-output network one score per output.

A record no model could score gives ``None``, never an empty score list.

The scorer never mutates itself or its models after construction, so one
instance can serve concurrent scoring threads.

Usage:
    >>> scorer = EnsembleScorer(models, columns, model_config)
    >>> result = scorer.score({"age": "42", "state": "CA", "tag": "1"})
    >>> result.scores, result.tag
    ([757], 1)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from distrain.config import (
    ColumnConfig,
    ModelConfig,
    is_gbdt_algorithm,
    is_tree_algorithm,
)
from distrain.data.columns import CategoricalEncoder, ColumnMapping, assemble_data_pair
from distrain.data.dataset import DataRecord
from distrain.model.base import ModelKind, ScorableModel
from distrain.model.tree import EnsembleKind, TreeEnsemble, tree_weights

logger = logging.getLogger(__name__)

SCORE_SCALE = 1000

_SINGLE_OUTPUT_KINDS = (
    ModelKind.SVM,
    ModelKind.LOGISTIC_REGRESSION,
    ModelKind.TREE_ENSEMBLE,
)


class UnsupportedModelError(TypeError):
    """A model in the scoring list is not a kind the scorer knows."""


def to_score(value: float) -> int:
    """
    Fixed-point score with three decimal digits, rounded half away from zero.
    NaN and infinite outputs score 0.

    >>> to_score(0.0005), to_score(-0.0005), to_score(0.1234), to_score(float("nan"))
    (1, -1, 123, 0)
    """
    scaled = float(value) * SCORE_SCALE
    if not math.isfinite(scaled):
        logger.warning(f"Non-finite model output {value!r} scored as 0")
        return 0
    return int(math.copysign(math.floor(abs(scaled) + 0.5), scaled))


@dataclass
class ScoreObject:
    """Per-model integer scores of one record plus its ground-truth tag."""
    scores: list[int]
    tag: Optional[int] = None

    def to_dict(self) -> dict:
        return {"scores": list(self.scores), "tag": self.tag}


class EnsembleScorer:
    """
    Scores records with a fixed list of trained models.

    Parameters
    ----------
    models : Sequence[ScorableModel]
        Trained models; for tree algorithms the first one must be the
        TreeEnsemble.
    columns : Sequence[ColumnConfig]
        Full column configuration of the job.
    model_config : ModelConfig
        Job configuration (algorithm, tags, learning rate).
    algorithm : str or None
        Overrides ``model_config.algorithm``.
    cutoff : float or None
        z-score clip; defaults to ``model_config.normalize_std_dev_cutoff``.
    """

    def __init__(
        self,
        models: Sequence[ScorableModel],
        columns: Sequence[ColumnConfig],
        model_config: ModelConfig,
        algorithm: Optional[str] = None,
        cutoff: Optional[float] = None,
    ):
        self.models = tuple(models)
        self.columns = tuple(columns)
        self.model_config = model_config
        self.algorithm = (algorithm or model_config.algorithm).upper()
        self.cutoff = model_config.normalize_std_dev_cutoff if cutoff is None else cutoff

        self.mapping = ColumnMapping.from_columns(self.columns)
        self.encoder = CategoricalEncoder.from_columns(self.columns)
        self.is_tree = is_tree_algorithm(self.algorithm)

        self._tree_model: Optional[TreeEnsemble] = None
        if self.is_tree:
            self._tree_model = self._weighted_tree_model()

        logger.info(
            f"EnsembleScorer ready: {len(self.models)} model(s), "
            f"algorithm={self.algorithm}, inputs={self.mapping.input_width} "
            f"({'no selection' if self.mapping.no_var_select else 'post selection'})"
        )

    def _weighted_tree_model(self) -> TreeEnsemble:
        if not self.models:
            raise ValueError(f"Algorithm {self.algorithm} needs a tree ensemble model")
        model = self.models[0]
        if not isinstance(model, TreeEnsemble):
            raise UnsupportedModelError(
                f"Algorithm {self.algorithm} needs a TreeEnsemble, got "
                f"{type(model).__name__}"
            )
        kind = EnsembleKind.GBDT if is_gbdt_algorithm(self.algorithm) else EnsembleKind.RF
        weights = tree_weights(kind, len(model.trees), self.model_config.learning_rate)
        return model.with_weights(
            weights, column_positions=self.mapping.positions, ensemble_kind=kind
        )

    # ─── Scoring ────────────────────────────────────────────────────────

    def score(self, raw: Mapping[str, Optional[str]]) -> Optional[ScoreObject]:
        """Vectorize a raw record (column name → value) and score it."""
        record = assemble_data_pair(
            raw, self.columns, self.mapping, self.encoder, self.model_config, self.cutoff
        )
        return self.score_record(record)

    def score_record(self, record: DataRecord) -> Optional[ScoreObject]:
        """
        Score an already vectorized record.

        Returns
        -------
        ScoreObject or None
            None when no model produced a score.

        Raises
        ------
        UnsupportedModelError
            If a model's kind is not one the scorer knows.
        """
        width = int(record.input.size)
        if self.is_tree:
            scores = self._score_tree(record, width)
        else:
            scores = self._score_models(record, width)

        if not scores:
            logger.error(f"No model produced a score for a record of width {width}")
            return None
        return ScoreObject(scores=scores, tag=self._tag(record))

    def _score_tree(self, record: DataRecord, width: int) -> list[int]:
        model = self._tree_model
        if model.input_count != width:
            logger.error(
                f"Tree model expects {model.input_count} inputs, record has {width}"
            )
        return [to_score(model.compute(record.input)[0])]

    def _score_models(self, record: DataRecord, width: int) -> list[int]:
        scores: list[int] = []
        for index, model in enumerate(self.models):
            kind = getattr(model, "kind", None)
            if not isinstance(model, ScorableModel) or not isinstance(kind, ModelKind):
                raise UnsupportedModelError(
                    f"Model {index} ({type(model).__name__}) is not supported"
                )
            if model.input_count != width:
                logger.error(
                    f"Model {index} ({kind.value}) expects {model.input_count} "
                    f"inputs, record has {width}; skipping it"
                )
                continue

            outputs = model.compute(record.input)
            if kind is ModelKind.NEURAL_NETWORK:
                if self.model_config.is_binary_classification:
                    scores.append(to_score(outputs[0]))
                else:
                    scores.extend(to_score(value) for value in outputs)
            elif kind in _SINGLE_OUTPUT_KINDS:
                scores.append(to_score(outputs[0]))
            else:
                raise UnsupportedModelError(f"Model kind {kind.value} is not supported")
        return scores

    @staticmethod
    def _tag(record: DataRecord) -> Optional[int]:
        if record.ideal.size == 0:
            return None
        value = float(record.ideal[0])
        return None if math.isnan(value) else int(value)

    def __repr__(self) -> str:
        return (
            f"EnsembleScorer(models={len(self.models)}, algorithm={self.algorithm}, "
            f"inputs={self.mapping.input_width})"
        )
