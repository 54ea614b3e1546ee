"""
distrain Tree Ensembles
=======================
Decision-tree ensembles for the GBDT and random-forest algorithms.

Splits address raw column numbers, not vector positions: a
``ColumnMapping``-style ``column_positions`` dict translates a split's
column into the position of its value in the dense input vector. Numeric
splits send ``value < threshold`` left; categorical splits send a value
left when its bin index is in ``left_categories``.

Combining Trees:
    GBDT — weighted sum: first tree weight 1.0, every later tree weighted
           by the learning rate (boosting's shrinkage).
    RF   — weighted average: every tree weight 1.0.

Usage:
    >>> ensemble = TreeEnsemble(trees, EnsembleKind.GBDT, positions, input_count=5)
    >>> ensemble.with_weights(tree_weights(EnsembleKind.GBDT, len(trees), 0.1))
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, asdict
from typing import Mapping, Optional, Sequence

import numpy as np

from distrain.model.base import ModelKind, ScorableModel

logger = logging.getLogger(__name__)


class EnsembleKind(enum.Enum):
    GBDT = "GBDT"
    RF = "RF"


def tree_weights(kind: EnsembleKind, n_trees: int, learning_rate: float) -> list[float]:
    """
    Per-tree weights of an ensemble.

    >>> tree_weights(EnsembleKind.GBDT, 3, 0.1)
    [1.0, 0.1, 0.1]
    >>> tree_weights(EnsembleKind.RF, 3, 0.1)
    [1.0, 1.0, 1.0]
    """
    if kind is EnsembleKind.RF:
        return [1.0] * n_trees
    return [1.0 if i == 0 else float(learning_rate) for i in range(n_trees)]


@dataclass
class TreeNode:
    column_num: int = -1
    threshold: float = 0.0
    left_categories: Optional[list[int]] = None
    left: int = -1
    right: int = -1
    value: float = 0.0
    is_leaf: bool = True


@dataclass
class Tree:
    """A binary tree stored as a node list; node 0 is the root."""
    nodes: list[TreeNode] = field(default_factory=list)

    def predict(self, inputs: np.ndarray, column_positions: Mapping[int, int]) -> float:
        if not self.nodes:
            raise ValueError("Cannot predict with an empty tree")
        node = self.nodes[0]
        while not node.is_leaf:
            value = inputs[column_positions[node.column_num]]
            if node.left_categories is not None:
                go_left = int(value) in node.left_categories
            else:
                go_left = value < node.threshold
            node = self.nodes[node.left if go_left else node.right]
        return node.value

    @classmethod
    def from_dict(cls, raw: dict) -> Tree:
        return cls(nodes=[TreeNode(**n) for n in raw["nodes"]])


class TreeEnsemble(ScorableModel):
    """
    A composite of trees scored as one model.

    Parameters
    ----------
    trees : Sequence[Tree]
        The trees, in boosting order for GBDT.
    ensemble_kind : EnsembleKind
        How per-tree outputs combine.
    column_positions : Mapping[int, int]
        Column number → position in the input vector.
    input_count : int
        Width of the input vector the ensemble was trained on.
    weights : Sequence[float] or None
        Per-tree weights; uniform 1.0 if None.
    """

    kind = ModelKind.TREE_ENSEMBLE

    def __init__(
        self,
        trees: Sequence[Tree],
        ensemble_kind: EnsembleKind,
        column_positions: Mapping[int, int],
        input_count: int,
        weights: Optional[Sequence[float]] = None,
    ):
        if not trees:
            raise ValueError("A tree ensemble needs at least one tree")
        weights = [1.0] * len(trees) if weights is None else [float(w) for w in weights]
        if len(weights) != len(trees):
            raise ValueError(
                f"Got {len(weights)} weights for {len(trees)} trees"
            )
        self.trees = list(trees)
        self.ensemble_kind = ensemble_kind
        self.column_positions = dict(column_positions)
        self._input_count = input_count
        self.weights = weights

    @property
    def input_count(self) -> int:
        return self._input_count

    def with_weights(
        self,
        weights: Sequence[float],
        column_positions: Optional[Mapping[int, int]] = None,
        ensemble_kind: Optional[EnsembleKind] = None,
    ) -> TreeEnsemble:
        """
        A new ensemble sharing these trees with other weights.

        Passing ``column_positions`` re-targets the splits onto another
        input layout; the input width then becomes that layout's size.
        """
        if column_positions is None:
            column_positions, input_count = self.column_positions, self._input_count
        else:
            input_count = len(column_positions)
        return TreeEnsemble(
            self.trees,
            ensemble_kind or self.ensemble_kind,
            column_positions,
            input_count,
            weights,
        )

    def compute(self, inputs: np.ndarray) -> np.ndarray:
        predictions = np.array(
            [tree.predict(inputs, self.column_positions) for tree in self.trees],
            dtype=np.float64,
        )
        weights = np.asarray(self.weights, dtype=np.float64)
        total = float(np.dot(weights, predictions))
        if self.ensemble_kind is EnsembleKind.RF:
            total = total / float(weights.sum())
        return np.array([total], dtype=np.float64)

    def to_dict(self) -> dict:
        return {
            "ensemble_kind": self.ensemble_kind.value,
            "input_count": self._input_count,
            "column_positions": {str(k): v for k, v in self.column_positions.items()},
            "weights": list(self.weights),
            "trees": [asdict(tree) for tree in self.trees],
        }

    @classmethod
    def from_dict(cls, raw: dict) -> TreeEnsemble:
        return cls(
            trees=[Tree.from_dict(t) for t in raw["trees"]],
            ensemble_kind=EnsembleKind(raw["ensemble_kind"]),
            column_positions={int(k): int(v) for k, v in raw["column_positions"].items()},
            input_count=int(raw["input_count"]),
            weights=raw.get("weights"),
        )

    def __repr__(self) -> str:
        return (
            f"TreeEnsemble(kind={self.ensemble_kind.value}, "
            f"trees={len(self.trees)}, input={self._input_count})"
        )
