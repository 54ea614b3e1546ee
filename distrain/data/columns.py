"""
distrain Column Mapping
=======================
Resolves, once per configuration, which raw columns feed the model and at
which position of the dense input vector each one lands, and how
categorical values translate to bin indices.

Two selection modes, chosen once at construction:

    1. NO VARIABLE SELECTION — nobody marked columns as final-select (or
       selection kept every candidate). Every candidate column is used,
       in config order.
    2. POST SELECTION — only the final-select columns are used, again in
       config order.

Example:
    columns: 0=meta, 1=target, 2=candidate, 3=candidate(final), 4=candidate
    → no selection:   {2: 0, 3: 1, 4: 2}   (if 3 were not final-select)
    → post selection: {3: 0}

Usage:
    >>> mapping = ColumnMapping.from_columns(columns)
    >>> mapping.position_of(3)
    0
    >>> encoder = CategoricalEncoder.from_columns(columns)
    >>> encoder.index_of(7, "CA")
    2
"""

from __future__ import annotations

import logging
import math
from types import MappingProxyType
from typing import Mapping, Optional, Sequence

import numpy as np

from distrain.config import ColumnConfig, ModelConfig
from distrain.data.dataset import DataRecord

logger = logging.getLogger(__name__)

# Category key standing for a null/missing value.
MISSING_CATEGORY = ""


def get_input_output_candidate_counts(
    columns: Sequence[ColumnConfig],
) -> tuple[int, int, int]:
    """
    Count final-select inputs, targets and candidates.

    Returns
    -------
    tuple[int, int, int]
        (selected input count, output count, candidate count). The input
        count is 0 when no variable selection has happened yet.
    """
    n_input = n_output = n_candidate = 0
    for column in columns:
        if column.is_target:
            n_output += 1
            continue
        if column.is_meta:
            continue
        if column.final_select:
            n_input += 1
        if column.is_candidate:
            n_candidate += 1
    return n_input, n_output, n_candidate


def resolve_input_count(columns: Sequence[ColumnConfig]) -> int:
    """Configured input count, or the candidate count if nothing is selected."""
    n_input, _, n_candidate = get_input_output_candidate_counts(columns)
    return n_candidate if n_input == 0 else n_input


class ColumnMapping:
    """
    Immutable column number → dense vector position map.

    Parameters
    ----------
    positions : Mapping[int, int]
        Column number to position; positions are unique and increase in
        config order.
    no_var_select : bool
        True when all candidates are used.
    """

    def __init__(self, positions: Mapping[int, int], no_var_select: bool):
        self._positions = MappingProxyType(dict(positions))
        self.no_var_select = no_var_select

    @classmethod
    def from_columns(cls, columns: Optional[Sequence[ColumnConfig]]) -> ColumnMapping:
        """
        Build the mapping from the full ColumnConfig list.

        Raises
        ------
        ValueError
            If ``columns`` is None.
        """
        if columns is None:
            raise ValueError("Column config list is required to build a ColumnMapping")

        n_selected, _, n_candidate = get_input_output_candidate_counts(columns)
        no_var_select = n_selected == 0 or n_selected == n_candidate

        positions: dict[int, int] = {}
        for column in columns:
            if column.is_meta or column.is_target:
                continue
            if no_var_select:
                use = column.is_candidate
            else:
                use = column.final_select
            if use:
                positions[column.column_num] = len(positions)

        logger.debug(
            f"ColumnMapping: {len(positions)} inputs "
            f"({'no selection' if no_var_select else 'post selection'})"
        )
        return cls(positions, no_var_select)

    @property
    def positions(self) -> Mapping[int, int]:
        return self._positions

    @property
    def input_width(self) -> int:
        return len(self._positions)

    def position_of(self, column_num: int) -> int:
        return self._positions[column_num]

    def __contains__(self, column_num: object) -> bool:
        return column_num in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def __repr__(self) -> str:
        mode = "no_var_select" if self.no_var_select else "post_select"
        return f"ColumnMapping(width={self.input_width}, mode={mode})"


class CategoricalEncoder:
    """
    Per-column category → bin index lookup, built once.

    Indices come from the order of ``ColumnConfig.bin_category``; values
    not seen at binning time map to the trailing "missing" bin, whose
    index equals the number of categories.
    """

    def __init__(self, bins: Mapping[int, Mapping[str, int]]):
        self._bins = MappingProxyType(
            {num: MappingProxyType(dict(m)) for num, m in bins.items()}
        )

    @classmethod
    def from_columns(cls, columns: Sequence[ColumnConfig]) -> CategoricalEncoder:
        bins: dict[int, dict[str, int]] = {}
        for column in columns:
            if not column.is_categorical:
                continue
            lookup: dict[str, int] = {}
            for index, category in enumerate(column.bin_category):
                key = MISSING_CATEGORY if category is None else str(category)
                # first occurrence wins so indices never shift
                lookup.setdefault(key, index)
            bins[column.column_num] = lookup
        return cls(bins)

    def __contains__(self, column_num: object) -> bool:
        return column_num in self._bins

    def missing_index(self, column_num: int) -> int:
        return len(self._bins[column_num])

    def index_of(self, column_num: int, value: Optional[str]) -> int:
        lookup = self._bins[column_num]
        key = MISSING_CATEGORY if value is None else value.strip()
        index = lookup.get(key)
        if index is None:
            return self.missing_index(column_num)
        return index


def _to_float(value: Optional[str]) -> float:
    if value is None:
        return math.nan
    try:
        return float(value)
    except ValueError:
        return math.nan


def _zscore(value: float, mean: float, std_dev: float, cutoff: float) -> float:
    if math.isnan(value):
        return 0.0
    if std_dev <= 0:
        return 0.0
    z = (value - mean) / std_dev
    return max(-cutoff, min(cutoff, z))


def _categorical_pos_rate(
    column: ColumnConfig, encoder: CategoricalEncoder, value: Optional[str]
) -> float:
    index = encoder.index_of(column.column_num, value)
    if index < len(column.bin_pos_rate):
        return float(column.bin_pos_rate[index])
    return math.nan


def assemble_data_pair(
    raw: Mapping[str, Optional[str]],
    columns: Sequence[ColumnConfig],
    mapping: ColumnMapping,
    encoder: CategoricalEncoder,
    model_config: ModelConfig,
    cutoff: Optional[float] = None,
) -> DataRecord:
    """
    Vectorize one raw record keyed by column name.

    Tree algorithms get categorical bin indices and raw numeric values;
    every other algorithm gets clipped z-scores (categoricals are first
    replaced by their bin's positive rate).

    The ideal vector holds 1.0 for a positive tag, 0.0 for a negative tag
    and NaN when the target is absent or unknown.
    """
    cutoff = model_config.normalize_std_dev_cutoff if cutoff is None else cutoff
    inputs = np.zeros(mapping.input_width, dtype=np.float64)
    ideal = math.nan
    significance = 1.0

    for column in columns:
        value = raw.get(column.column_name)

        if column.is_target:
            tag = None if value is None else value.strip()
            if tag in model_config.pos_tags:
                ideal = 1.0
            elif tag in model_config.neg_tags:
                ideal = 0.0
            continue

        if (
            model_config.weight_column_name
            and column.column_name == model_config.weight_column_name
        ):
            weight = _to_float(value)
            significance = 1.0 if math.isnan(weight) else weight

        if column.column_num not in mapping:
            continue
        position = mapping.position_of(column.column_num)

        if model_config.is_tree_algorithm:
            if column.is_categorical:
                inputs[position] = float(encoder.index_of(column.column_num, value))
            else:
                number = _to_float(value)
                inputs[position] = column.mean if math.isnan(number) else number
        elif column.is_categorical:
            rate = _categorical_pos_rate(column, encoder, value)
            inputs[position] = _zscore(rate, column.mean, column.std_dev, cutoff)
        else:
            inputs[position] = _zscore(
                _to_float(value), column.mean, column.std_dev, cutoff
            )

    return DataRecord(
        input=inputs,
        ideal=np.array([ideal], dtype=np.float64),
        significance=significance,
    )
