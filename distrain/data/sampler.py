"""
distrain Sampler
================
Decides, record by record, whether a raw record is used at all, whether
it goes to the training or the validation partition, and how much it
weighs.

Four Modes (exactly one per job):

1. HASH — "Same Row, Same Drawer"
   A stable per-record hash picks the partition:
   validation iff ``hash % 100 < validation_rate × 100``.
   + Reproducible across runs and workers

2. POISSON — "Bootstrap by Weight"
   Draw k ~ Poisson(1). k = 0 drops the record; otherwise its
   significance is multiplied by k and a uniform draw picks the partition.
   + Bagging with replacement without physically duplicating rows

3. LEGACY_REPLACEMENT — "Photocopy an Old Page"
   Once both partitions hold data and more than ``BAGGING_THRESHOLD``
   records were ingested, half of the time the incoming row is ignored
   and a uniformly chosen, already-ingested row is re-read and routed
   instead. This re-reads ingested rows rather than re-sampling raw rows,
   so its statistics differ from true bootstrap sampling; it is kept as
   is so historical models stay reproducible.

4. RANDOM — plain random split by the validation rate. LEGACY_REPLACEMENT
   behaves exactly like this until its trigger conditions are met.

Usage:
    >>> sampler = Sampler.from_config(model_config, poisson_enabled=True, seed=7)
    >>> if sampler.should_sample(hashcode):
    ...     sampler.route(hashcode, record, training, validation)
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

import numpy as np

from distrain.config import ModelConfig
from distrain.data.dataset import DataRecord, TieredDataset

logger = logging.getLogger(__name__)

# Ingested-record count above which legacy replacement may kick in.
BAGGING_THRESHOLD = 1000


class SamplingMode(enum.Enum):
    HASH = "hash"
    POISSON = "poisson"
    LEGACY_REPLACEMENT = "legacy_replacement"
    RANDOM = "random"


def hash_to_validation(hashcode: int, validation_rate: float) -> bool:
    """Pure hash split: True when the record belongs to validation."""
    return hashcode % 100 < int(validation_rate * 100)


def hash_to_sample(hashcode: int, sample_rate: float) -> bool:
    """Pure hash sampling, using different hash digits than the split."""
    return (hashcode // 100) % 100 < int(sample_rate * 100)


class Sampler:
    """
    Routes records into the training and validation datasets.

    Parameters
    ----------
    mode : SamplingMode
        Sampling strategy for the whole job.
    validation_rate : float
        Fraction of sampled records routed to validation.
    bagging_sample_rate : float
        Fraction of records kept when not bagging with replacement.
    rng : numpy.random.Generator or None
        Source of randomness; a fresh ``default_rng(seed)`` if None.
    seed : int or None
        Seed for the default generator.
    """

    def __init__(
        self,
        mode: SamplingMode,
        validation_rate: float,
        bagging_sample_rate: float = 1.0,
        rng: Optional[np.random.Generator] = None,
        seed: Optional[int] = None,
    ):
        if not 0.0 <= validation_rate < 1.0:
            raise ValueError(
                f"validation_rate must be in [0, 1), got {validation_rate}"
            )
        self.mode = mode
        self.validation_rate = validation_rate
        self.bagging_sample_rate = bagging_sample_rate
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    @classmethod
    def from_config(
        cls,
        model_config: ModelConfig,
        poisson_enabled: bool,
        seed: Optional[int] = None,
    ) -> Sampler:
        if model_config.fix_initial_input:
            mode = SamplingMode.HASH
        elif model_config.bagging_with_replacement and poisson_enabled:
            mode = SamplingMode.POISSON
        elif model_config.bagging_with_replacement:
            mode = SamplingMode.LEGACY_REPLACEMENT
        else:
            mode = SamplingMode.RANDOM

        logger.info(f"Sampling mode: {mode.value}")
        return cls(
            mode=mode,
            validation_rate=model_config.cross_validation_rate,
            bagging_sample_rate=model_config.bagging_sample_rate,
            seed=seed,
        )

    def should_sample(self, hashcode: int) -> bool:
        """
        Whether a raw record is kept at all.

        Bagging with replacement keeps every record here; the replacement
        logic in ``route`` decides duplication and dropping.
        """
        if self.bagging_sample_rate >= 1.0:
            return True
        if self.mode is SamplingMode.HASH:
            return hash_to_sample(hashcode, self.bagging_sample_rate)
        if self.mode in (SamplingMode.POISSON, SamplingMode.LEGACY_REPLACEMENT):
            return True
        return self.rng.random() < self.bagging_sample_rate

    def route(
        self,
        hashcode: int,
        record: DataRecord,
        training: TieredDataset,
        validation: TieredDataset,
    ) -> int:
        """
        Append ``record`` (or its replacement) to one of the datasets.

        Returns
        -------
        int
            Number of records appended: 0 (Poisson drew k = 0) or 1.
        """
        if self.mode is SamplingMode.HASH:
            target = validation if hash_to_validation(hashcode, self.validation_rate) else training
            target.append(record)
            return 1

        draw = self.rng.random()

        if self.mode is SamplingMode.POISSON:
            k = int(self.rng.poisson(1.0))
            if k == 0:
                return 0
            record.significance = record.significance * k
            self._split(draw, record, training, validation)
            return 1

        if self.mode is SamplingMode.LEGACY_REPLACEMENT and self._replacement_triggered(
            draw, training, validation
        ):
            record = self._reread_existing(training, validation)

        self._split(draw, record, training, validation)
        return 1

    def _split(
        self,
        draw: float,
        record: DataRecord,
        training: TieredDataset,
        validation: TieredDataset,
    ) -> None:
        if draw < self.validation_rate:
            validation.append(record)
        else:
            training.append(record)

    @staticmethod
    def _replacement_triggered(
        draw: float, training: TieredDataset, validation: TieredDataset
    ) -> bool:
        training_size = training.record_count
        validation_size = validation.record_count
        return (
            validation_size > 0
            and training_size > 0
            and training_size + validation_size > BAGGING_THRESHOLD
            and draw < 0.5
        )

    def _reread_existing(
        self, training: TieredDataset, validation: TieredDataset
    ) -> DataRecord:
        training_size = training.record_count
        size = training_size + validation.record_count
        position = int(self.rng.integers(size))
        buffer = DataRecord.zeros(training.input_count, training.output_count)
        if position >= training_size:
            return validation.read_at(position - training_size, buffer)
        return training.read_at(position, buffer)

    def __repr__(self) -> str:
        return (
            f"Sampler(mode={self.mode.value}, "
            f"validation={self.validation_rate:.0%}, "
            f"sample_rate={self.bagging_sample_rate})"
        )

