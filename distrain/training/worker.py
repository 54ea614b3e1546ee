"""
distrain Training Worker
========================
One data-parallel participant of an externally coordinated, bulk-
synchronous training job. The coordinator owns the weights and the
convergence decision; each worker owns its slice of the data and turns
"here are the current weights" into "here is my gradient".

Lifecycle (state machine):

    UNINITIALIZED ──init()──▶ LOADING ──finalize_load()──▶ IDLE
                                 │ load(row) × N              │
                                 ▼                            ▼
                                                 compute() ◀─▶ COMPUTING
                                                              │
                                           close() ──▶ CLOSED ◀┘

One Iteration (``compute``):
    1. Dry run or first iteration → empty report. Every worker then
       starts real optimization from the same coordinator-issued weights.
    2. No weights from the coordinator → warning, no report (None).
    3. Build the gradient engine once, reuse it afterwards.
    4. Load the global weights, run ``epochs_per_iteration`` local epochs
       (a local descent step between epochs).
    5. Report gradients, train error, validation error (train error if
       there is no validation data) and the training record count.

Resource Ownership:
    The worker owns both tiered datasets and their backing files, and
    the temp directory holding them when no ``data_dir`` is configured.
    They are registered on an ``ExitStack`` at creation, so ``close()`` (or
    leaving a ``with`` block, or a failing ``init``) always releases them.

Usage:
    >>> with TrainingWorker() as worker:
    ...     worker.init(props)
    ...     worker.load_all(lines)
    ...     worker.finalize_load()
    ...     report = worker.compute(IterationContext(2, weights))
"""

from __future__ import annotations

import contextlib
import enum
import logging
import tempfile
import time
import zlib
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np

from distrain.config import (
    ColumnConfig,
    ModelConfig,
    WorkerProps,
    load_column_config_list,
    load_model_config,
)
from distrain.data.columns import get_input_output_candidate_counts
from distrain.data.dataset import DataRecord, TieredDataset, create_dataset_pair
from distrain.data.sampler import Sampler
from distrain.model.network import FeedForwardNetwork
from distrain.training.gradient import GradientEngine
from distrain.training.params import IterationContext, NNParams

logger = logging.getLogger(__name__)

DEFAULT_COLUMN_SEPARATOR = "|"


class WorkerState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    IDLE = "idle"
    COMPUTING = "computing"
    CLOSED = "closed"


class WorkerInitError(RuntimeError):
    """Fatal worker startup failure (configuration or disk tier)."""


def stable_hash(row: str | Sequence[float]) -> int:
    """
    A per-record hash that is identical across processes and runs.
    Surrounding whitespace (a trailing newline) does not change it.
    """
    if isinstance(row, str):
        payload = row.strip().encode("utf-8")
    else:
        payload = np.asarray(row, dtype=np.float64).tobytes()
    return zlib.crc32(payload)


class TrainingWorker:
    """
    Per-worker iterative gradient computation.

    Attributes
    ----------
    count : int
        Raw records seen during loading.
    sample_count : int
        Records that made it into either partition.
    """

    def __init__(self):
        self.state = WorkerState.UNINITIALIZED
        self.props: Optional[WorkerProps] = None
        self.model_config: Optional[ModelConfig] = None
        self.columns: list[ColumnConfig] = []

        self.input_count = 0
        self.output_count = 0
        self.candidate_count = 0
        self.epochs_per_iteration = 1
        self.is_dry = False
        self.is_cross_over = False

        self.sampler: Optional[Sampler] = None
        self.training_data: Optional[TieredDataset] = None
        self.validation_data: Optional[TieredDataset] = None
        self.data_dir: Optional[str] = None
        self.gradient: Optional[GradientEngine] = None

        self.count = 0
        self.sample_count = 0

        self._resources = contextlib.ExitStack()

    # ─── Initialization ─────────────────────────────────────────────────

    def init(
        self,
        props: WorkerProps | Mapping[str, str],
        model_config: Optional[ModelConfig] = None,
        columns: Optional[list[ColumnConfig]] = None,
    ) -> None:
        """
        Load configuration and open both datasets.

        Parameters
        ----------
        props : WorkerProps or mapping
            Job properties; a mapping is parsed with ``WorkerProps.from_mapping``.
        model_config, columns : optional
            Already-loaded configuration; read from ``props`` paths if None.

        Raises
        ------
        WorkerInitError
            If configuration cannot be loaded or the disk tier cannot be
            created.
        """
        self._require(WorkerState.UNINITIALIZED)

        if not isinstance(props, WorkerProps):
            props = WorkerProps.from_mapping(dict(props))
        self.props = props

        try:
            if model_config is None:
                model_config = load_model_config(props.model_config_path, props.source_type)
            if columns is None:
                columns = load_column_config_list(props.column_config_path, props.source_type)
        except (OSError, ValueError, TypeError, NotImplementedError) as exc:
            raise WorkerInitError(f"Failed to load job configuration: {exc}") from exc

        self.model_config = model_config
        self.columns = list(columns)
        self.is_cross_over = model_config.train.is_cross_over
        self.epochs_per_iteration = model_config.train.epochs_per_iteration or 1
        self.is_dry = props.dry_train
        logger.info(
            f"Worker config: isCrossOver={self.is_cross_over}, "
            f"epochsPerIteration={self.epochs_per_iteration}, dry={self.is_dry}"
        )

        n_input, n_output, n_candidate = get_input_output_candidate_counts(self.columns)
        self.input_count = n_candidate if n_input == 0 else n_input
        self.output_count = n_output
        self.candidate_count = n_candidate
        if self.input_count == 0 or self.output_count == 0:
            raise WorkerInitError(
                f"Column config yields {self.input_count} inputs and "
                f"{self.output_count} outputs; both must be positive"
            )

        self.sampler = Sampler.from_config(model_config, props.poisson_sampler, props.seed)

        on_disk = model_config.train.train_on_disk
        logger.info(
            f"Worker is loading data into {'disk' if on_disk else 'memory'}."
        )
        try:
            data_dir = props.data_dir
            if data_dir is None:
                data_dir = self._resources.enter_context(
                    tempfile.TemporaryDirectory(prefix="distrain-")
                )
            self.data_dir = data_dir
            self.training_data, self.validation_data = create_dataset_pair(
                self.input_count,
                self.output_count,
                on_disk=on_disk,
                memory_fraction=props.memory_fraction,
                validation_rate=model_config.cross_validation_rate,
                data_dir=data_dir,
            )
        except OSError as exc:
            self._resources.close()
            raise WorkerInitError(f"Failed to create datasets: {exc}") from exc

        self._resources.callback(self.validation_data.dispose)
        self._resources.callback(self.training_data.dispose)

        self.count = 0
        self.sample_count = 0
        self.state = WorkerState.LOADING

    # ─── Load phase ─────────────────────────────────────────────────────

    def parse_row(self, row: str | Sequence[float]) -> Optional[DataRecord]:
        """
        Turn one normalized row into a DataRecord.

        Row layout: ``ideal (output_count) | inputs (input_count) [| weight]``.
        Returns None for rows with the wrong field count or bad numbers.
        """
        if isinstance(row, str):
            fields = row.strip().split(DEFAULT_COLUMN_SEPARATOR)
        else:
            fields = list(row)

        width = self.output_count + self.input_count
        if len(fields) not in (width, width + 1):
            logger.warning(
                f"Skipping row with {len(fields)} fields, expected {width} "
                f"or {width + 1}"
            )
            return None
        try:
            values = np.asarray([float(f) for f in fields], dtype=np.float64)
        except ValueError:
            logger.warning(f"Skipping row with non-numeric fields: {row!r}")
            return None

        significance = float(values[width]) if len(values) > width else 1.0
        return DataRecord(
            input=values[self.output_count: width].copy(),
            ideal=values[: self.output_count].copy(),
            significance=significance,
        )

    def load(self, row: str | Sequence[float], hashcode: Optional[int] = None) -> None:
        """Parse, sample and route one raw row."""
        self._require(WorkerState.LOADING)
        self.count += 1

        record = self.parse_row(row)
        if record is None:
            return
        if hashcode is None:
            hashcode = stable_hash(row)
        if not self.sampler.should_sample(hashcode):
            return
        self.sample_count += self.sampler.route(
            hashcode, record, self.training_data, self.validation_data
        )

    def load_all(self, rows: Iterable[str | Sequence[float]]) -> None:
        for row in rows:
            self.load(row)

    def finalize_load(self) -> None:
        """Freeze both datasets and log the sampling statistics."""
        self._require(WorkerState.LOADING)
        self.training_data.finalize_load()
        self.validation_data.finalize_load()
        self.state = WorkerState.IDLE

        logger.info(f"    - # Records of the Master Data Set: {self.count}.")
        logger.info(f"    - Bagging Sample Rate: {self.model_config.bagging_sample_rate}.")
        logger.info(
            f"    - Bagging With Replacement: {self.model_config.bagging_with_replacement}."
        )
        logger.info(f"    - # Records of the Selected Data Set: {self.sample_count}.")
        logger.info(
            f"        - Cross Validation Rate: {self.model_config.cross_validation_rate}."
        )
        logger.info(
            f"        - # Records of the Training Set: {self.training_data.record_count} "
            f"({self.training_data.memory_count} in memory)."
        )
        logger.info(
            f"        - # Records of the Validation Set: {self.validation_data.record_count} "
            f"({self.validation_data.memory_count} in memory)."
        )

    # ─── Iterations ─────────────────────────────────────────────────────

    def compute(self, context: IterationContext) -> Optional[NNParams]:
        """
        Compute this worker's report for one iteration.

        Returns
        -------
        NNParams or None
            Empty report for dry runs and the first iteration; None when
            the coordinator's weights are missing.
        """
        if self.state is WorkerState.CLOSED:
            raise RuntimeError("Worker is closed")

        if self.is_dry or context.is_first_iteration:
            return NNParams.empty()

        self._require(WorkerState.IDLE)
        if context.last_weights is None:
            logger.warning("Master result of last iteration is null.")
            return None

        self.state = WorkerState.COMPUTING
        try:
            return self._compute(context)
        finally:
            self.state = WorkerState.IDLE

    def _compute(self, context: IterationContext) -> NNParams:
        weights = np.asarray(context.last_weights, dtype=np.float64)
        if self.gradient is None:
            self.gradient = self._init_gradient()

        seed = time.time_ns() if self.is_cross_over else None

        self.gradient.set_weights(weights)
        for epoch in range(self.epochs_per_iteration):
            self.gradient.run(seed=seed)
            if epoch < self.epochs_per_iteration - 1:
                self.gradient.set_weights(
                    self.gradient.updated_weights(self.model_config.learning_rate)
                )

        train_error = self.gradient.error
        has_validation = self.validation_data.record_count > 0
        test_error = self.gradient.calculate_error() if has_validation else train_error

        logger.info(
            f"Worker compute iteration {context.current_iteration} "
            f"(train error {train_error} validation error "
            f"{test_error if has_validation else 'N/A'})"
        )

        return NNParams(
            gradients=self.gradient.gradients,
            train_error=train_error,
            test_error=test_error,
            weights=np.zeros(0, dtype=np.float64),
            train_size=self.training_data.record_count,
        )

    def _init_gradient(self) -> GradientEngine:
        network = FeedForwardNetwork.from_config(
            self.input_count, self.output_count, self.model_config
        )
        return GradientEngine(
            network,
            self.training_data,
            self.validation_data,
            batch_size=self.model_config.train.batch_size,
        )

    # ─── Shutdown ───────────────────────────────────────────────────────

    def close(self) -> None:
        """Release both datasets and their files. Idempotent."""
        if self.state is WorkerState.CLOSED:
            return
        training = self.training_data.record_count if self.training_data else 0
        validation = self.validation_data.record_count if self.validation_data else 0
        self._resources.close()
        self.gradient = None
        self.state = WorkerState.CLOSED
        logger.info(
            f"Worker closed: {self.count} records seen, {self.sample_count} sampled, "
            f"{training} training / {validation} validation"
        )

    def __enter__(self) -> TrainingWorker:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _require(self, *states: WorkerState) -> None:
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise RuntimeError(
                f"Worker is {self.state.value}, expected {expected}"
            )

    def __repr__(self) -> str:
        return (
            f"TrainingWorker(state={self.state.value}, input={self.input_count}, "
            f"output={self.output_count}, count={self.count}, "
            f"sampled={self.sample_count})"
        )
