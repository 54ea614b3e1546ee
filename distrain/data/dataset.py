"""
distrain Tiered Dataset
=======================
An append-then-freeze sequence of (input, ideal, significance) records,
kept in memory up to a byte budget and spilled to a backing file beyond
it.

How It Works (Analogy):
    Think of a desk with a drawer. Records go on the desk until it is
    full; everything after that goes into the drawer (a file on disk).
    Reading record N means looking at the desk if N is small enough,
    otherwise opening the drawer at the right spot. Callers never need
    to know which one it was.

Lifecycle:
    LOADING   → append(), read_at()       (sampling may re-read rows)
    FINALIZED → read_at(), __getitem__()  (read-many, append-closed)
    DISPOSED  → nothing; file handles released, backing file removed

Record Layout on Disk:
    float64 row = input (input_count) + ideal (output_count) + significance
    After finalize_load() the file is memory-mapped read-only.

Usage:
    >>> with TieredDataset(3, 1, memory_budget_bytes=1 << 20, path="train.bin") as ds:
    ...     ds.append(DataRecord(np.ones(3), np.zeros(1)))
    ...     ds.finalize_load()
    ...     inputs, ideal, significance = ds[0]
"""

from __future__ import annotations

import enum
import logging
import os
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

import numpy as np
import psutil
import torch
from torch.utils.data import Dataset

logger = logging.getLogger(__name__)

_ITEM_BYTES = np.dtype(np.float64).itemsize


@dataclass
class DataRecord:
    """One training or scoring example."""
    input: np.ndarray
    ideal: np.ndarray
    significance: float = 1.0

    @classmethod
    def zeros(cls, input_count: int, output_count: int) -> DataRecord:
        """A blank record to be filled by ``TieredDataset.read_at``."""
        return cls(
            input=np.zeros(input_count, dtype=np.float64),
            ideal=np.zeros(output_count, dtype=np.float64),
        )

    def copy(self) -> DataRecord:
        return DataRecord(self.input.copy(), self.ideal.copy(), self.significance)


class DatasetState(enum.Enum):
    LOADING = "loading"
    FINALIZED = "finalized"
    DISPOSED = "disposed"


class DatasetStateError(RuntimeError):
    """An operation was called in the wrong dataset lifecycle state."""


class _DiskHandles:
    """
    Every OS resource owned by the disk tier.

    Kept apart from the dataset so ``weakref.finalize`` can release them
    without holding a reference to the dataset itself.
    """

    def __init__(self, path: Path):
        self.path = path
        self.writer: Optional[BinaryIO] = None
        self.reader: Optional[BinaryIO] = None
        self.mapped: Optional[np.memmap] = None

    def release(self) -> None:
        for handle in (self.writer, self.reader):
            if handle is not None and not handle.closed:
                handle.close()
        self.writer = None
        self.reader = None
        # the mapping closes once the last view of it is gone
        self.mapped = None
        if self.path.exists():
            self.path.unlink()


class TieredDataset(Dataset):
    """
    Memory-first, disk-overflow record store.

    Parameters
    ----------
    input_count : int
        Length of every record's input vector.
    output_count : int
        Length of every record's ideal (target) vector.
    memory_budget_bytes : int
        Bytes the in-memory tier may use. 0 makes the dataset pure-disk.
    path : str or Path
        Backing file for the disk tier. Created only when needed.
    """

    def __init__(
        self,
        input_count: int,
        output_count: int,
        memory_budget_bytes: int,
        path: str | Path,
    ):
        if input_count < 0 or output_count < 0:
            raise ValueError(
                f"Node counts must be >= 0, got input={input_count}, "
                f"output={output_count}"
            )
        if memory_budget_bytes < 0:
            raise ValueError(
                f"memory_budget_bytes must be >= 0, got {memory_budget_bytes}"
            )

        self.input_count = input_count
        self.output_count = output_count
        self.record_width = input_count + output_count + 1
        self.record_bytes = self.record_width * _ITEM_BYTES
        self.memory_budget_bytes = memory_budget_bytes
        self.memory_capacity = memory_budget_bytes // self.record_bytes

        self._rows: list[np.ndarray] = []
        self._memory_block: Optional[np.ndarray] = None
        self._disk_count = 0

        self._handles = _DiskHandles(Path(path))
        self._finalizer = weakref.finalize(self, self._handles.release)
        self.state = DatasetState.LOADING

    # ─── Load phase ─────────────────────────────────────────────────────

    def append(self, record: DataRecord) -> None:
        """Append a record; only valid while loading."""
        if self.state is not DatasetState.LOADING:
            raise DatasetStateError(f"Cannot append to a {self.state.value} dataset")

        row = self._pack(record)
        if len(self._rows) < self.memory_capacity:
            self._rows.append(row)
            return

        if self._handles.writer is None:
            self._handles.path.parent.mkdir(parents=True, exist_ok=True)
            self._handles.writer = open(self._handles.path, "wb")
            logger.debug(
                f"Memory tier full ({len(self._rows):,} records), "
                f"spilling to {self._handles.path}"
            )
        self._handles.writer.write(row.tobytes())
        self._disk_count += 1

    def finalize_load(self) -> None:
        """
        Close the dataset for appends and index the disk tier.

        Must be called exactly once before iteration reads the dataset.
        """
        if self.state is not DatasetState.LOADING:
            raise DatasetStateError(
                f"finalize_load() called on a {self.state.value} dataset"
            )

        if self._rows:
            self._memory_block = np.vstack(self._rows)
        else:
            self._memory_block = np.empty((0, self.record_width), dtype=np.float64)
        self._rows = []

        handles = self._handles
        if handles.writer is not None:
            handles.writer.flush()
            os.fsync(handles.writer.fileno())
            handles.writer.close()
            handles.writer = None
        if handles.reader is not None:
            handles.reader.close()
            handles.reader = None
        if self._disk_count > 0:
            handles.mapped = np.memmap(
                handles.path,
                dtype=np.float64,
                mode="r",
                shape=(self._disk_count, self.record_width),
            )

        self.state = DatasetState.FINALIZED
        logger.debug(
            f"Dataset finalized: {self.memory_count:,} in memory, "
            f"{self.disk_count:,} on disk"
        )

    # ─── Reads ──────────────────────────────────────────────────────────

    @property
    def memory_count(self) -> int:
        if self._memory_block is not None:
            return len(self._memory_block)
        return len(self._rows)

    @property
    def disk_count(self) -> int:
        return self._disk_count

    @property
    def record_count(self) -> int:
        """Total records across the memory and disk tiers."""
        return self.memory_count + self._disk_count

    def __len__(self) -> int:
        return self.record_count

    def read_at(self, position: int, into: DataRecord) -> DataRecord:
        """
        Copy the record at ``position`` into a caller-supplied buffer.

        Works identically for memory- and disk-tier positions, during
        loading as well as after finalize_load().
        """
        row = self._row_at(position)
        into.input[:] = row[: self.input_count]
        into.ideal[:] = row[self.input_count: self.input_count + self.output_count]
        into.significance = float(row[-1])
        return into

    def __getitem__(self, idx: int) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Get one record as tensors.

        Returns
        -------
        tuple[torch.Tensor, torch.Tensor, torch.Tensor]
            input (input_count,), ideal (output_count,), significance ().
        """
        row = np.array(self._row_at(idx), dtype=np.float64)
        tensor = torch.from_numpy(row)
        return (
            tensor[: self.input_count],
            tensor[self.input_count: self.input_count + self.output_count],
            tensor[-1],
        )

    def _row_at(self, position: int) -> np.ndarray:
        if self.state is DatasetState.DISPOSED:
            raise DatasetStateError("Cannot read from a disposed dataset")
        if position < 0 or position >= self.record_count:
            raise IndexError(
                f"Position {position} out of range for dataset of size "
                f"{self.record_count}"
            )

        memory_count = self.memory_count
        if position < memory_count:
            if self._memory_block is not None:
                return self._memory_block[position]
            return self._rows[position]

        disk_position = position - memory_count
        if self._handles.mapped is not None:
            return self._handles.mapped[disk_position]
        return self._read_disk_row(disk_position)

    def _read_disk_row(self, disk_position: int) -> np.ndarray:
        handles = self._handles
        if handles.writer is not None:
            handles.writer.flush()
        if handles.reader is None:
            handles.reader = open(handles.path, "rb")
        handles.reader.seek(disk_position * self.record_bytes)
        data = handles.reader.read(self.record_bytes)
        return np.frombuffer(data, dtype=np.float64, count=self.record_width)

    def _pack(self, record: DataRecord) -> np.ndarray:
        if len(record.input) != self.input_count or len(record.ideal) != self.output_count:
            raise ValueError(
                f"Record shape ({len(record.input)}, {len(record.ideal)}) does "
                f"not match dataset ({self.input_count}, {self.output_count})"
            )
        row = np.empty(self.record_width, dtype=np.float64)
        row[: self.input_count] = record.input
        row[self.input_count: self.input_count + self.output_count] = record.ideal
        row[-1] = record.significance
        return row

    # ─── Disposal ───────────────────────────────────────────────────────

    def dispose(self) -> None:
        """Release every file handle and remove the backing file. Idempotent."""
        if self.state is DatasetState.DISPOSED:
            return
        self._finalizer()
        self._rows = []
        self._memory_block = None
        self.state = DatasetState.DISPOSED

    def __enter__(self) -> TieredDataset:
        return self

    def __exit__(self, *args) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return (
            f"TieredDataset(records={self.record_count:,}, "
            f"memory={self.memory_count:,}, disk={self.disk_count:,}, "
            f"state={self.state.value})"
        )


def available_memory() -> int:
    """Bytes of memory currently available to this process."""
    return int(psutil.virtual_memory().available)


def create_dataset_pair(
    input_count: int,
    output_count: int,
    on_disk: bool,
    memory_fraction: float,
    validation_rate: float,
    data_dir: str | Path,
) -> tuple[TieredDataset, TieredDataset]:
    """
    Create the training and validation datasets of one worker.

    Parameters
    ----------
    on_disk : bool
        Pure-disk mode: both datasets get a zero memory budget.
    memory_fraction : float
        Share of available memory for data in tiered mode; split between
        training and validation as ``1 - validation_rate`` / ``validation_rate``.
    data_dir : str or Path
        Directory for the backing files; created if missing. The caller
        owns it and removes it.

    Returns
    -------
    tuple[TieredDataset, TieredDataset]
        (training, validation)
    """
    directory = Path(data_dir)
    directory.mkdir(parents=True, exist_ok=True)

    if on_disk:
        train_budget = validation_budget = 0
        logger.info("Training and validation data are stored on disk.")
    else:
        budget = int(available_memory() * memory_fraction)
        train_budget = int(budget * (1 - validation_rate))
        validation_budget = int(budget * validation_rate)
        logger.info(
            f"Data memory budget: {budget / 1024 / 1024:.1f}MB "
            f"(train={train_budget / 1024 / 1024:.1f}MB, "
            f"validation={validation_budget / 1024 / 1024:.1f}MB)"
        )

    training = TieredDataset(
        input_count, output_count, train_budget, directory / "training.bin"
    )
    validation = TieredDataset(
        input_count, output_count, validation_budget, directory / "validation.bin"
    )
    return training, validation
