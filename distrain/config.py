"""
distrain Configuration System
=============================
Centralized configuration for the training workers and the ensemble
scorer, using Python dataclasses.

Two kinds of configuration travel with every job:

    1. **ModelConfig** — what to train and how (algorithm, train
       parameters, target tags). One per job.
    2. **ColumnConfig list** — one entry per raw column, describing its
       role (meta / target / candidate), type, category bins and whether
       variable selection kept it. Loaded once, read-only thereafter.

On top of these, **WorkerProps** carries the per-job knobs a worker is
launched with (config paths, dry-run, Poisson sampler, memory fraction).

Usage:
    >>> config = ModelConfig.from_yaml("configs/model.yaml")
    >>> columns = load_column_config_list("configs/columns.json")
    >>> config.learning_rate
    0.1
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Keys of the free-form ``TrainParams.params`` dictionary.
LEARNING_RATE = "LearningRate"
NUM_HIDDEN_LAYERS = "NumHiddenLayers"
ACTIVATION_FUNC = "ActivationFunc"
NUM_HIDDEN_NODES = "NumHiddenNodes"

SUPPORTED_ACTIVATIONS = ("sigmoid", "tanh", "relu", "linear")

NN_ALG_NAME = "NN"
LR_ALG_NAME = "LR"
SVM_ALG_NAME = "SVM"
GBDT_ALG_NAME = "GBT"
RF_ALG_NAME = "RF"

_GBDT_ALIASES = (GBDT_ALG_NAME, "GBDT")
_KNOWN_ALGORITHMS = (NN_ALG_NAME, LR_ALG_NAME, SVM_ALG_NAME, RF_ALG_NAME) + _GBDT_ALIASES


class SourceType(str, enum.Enum):
    """Where configuration and data files live."""

    LOCAL = "LOCAL"
    HDFS = "HDFS"

    @classmethod
    def parse(cls, value: "str | SourceType | None") -> "SourceType":
        if value is None:
            return cls.LOCAL
        if isinstance(value, SourceType):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(
                f"Unknown source type: '{value}'. Choose from: LOCAL, HDFS"
            ) from None


def is_tree_algorithm(algorithm: str) -> bool:
    """True for GBDT and random-forest algorithm names."""
    return algorithm.upper() in _GBDT_ALIASES + (RF_ALG_NAME,)


def is_gbdt_algorithm(algorithm: str) -> bool:
    return algorithm.upper() in _GBDT_ALIASES


# =============================================================================
# Train Parameters
# =============================================================================

@dataclass
class TrainParams:
    """
    Hyperparameters of the iterative training process.

    Parameters
    ----------
    bagging_sample_rate : float
        Fraction of raw records a worker keeps when bagging without
        replacement. 1.0 keeps everything.

    bagging_with_replacement : bool
        Whether records may be duplicated (weighted) or dropped to build
        a bootstrap-like resample.

    validation_rate : float
        Cross-validation rate: fraction of sampled records routed to the
        validation partition.

    fix_initial_input : bool
        Route records by a stable per-record hash instead of a random
        draw, so the same row always lands in the same partition.

    train_on_disk : bool
        Keep both partitions entirely on disk instead of memory-first.

    is_cross_over : bool
        Mix validation rows into training per iteration, with a fresh
        seed every iteration.

    epochs_per_iteration : int
        Local epochs a worker runs before reporting to the coordinator.

    num_train_epochs : int
        Total iterations the coordinator is expected to run.

    batch_size : int
        Rows per forward/backward batch inside the gradient engine.

    binary_classification : bool
        Whether the job predicts a single binary target.

    params : dict
        Algorithm parameters (``LearningRate``, ``NumHiddenLayers``,
        ``ActivationFunc``, ``NumHiddenNodes``).
    """
    bagging_sample_rate: float = 1.0
    bagging_with_replacement: bool = False
    validation_rate: float = 0.2
    fix_initial_input: bool = False
    train_on_disk: bool = False
    is_cross_over: bool = False
    epochs_per_iteration: int = 1
    num_train_epochs: int = 100
    batch_size: int = 256
    binary_classification: bool = True
    params: dict[str, Any] = field(default_factory=lambda: {
        LEARNING_RATE: 0.1,
        NUM_HIDDEN_LAYERS: 1,
        ACTIVATION_FUNC: ["tanh"],
        NUM_HIDDEN_NODES: [10],
    })

    def validate(self) -> None:
        """Validate train parameters."""
        if not 0.0 < self.bagging_sample_rate <= 1.0:
            raise ValueError(
                f"bagging_sample_rate must be in (0, 1], got "
                f"{self.bagging_sample_rate}"
            )
        if not 0.0 <= self.validation_rate < 1.0:
            raise ValueError(
                f"validation_rate must be in [0, 1), got {self.validation_rate}"
            )
        if self.epochs_per_iteration < 1:
            raise ValueError(
                f"epochs_per_iteration must be >= 1, got "
                f"{self.epochs_per_iteration}"
            )
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        n_layers = int(self.params.get(NUM_HIDDEN_LAYERS, 0))
        activations = list(self.params.get(ACTIVATION_FUNC, []))
        hidden_nodes = list(self.params.get(NUM_HIDDEN_NODES, []))
        if n_layers < 0:
            raise ValueError(f"{NUM_HIDDEN_LAYERS} must be >= 0, got {n_layers}")
        if len(activations) < n_layers or len(hidden_nodes) < n_layers:
            raise ValueError(
                f"{NUM_HIDDEN_LAYERS}={n_layers} needs as many entries in "
                f"{ACTIVATION_FUNC} ({len(activations)}) and "
                f"{NUM_HIDDEN_NODES} ({len(hidden_nodes)})"
            )
        for name in activations[:n_layers]:
            if str(name).lower() not in SUPPORTED_ACTIVATIONS:
                raise ValueError(
                    f"Unknown activation '{name}'. Choose from: "
                    f"{', '.join(SUPPORTED_ACTIVATIONS)}"
                )
        if float(self.params.get(LEARNING_RATE, 0.1)) <= 0:
            raise ValueError(
                f"{LEARNING_RATE} must be positive, got "
                f"{self.params.get(LEARNING_RATE)}"
            )


# =============================================================================
# Model Configuration
# =============================================================================

@dataclass
class ModelConfig:
    """
    Job-level model configuration.

    Parameters
    ----------
    algorithm : str
        ``NN``, ``LR``, ``SVM``, ``GBT`` (alias ``GBDT``) or ``RF``.
    train : TrainParams
        Training hyperparameters.
    pos_tags, neg_tags : list[str]
        Raw target values meaning 1 and 0.
    weight_column_name : str or None
        Column holding a per-record significance; None means weight 1.
    normalize_std_dev_cutoff : float
        Z-scores are clipped to +/- this value during vectorization.
    """
    algorithm: str = NN_ALG_NAME
    train: TrainParams = field(default_factory=TrainParams)
    pos_tags: list[str] = field(default_factory=lambda: ["1"])
    neg_tags: list[str] = field(default_factory=lambda: ["0"])
    weight_column_name: Optional[str] = None
    normalize_std_dev_cutoff: float = 4.0

    def validate(self) -> None:
        """
        Check the configuration.

        Raises
        ------
        ValueError
            If any parameter is invalid or inconsistent with others.
        """
        if self.algorithm.upper() not in _KNOWN_ALGORITHMS:
            raise ValueError(
                f"Unknown algorithm: '{self.algorithm}'. "
                f"Choose from: {', '.join(_KNOWN_ALGORITHMS)}"
            )
        if not self.pos_tags:
            raise ValueError("pos_tags must not be empty")
        overlap = set(self.pos_tags) & set(self.neg_tags)
        if overlap:
            raise ValueError(f"Tags {sorted(overlap)} are both positive and negative")
        if self.normalize_std_dev_cutoff <= 0:
            raise ValueError(
                f"normalize_std_dev_cutoff must be positive, got "
                f"{self.normalize_std_dev_cutoff}"
            )
        self.train.validate()

    @property
    def is_tree_algorithm(self) -> bool:
        return is_tree_algorithm(self.algorithm)

    @property
    def is_gbdt(self) -> bool:
        return is_gbdt_algorithm(self.algorithm)

    @property
    def is_rf(self) -> bool:
        return self.algorithm.upper() == RF_ALG_NAME

    @property
    def learning_rate(self) -> float:
        return float(self.train.params.get(LEARNING_RATE, 0.1))

    @property
    def cross_validation_rate(self) -> float:
        return self.train.validation_rate

    @property
    def bagging_sample_rate(self) -> float:
        return self.train.bagging_sample_rate

    @property
    def bagging_with_replacement(self) -> bool:
        return self.train.bagging_with_replacement

    @property
    def fix_initial_input(self) -> bool:
        return self.train.fix_initial_input

    @property
    def is_binary_classification(self) -> bool:
        return self.train.binary_classification

    @classmethod
    def from_dict(cls, raw: dict) -> ModelConfig:
        raw = dict(raw)
        train = TrainParams(**raw.pop("train", {}))
        return cls(train=train, **raw)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ModelConfig:
        """
        Load and validate a model configuration from a YAML file.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        ValueError
            If the file is empty or the configuration is invalid.
        TypeError
            If the file holds keys the configuration does not know.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model config not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Model config is empty: {path}")

        config = cls.from_dict(raw)
        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.to_dict(),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Model config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)

    @classmethod
    def for_smoke_test(cls) -> ModelConfig:
        """A tiny NN configuration for tests and local runs."""
        return cls(
            algorithm=NN_ALG_NAME,
            train=TrainParams(
                bagging_sample_rate=1.0,
                bagging_with_replacement=False,
                validation_rate=0.2,
                epochs_per_iteration=1,
                num_train_epochs=5,
                batch_size=16,
                params={
                    LEARNING_RATE: 0.1,
                    NUM_HIDDEN_LAYERS: 1,
                    ACTIVATION_FUNC: ["tanh"],
                    NUM_HIDDEN_NODES: [4],
                },
            ),
        )

    def __repr__(self) -> str:
        lines = [
            "ModelConfig(",
            f"  Algorithm: {self.algorithm}, lr={self.learning_rate}",
            f"  Sampling:  rate={self.bagging_sample_rate}, "
            f"replacement={self.bagging_with_replacement}, "
            f"validation={self.cross_validation_rate:.0%}",
            f"  Hidden:    {self.train.params.get(NUM_HIDDEN_NODES)} "
            f"({self.train.params.get(ACTIVATION_FUNC)})",
            ")",
        ]
        return "\n".join(lines)


# =============================================================================
# Column Configuration
# =============================================================================

META_FLAG = "Meta"
TARGET_FLAG = "Target"
FORCE_SELECT_FLAG = "ForceSelect"
FORCE_REMOVE_FLAG = "ForceRemove"
CANDIDATE_FLAG = "Candidate"

_CAMEL_TO_SNAKE = {
    "columnNum": "column_num",
    "columnName": "column_name",
    "columnFlag": "column_flag",
    "columnType": "column_type",
    "finalSelect": "final_select",
    "binCategory": "bin_category",
    "binPosRate": "bin_pos_rate",
    "stdDev": "std_dev",
}


@dataclass
class ColumnConfig:
    """
    Metadata of one raw column.

    The order of ``bin_category`` defines each category's bin index;
    ``None`` entries stand for the missing value.
    """
    column_num: int
    column_name: str = ""
    column_flag: Optional[str] = None
    column_type: str = "N"
    final_select: bool = False
    bin_category: list[Optional[str]] = field(default_factory=list)
    bin_pos_rate: list[float] = field(default_factory=list)
    mean: float = 0.0
    std_dev: float = 1.0

    @property
    def is_meta(self) -> bool:
        return self.column_flag == META_FLAG

    @property
    def is_target(self) -> bool:
        return self.column_flag == TARGET_FLAG

    @property
    def is_force_remove(self) -> bool:
        return self.column_flag == FORCE_REMOVE_FLAG

    @property
    def is_categorical(self) -> bool:
        return self.column_type.upper() == "C"

    @property
    def is_numerical(self) -> bool:
        return not self.is_categorical

    @property
    def is_candidate(self) -> bool:
        """Eligible as a model input before variable selection."""
        return not (self.is_meta or self.is_target or self.is_force_remove)

    @classmethod
    def from_dict(cls, raw: dict) -> ColumnConfig:
        normalized = {_CAMEL_TO_SNAKE.get(k, k): v for k, v in raw.items()}
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in normalized.items() if k in known})


def _read_structured(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def load_model_config(
    path: str | Path,
    source_type: "SourceType | str" = SourceType.LOCAL,
) -> ModelConfig:
    """Load a ModelConfig (YAML) from the given source."""
    _check_source(source_type)
    return ModelConfig.from_yaml(path)


def load_column_config_list(
    path: str | Path,
    source_type: "SourceType | str" = SourceType.LOCAL,
) -> list[ColumnConfig]:
    """
    Load the ordered ColumnConfig list from a JSON or YAML file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file is empty or not a list.
    """
    _check_source(source_type)
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Column config not found: {path}")

    raw = _read_structured(path)
    if not raw:
        raise ValueError(f"Column config is empty: {path}")
    if not isinstance(raw, list):
        raise ValueError(f"Column config must be a list of columns: {path}")

    columns = [ColumnConfig.from_dict(item) for item in raw]
    logger.info(f"Loaded {len(columns)} column configs from {path}")
    return columns


def save_column_config_list(columns: list[ColumnConfig], path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump([asdict(c) for c in columns], f, indent=2)


def _check_source(source_type: "SourceType | str") -> None:
    if SourceType.parse(source_type) is not SourceType.LOCAL:
        raise NotImplementedError(
            f"Source type {SourceType.parse(source_type).value} is not readable "
            f"here; stage the files locally first."
        )


# =============================================================================
# Worker Properties
# =============================================================================

PROP_MODEL_CONFIG = "distrain.model.config"
PROP_COLUMN_CONFIG = "distrain.column.config"
PROP_SOURCE_TYPE = "distrain.source.type"
PROP_DRY_TRAIN = "distrain.dry.train"
PROP_POISSON_SAMPLER = "distrain.poisson.sampler"
PROP_MEMORY_FRACTION = "distrain.data.memory.fraction"
PROP_DATA_DIR = "distrain.data.dir"
PROP_SEED = "distrain.seed"


def _is_true(value: Any) -> bool:
    return str(value).strip().lower() == "true"


@dataclass
class WorkerProps:
    """
    Launch-time knobs of one training worker.

    Parameters
    ----------
    model_config_path, column_config_path : str
        Locations of the job's configuration files.
    source_type : SourceType
        Storage the configuration files live on.
    dry_train : bool
        Validate data plumbing only; every iteration reports a no-op.
    poisson_sampler : bool
        Use Poisson bagging when bagging with replacement.
    memory_fraction : float
        Share of available memory the in-memory tiers may use.
    data_dir : str or None
        Directory for disk-tier files; a fresh temporary directory if None.
    seed : int or None
        Seed for sampling randomness (None = nondeterministic).
    """
    model_config_path: str = ""
    column_config_path: str = ""
    source_type: SourceType = SourceType.LOCAL
    dry_train: bool = False
    poisson_sampler: bool = False
    memory_fraction: float = 0.5
    data_dir: Optional[str] = None
    seed: Optional[int] = None

    def validate(self) -> None:
        if not 0.0 <= self.memory_fraction <= 1.0:
            raise ValueError(
                f"memory_fraction must be in [0, 1], got {self.memory_fraction}"
            )

    @classmethod
    def from_mapping(cls, props: dict[str, Any]) -> WorkerProps:
        """Build from a flat job-properties map with string values."""
        seed = props.get(PROP_SEED)
        worker_props = cls(
            model_config_path=str(props.get(PROP_MODEL_CONFIG, "")),
            column_config_path=str(props.get(PROP_COLUMN_CONFIG, "")),
            source_type=SourceType.parse(props.get(PROP_SOURCE_TYPE)),
            dry_train=_is_true(props.get(PROP_DRY_TRAIN, False)),
            poisson_sampler=_is_true(props.get(PROP_POISSON_SAMPLER, False)),
            memory_fraction=float(props.get(PROP_MEMORY_FRACTION, 0.5)),
            data_dir=props.get(PROP_DATA_DIR),
            seed=int(seed) if seed is not None else None,
        )
        worker_props.validate()
        return worker_props
