#!/usr/bin/env python3
"""
distrain — Local Training Script
================================
Drives one TrainingWorker through N iterations in a single process, with
a plain gradient-descent step standing in for the coordinator. Meant for
smoke runs and debugging data plumbing, not for real jobs (the real
coordinator aggregates gradients from many workers).

Input is a normalized file: one record per line,
``ideal | input_0 | ... | input_n [| weight]``.

Usage:
    python scripts/train_local.py --model-config configs/model.yaml \\
        --column-config configs/columns.json --data data/normalized.psv
    python scripts/train_local.py --smoke-test
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np
from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from distrain.config import (
    CANDIDATE_FLAG,
    META_FLAG,
    TARGET_FLAG,
    ColumnConfig,
    ModelConfig,
    WorkerProps,
    load_column_config_list,
    load_model_config,
)
from distrain.model.io import save_model
from distrain.model.network import FeedForwardNetwork
from distrain.training.params import IterationContext
from distrain.training.worker import TrainingWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def smoke_test_columns(n_inputs: int = 3) -> list[ColumnConfig]:
    """id (meta), tag (target) and n numeric candidates."""
    columns = [
        ColumnConfig(column_num=0, column_name="id", column_flag=META_FLAG),
        ColumnConfig(column_num=1, column_name="tag", column_flag=TARGET_FLAG),
    ]
    for i in range(n_inputs):
        columns.append(
            ColumnConfig(column_num=i + 2, column_name=f"x{i}", column_flag=CANDIDATE_FLAG)
        )
    return columns


def smoke_test_rows(n_records: int, n_inputs: int, seed: int = 42) -> list[str]:
    """Normalized rows of a linearly separable toy problem."""
    rng = np.random.default_rng(seed)
    x = rng.normal(size=(n_records, n_inputs))
    tags = (x[:, 0] + x[:, 1] > 0).astype(int)
    return [
        "|".join([str(tag)] + [f"{v:.6f}" for v in row])
        for tag, row in zip(tags, x)
    ]


def main():
    parser = argparse.ArgumentParser(
        description="distrain Local Training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Train on a normalized file:
    python scripts/train_local.py --model-config configs/model.yaml \\
        --column-config configs/columns.json --data data/normalized.psv

    # Quick smoke test on generated data:
    python scripts/train_local.py --smoke-test --iterations 20
        """,
    )
    parser.add_argument("--model-config", type=str, default=None)
    parser.add_argument("--column-config", type=str, default=None)
    parser.add_argument("--data", type=str, default=None)
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--poisson", action="store_true")
    parser.add_argument("--data-dir", type=str, default=None)
    parser.add_argument("--output", type=str, default="outputs/model0.pt")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    if args.smoke_test:
        model_config = ModelConfig.for_smoke_test()
        columns = smoke_test_columns()
        rows = smoke_test_rows(2000, 3, seed=args.seed)
    else:
        if not (args.model_config and args.column_config and args.data):
            parser.error("--model-config, --column-config and --data are required")
        model_config = load_model_config(args.model_config)
        columns = load_column_config_list(args.column_config)
        with open(args.data, "r", encoding="utf-8") as f:
            rows = [line for line in f if line.strip()]

    iterations = args.iterations or model_config.train.num_train_epochs
    props = WorkerProps(
        dry_train=args.dry_run,
        poisson_sampler=args.poisson,
        data_dir=args.data_dir,
        seed=args.seed,
    )
    logger.info(f"\n{model_config}")

    history = []
    with TrainingWorker() as worker:
        worker.init(props, model_config=model_config, columns=columns)
        for row in tqdm(rows, desc="Loading", unit=" records"):
            worker.load(row)
        worker.finalize_load()

        # Stand-in coordinator: holds the weights, applies the mean gradient.
        network = FeedForwardNetwork.from_config(
            worker.input_count, worker.output_count, model_config, seed=args.seed
        )
        weights = network.flat_weights()

        for iteration in range(1, iterations + 1):
            context = IterationContext(
                current_iteration=iteration,
                last_weights=weights,
                is_first_iteration=iteration == 1,
            )
            report = worker.compute(context)
            if report is None or report.is_empty:
                continue
            weights = weights - model_config.learning_rate * report.gradients / max(
                report.train_size, 1
            )
            history.append(report.to_dict() | {"iteration": iteration})
            history[-1].pop("gradients")
            logger.info(
                f"Iteration {iteration}/{iterations}: "
                f"train={report.train_error:.6f}, validation={report.test_error:.6f}"
            )

    network.set_flat_weights(weights)
    save_model(network, args.output)

    history_path = Path(args.output).with_suffix(".history.json")
    with open(history_path, "w") as f:
        json.dump(history, f, indent=2)
    logger.info(f"Training history saved to {history_path}")


if __name__ == "__main__":
    main()
