#!/usr/bin/env python3
"""
distrain — Scoring Script
=========================
Scores a delimited data file with an ensemble of trained models.

The input file starts with a header row of column names (matching the
column config); every other row is one raw record. Each output line is
``tag|score_0|score_1|...``; records no model could score are counted
and left out.

Usage:
    python scripts/score.py --model-config configs/model.yaml \\
        --column-config configs/columns.json \\
        --models models/model0.pt models/model1.pt \\
        --input data/eval.psv --output scores.psv
"""

import argparse
import logging
import sys
from pathlib import Path

from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from distrain.config import load_column_config_list, load_model_config
from distrain.model.io import load_model
from distrain.scoring.scorer import EnsembleScorer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="distrain Ensemble Scoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # One neural network:
    python scripts/score.py --model-config configs/model.yaml \\
        --column-config configs/columns.json --models models/model0.pt \\
        --input data/eval.psv --output scores.psv

    # A GBDT ensemble:
    python scripts/score.py --model-config configs/gbt.yaml \\
        --column-config configs/columns.json --models models/trees.json \\
        --input data/eval.psv --output scores.psv
        """,
    )
    parser.add_argument("--model-config", type=str, required=True)
    parser.add_argument("--column-config", type=str, required=True)
    parser.add_argument(
        "--models", type=str, nargs="+", required=True,
        help="Model files (.pt, .joblib, .json), scored in the given order",
    )
    parser.add_argument("--input", type=str, required=True)
    parser.add_argument("--output", type=str, required=True)
    parser.add_argument("--delimiter", type=str, default="|")
    args = parser.parse_args()

    model_config = load_model_config(args.model_config)
    columns = load_column_config_list(args.column_config)
    models = [load_model(path) for path in args.models]
    scorer = EnsembleScorer(models, columns, model_config)
    logger.info(f"Scorer: {scorer!r}")

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    scored = unscored = 0
    with open(args.input, "r", encoding="utf-8") as src, \
            open(output_path, "w", encoding="utf-8") as dst:
        header = src.readline().rstrip("\n").split(args.delimiter)
        for line in tqdm(src, desc="Scoring", unit=" records"):
            line = line.rstrip("\n")
            if not line:
                continue
            raw = dict(zip(header, line.split(args.delimiter)))
            result = scorer.score(raw)
            if result is None:
                unscored += 1
                continue
            tag = "" if result.tag is None else str(result.tag)
            dst.write("|".join([tag] + [str(s) for s in result.scores]) + "\n")
            scored += 1

    logger.info(f"Scored {scored:,} records ({unscored:,} unscored) → {output_path}")


if __name__ == "__main__":
    main()
