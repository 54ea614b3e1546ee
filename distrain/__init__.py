"""
distrain
========
Distributed Iterative Gradient Training and Multi-Model Ensemble Scoring.

This package provides:
    1. A training worker that takes part in an externally coordinated,
       bulk-synchronous training job: it samples its share of the data
       into memory/disk tiers and reports gradients every iteration
    2. An ensemble scorer that combines neural networks, SVM, logistic
       regression and tree ensembles into integer scores

The coordinator (weight aggregation, convergence) is not part of this
package; a worker only has to honour the per-iteration contract.

Quick Start:
    >>> from distrain.config import ModelConfig
    >>> config = ModelConfig.from_yaml("configs/model.yaml")
    >>> print(config)

Subpackages:
    - distrain.data     — Column mapping, tiered datasets, sampling
    - distrain.model    — Network, linear/SVM and tree-ensemble models
    - distrain.training — Gradient engine and training worker
    - distrain.scoring  — Ensemble scorer
"""

__version__ = "0.1.0"
__author__ = "Aditya"
