"""
distrain.training — Iterative Gradient Training
===============================================
The worker side of a bulk-synchronous training job. Every iteration:

    coordinator ── global weights ──▶ TrainingWorker
                                         │ GradientEngine.run() × epochs
    coordinator ◀── NNParams ─────────── ┘ (gradients, errors, size)

Components:
    - params.py   — NNParams report and IterationContext
    - gradient.py — gradient/error computation over the tiered datasets
    - worker.py   — worker lifecycle (init, load, compute, close)
"""

from distrain.training.params import IterationContext, NNParams
from distrain.training.gradient import GradientEngine
from distrain.training.worker import TrainingWorker, WorkerInitError, WorkerState
