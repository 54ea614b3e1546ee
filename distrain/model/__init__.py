"""
distrain.model — Trained Model Families
=======================================
Every model the ensemble scorer can combine, behind one capability
(``ScorableModel``: ``input_count`` + ``compute``):

    - network.py — FeedForwardNetwork (torch), also the training model
    - linear.py  — LogisticRegressionModel (torch), SVMModel (scikit-learn)
    - tree.py    — TreeEnsemble for GBDT / random forest
    - io.py      — save_model / load_model
"""

from distrain.model.base import ModelKind, ScorableModel
from distrain.model.network import FeedForwardNetwork
from distrain.model.linear import LogisticRegressionModel, SVMModel
from distrain.model.tree import EnsembleKind, Tree, TreeEnsemble, TreeNode, tree_weights
from distrain.model.io import load_model, save_model
