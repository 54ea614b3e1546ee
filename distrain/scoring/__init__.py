"""distrain.scoring — combine trained models into integer scores."""

from distrain.scoring.scorer import EnsembleScorer, ScoreObject, UnsupportedModelError, to_score
