"""
Anomaly Likelihood Scoring

Converts raw anomaly scores emitted by per-metric models into calibrated
anomaly likelihood scores.

Architecture:
- Estimator: fits a distribution over a window of raw scores and scores new samples
- Likelihood helper: bootstraps the sample cache, schedules statistics refreshes,
  scores result batches idempotently
- Anomaly service: feeds model results through the helper and persists scores

Usage:
    # Score pending rows of all active metrics
    python -m src.engine.run
"""

from .estimator import GaussianTailEstimator, LikelihoodEstimator, LikelihoodParams
from .likelihood import AnomalyLikelihoodHelper
from .models import AnomalyParams, LikelihoodConfig, Metric, MetricSample, MetricStatus
from .service import AnomalyService

__all__ = [
    "AnomalyLikelihoodHelper",
    "AnomalyService",
    "AnomalyParams",
    "GaussianTailEstimator",
    "LikelihoodConfig",
    "LikelihoodEstimator",
    "LikelihoodParams",
    "Metric",
    "MetricSample",
    "MetricStatus",
]
