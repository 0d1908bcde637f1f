"""
Anomaly likelihood estimators.

An estimator turns a window of raw anomaly scores into distribution parameters
(fit) and scores new samples against those parameters (score). The helper only
drives this interface; the math lives in the concrete estimator.

Workflow (GaussianTailEstimator):
1. Fit: moving-average the raw scores, drop the warm-up records, estimate a
   normal distribution over the averaged scores
2. Score: average the new raw score with the stored window and return the tail
   probability of that average under the fitted distribution
"""

import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, NamedTuple, Sequence

import numpy as np
import pandas as pd
import structlog

logger = structlog.get_logger(__name__)

# Lower bounds applied to the estimated distribution of averaged raw scores
THRESHOLD_MEAN = 0.03
THRESHOLD_VARIANCE = 0.0003

# Metric values flatter than this are reported as not anomalous
FLAT_METRIC_VARIANCE = 1.5e-5


class Sample(NamedTuple):
    """One input record for the estimator"""

    timestamp: datetime
    value: float
    raw_score: float


@dataclass
class LikelihoodParams:
    """Fitted estimator parameters (serializable)"""

    distribution: dict[str, Any]
    moving_average: dict[str, Any]
    historical_likelihoods: list[float] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LikelihoodParams":
        """Create from dictionary"""
        return cls(**data)


class LikelihoodEstimator(ABC):
    """Abstract base class for likelihood estimators

    Each estimator must implement:
    1. fit() - estimate distribution parameters from an ordered sample window
    2. score() - likelihood of one new sample under fitted parameters
    """

    @abstractmethod
    def fit(self, samples: Sequence[Sample], skip_records: int) -> LikelihoodParams:
        """Estimate distribution parameters

        Args:
            samples: Samples ordered by timestamp
            skip_records: Number of leading records to leave out of the estimate

        Returns:
            LikelihoodParams for use with score()
        """
        pass

    @abstractmethod
    def score(self, sample: Sample, params: LikelihoodParams) -> float:
        """Likelihood of the sample under params, in [0, 1]"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the estimator"""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


def null_distribution() -> dict[str, Any]:
    """Distribution that reports every sample as fully expected"""
    return {"name": "normal", "mean": 0.5, "variance": 1e6, "stdev": 1e3}


def estimate_normal(values: np.ndarray, lower_bound_check: bool = True) -> dict[str, Any]:
    """Estimate a normal distribution from values"""
    mean = float(np.mean(values))
    variance = float(np.var(values))

    if lower_bound_check:
        mean = max(mean, THRESHOLD_MEAN)
        variance = max(variance, THRESHOLD_VARIANCE)

    return {
        "name": "normal",
        "mean": mean,
        "variance": variance,
        "stdev": math.sqrt(variance),
    }


def tail_probability(x: float, distribution: dict[str, Any]) -> float:
    """Probability of getting samples further from the mean than x

    Values below the mean are mirrored, so only unusually high averages
    produce a small probability.
    """
    mean = distribution["mean"]
    if x < mean:
        xp = 2 * mean - x
        return 1.0 - tail_probability(xp, distribution)

    z = (x - mean) / distribution["stdev"]
    return 0.5 * math.erfc(z / math.sqrt(2))


class GaussianTailEstimator(LikelihoodEstimator):
    """Normal-distribution tail estimator over moving-averaged raw scores"""

    def __init__(self, averaging_window: int = 10):
        if averaging_window < 1:
            raise ValueError(f"averaging_window must be >= 1, got {averaging_window}")
        self.averaging_window = averaging_window
        self._name = "gaussian_tail"

    @property
    def name(self) -> str:
        return self._name

    def fit(self, samples: Sequence[Sample], skip_records: int) -> LikelihoodParams:
        if len(samples) == 0:
            raise ValueError("Must have at least one anomaly score")

        frame = pd.DataFrame(list(samples), columns=["timestamp", "value", "raw_score"])
        averaged = (
            frame["raw_score"].astype(float).rolling(self.averaging_window, min_periods=1).mean()
        )

        if len(averaged) <= skip_records:
            distribution = null_distribution()
        else:
            distribution = estimate_normal(averaged.iloc[skip_records:].to_numpy())

            metric_distribution = estimate_normal(
                frame["value"].astype(float).iloc[skip_records:].to_numpy(),
                lower_bound_check=False,
            )
            if metric_distribution["variance"] < FLAT_METRIC_VARIANCE:
                distribution = null_distribution()

        likelihoods = [tail_probability(x, distribution) for x in averaged]

        historical_values = frame["raw_score"].astype(float).iloc[-self.averaging_window :].tolist()
        params = LikelihoodParams(
            distribution=distribution,
            moving_average={
                "historical_values": historical_values,
                "total": float(sum(historical_values)),
                "window_size": self.averaging_window,
            },
            historical_likelihoods=likelihoods[-self.averaging_window :],
        )

        logger.debug(
            "Estimated likelihood distribution",
            samples=len(samples),
            skip_records=skip_records,
            mean=round(distribution["mean"], 5),
            stdev=round(distribution["stdev"], 5),
        )

        return params

    def score(self, sample: Sample, params: LikelihoodParams) -> float:
        window = params.moving_average
        values = list(window["historical_values"])
        total = window["total"]

        if len(values) >= window["window_size"]:
            total -= values[0]
            values = values[1:]
        total += sample.raw_score
        values.append(sample.raw_score)

        average = total / len(values)
        return tail_probability(average, params.distribution)


# Registry of available estimators
ESTIMATOR_REGISTRY = {
    "gaussian_tail": GaussianTailEstimator,
}


def get_estimator(name: str, config: dict | None = None) -> LikelihoodEstimator:
    """Factory to create a likelihood estimator

    Args:
        name: Name of the estimator (e.g., 'gaussian_tail')
        config: Keyword arguments for the estimator

    Raises:
        ValueError: If name is not registered
    """
    if name not in ESTIMATOR_REGISTRY:
        available = ", ".join(ESTIMATOR_REGISTRY.keys())
        raise ValueError(f"Unknown estimator '{name}'. Available estimators: {available}")

    return ESTIMATOR_REGISTRY[name](**(config or {}))
