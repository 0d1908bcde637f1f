"""
Data models and configuration for anomaly likelihood scoring.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .estimator import LikelihoodParams


class MetricStatus(str, Enum):
    """Lifecycle status of a monitored metric (set by external lifecycle management)"""

    UNMONITORED = "unmonitored"
    ACTIVE = "active"
    CREATE_PENDING = "create_pending"
    ERROR = "error"
    PENDING_DATA = "pending_data"


@dataclass
class LikelihoodConfig:
    """Tuning constants for anomaly likelihood statistics"""

    min_sample_size: int = 200
    max_sample_size: int = 1000
    min_refresh_interval: int = 10
    skip_records: int = 288  # one day of 5min records while the model converges
    forced_refresh_score_threshold: float = 0.99
    averaging_window: int = 10


@dataclass
class MetricSample:
    """One row of a metric's history"""

    row_id: int
    timestamp: datetime
    value: float
    raw_anomaly_score: Optional[float] = None
    anomaly_score: Optional[float] = None
    display_value: Optional[int] = None

    @staticmethod
    def calculate_display_value(score: float) -> int:
        """Severity bucket shown to users for an anomaly score"""
        if score >= 0.8:
            return 3
        elif score >= 0.6:
            return 2
        elif score >= 0.4:
            return 1
        else:
            return 0


@dataclass
class AnomalyParams:
    """Likelihood parameters together with the row they were computed through"""

    last_row_id_for_stats: int
    params: LikelihoodParams

    def to_dict(self) -> dict:
        return {
            "last_rowid_for_stats": self.last_row_id_for_stats,
            "params": self.params.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnomalyParams":
        return cls(
            last_row_id_for_stats=int(data["last_rowid_for_stats"]),
            params=LikelihoodParams.from_dict(data["params"]),
        )


@dataclass
class MetricModelParams:
    """Serialized per-metric model state stored alongside the metric"""

    min: Optional[float] = None
    max: Optional[float] = None
    min_resolution: Optional[float] = None
    anomaly_likelihood_params: Optional[AnomalyParams] = None
    model_config: dict[str, Any] = field(default_factory=dict)
    inference_args: dict[str, Any] = field(default_factory=dict)
    input_schema: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "min": self.min,
            "max": self.max,
            "minResolution": self.min_resolution,
            "anomalyLikelihoodParams": (
                self.anomaly_likelihood_params.to_dict()
                if self.anomaly_likelihood_params is not None
                else None
            ),
            "modelConfig": self.model_config,
            "inferenceArgs": self.inference_args,
            "inputSchema": self.input_schema,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "MetricModelParams":
        data = data or {}
        anomaly_params = data.get("anomalyLikelihoodParams")
        return cls(
            min=data.get("min"),
            max=data.get("max"),
            min_resolution=data.get("minResolution"),
            anomaly_likelihood_params=(
                AnomalyParams.from_dict(anomaly_params) if anomaly_params else None
            ),
            model_config=data.get("modelConfig") or {},
            inference_args=data.get("inferenceArgs") or {},
            input_schema=data.get("inputSchema") or [],
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str | None) -> "MetricModelParams":
        return cls.from_dict(json.loads(payload) if payload else None)


@dataclass
class Metric:
    """A monitored metric"""

    uid: str
    status: MetricStatus = MetricStatus.UNMONITORED
    name: str = ""
    model_params: MetricModelParams = field(default_factory=MetricModelParams)
