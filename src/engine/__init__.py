"""
Online anomaly likelihood scoring engine for time-ordered metric streams.
"""

from .config import EngineConfig
from .errors import EngineError, MetricNotActiveError, MetricNotFound, ModelNotFound

__all__ = [
    "EngineConfig",
    "EngineError",
    "MetricNotActiveError",
    "MetricNotFound",
    "ModelNotFound",
]

__version__ = "1.0.0"
