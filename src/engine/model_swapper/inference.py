"""
Inference models producing raw anomaly scores, plus their registry and factory.

All models must inherit from InferenceModel and implement:
- run(): infer (and, when learning is enabled, learn) on one encoded record
- get_state()/set_state(): the learned state, for checkpointing
"""

import math
from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class InferenceModel(ABC):
    """Abstract base class for raw anomaly score models"""

    name = "base"

    def __init__(self, model_params: dict[str, Any]):
        self.model_params = dict(model_params)
        self.learning_enabled = False
        self.inference_enabled = False
        self.inference_args: dict[str, Any] = {}

    def enable_learning(self) -> None:
        self.learning_enabled = True

    def disable_learning(self) -> None:
        self.learning_enabled = False

    def enable_inference(self, inference_args: dict[str, Any] | None = None) -> None:
        self.inference_enabled = True
        self.inference_args = dict(inference_args or {})

    @abstractmethod
    def run(self, record: dict[str, Any]) -> dict[str, Any]:
        """Process one encoded record

        Returns:
            Inference dict with at least the 'anomaly_score' key
        """
        pass

    @abstractmethod
    def get_state(self) -> dict[str, Any]:
        pass

    @abstractmethod
    def set_state(self, state: dict[str, Any]) -> None:
        pass

    def to_dict(self) -> dict:
        """Convert to dictionary for checkpointing"""
        return {
            "model": self.name,
            "modelParams": self.model_params,
            "learningEnabled": self.learning_enabled,
            "inferenceEnabled": self.inference_enabled,
            "inferenceArgs": self.inference_args,
            "state": self.get_state(),
        }

    @staticmethod
    def from_dict(data: dict) -> "InferenceModel":
        """Restore a checkpointed model"""
        model = create_model({**data["modelParams"], "model": data["model"]})
        model.learning_enabled = data.get("learningEnabled", False)
        model.inference_enabled = data.get("inferenceEnabled", False)
        model.inference_args = data.get("inferenceArgs") or {}
        model.set_state(data.get("state") or {})
        return model

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(params={self.model_params})"


class RunningZScoreModel(InferenceModel):
    """Z-score of each value against the running mean and variance of the stream

    Raw score maps |z| to [0, 1]: z=3 -> 0.6, z>=5 -> 1.0
    """

    name = "running_zscore"

    def __init__(self, model_params: dict[str, Any]):
        super().__init__(model_params)
        self.z_score_scale = float(model_params.get("zScoreScale", 5.0))
        self.count = 0
        self.mean = 0.0
        self.m2 = 0.0

    @property
    def predicted_field(self) -> str:
        return self.inference_args.get("predictedField") or self.model_params.get(
            "predictedField", "c1"
        )

    def run(self, record: dict[str, Any]) -> dict[str, Any]:
        if not self.inference_enabled:
            raise RuntimeError("Inference is not enabled for this model")

        value = record.get(self.predicted_field)
        if value is None:
            return {"anomaly_score": 0.0, "z_score": None}

        value = float(value)
        z_score = 0.0
        if self.count >= 2:
            std = math.sqrt(self.m2 / (self.count - 1))
            if std > 0:
                z_score = (value - self.mean) / std

        if self.learning_enabled:
            # Welford's online update
            self.count += 1
            delta = value - self.mean
            self.mean += delta / self.count
            self.m2 += delta * (value - self.mean)

        return {
            "anomaly_score": min(1.0, abs(z_score) / self.z_score_scale),
            "z_score": round(z_score, 4),
        }

    def get_state(self) -> dict[str, Any]:
        return {"count": self.count, "mean": self.mean, "m2": self.m2}

    def set_state(self, state: dict[str, Any]) -> None:
        self.count = int(state.get("count", 0))
        self.mean = float(state.get("mean", 0.0))
        self.m2 = float(state.get("m2", 0.0))


# Registry of available models
MODEL_REGISTRY = {
    "running_zscore": RunningZScoreModel,
}


def create_model(model_params: dict[str, Any]) -> InferenceModel:
    """Factory to create an inference model

    Args:
        model_params: Model parameters; 'model' selects the implementation
            (default 'running_zscore')

    Raises:
        ValueError: If the model name is not registered
    """
    model_name = model_params.get("model", "running_zscore")
    if model_name not in MODEL_REGISTRY:
        available = ", ".join(MODEL_REGISTRY.keys())
        raise ValueError(f"Unknown model '{model_name}'. Available models: {available}")

    return MODEL_REGISTRY[model_name](model_params)
