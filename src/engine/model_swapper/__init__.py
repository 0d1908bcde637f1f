"""
Model swapper: per-model command processing with checkpoint-backed lazy loading.

Commands:
- defineModel: store the model definition
- input rows: load (or build) the model, encode the row, run inference
- deleteModel: drop the checkpoint and definition
"""

from .checkpoint import CheckpointStore, MemoryCheckpointStore, RedisCheckpointStore
from .encoder import InputRowEncoder, ModelRecordEncoder
from .inference import InferenceModel, RunningZScoreModel, create_model
from .interface import ModelSwapperInterface
from .models import (
    FieldMeta,
    FieldType,
    ModelCommand,
    ModelDefinition,
    ModelInferenceResult,
    ModelInputRow,
    SensorFlag,
)
from .runner import ModelRunner

__all__ = [
    "CheckpointStore",
    "MemoryCheckpointStore",
    "RedisCheckpointStore",
    "InputRowEncoder",
    "ModelRecordEncoder",
    "InferenceModel",
    "RunningZScoreModel",
    "create_model",
    "ModelSwapperInterface",
    "FieldMeta",
    "FieldType",
    "ModelCommand",
    "ModelDefinition",
    "ModelInferenceResult",
    "ModelInputRow",
    "SensorFlag",
    "ModelRunner",
]
