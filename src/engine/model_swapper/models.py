"""
Data models for the model swapper: model definitions, input rows and results.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FieldType(str, Enum):
    DATETIME = "datetime"
    FLOAT = "float"
    INT = "int"
    STRING = "string"


class SensorFlag(str, Enum):
    """Special meaning of an input field"""

    NONE = ""
    TIMESTAMP = "timestamp"
    RESET = "reset"
    SEQUENCE = "sequence"
    CATEGORY = "category"


@dataclass(frozen=True)
class FieldMeta:
    """Static metadata for one input field"""

    name: str
    field_type: FieldType
    special: SensorFlag = SensorFlag.NONE

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.field_type.value, "special": self.special.value}

    @classmethod
    def from_dict(cls, data: dict) -> "FieldMeta":
        return cls(
            name=data["name"],
            field_type=FieldType(data["type"]),
            special=SensorFlag(data.get("special") or ""),
        )


@dataclass(frozen=True)
class ModelDefinition:
    """Everything needed to build a fresh model instance; immutable once defined"""

    model_params: dict[str, Any]
    inference_args: dict[str, Any]
    input_schema: tuple[FieldMeta, ...]
    aggregation_period: Optional[float] = None  # seconds

    def to_dict(self) -> dict:
        return {
            "modelParams": self.model_params,
            "inferenceArgs": self.inference_args,
            "inputSchema": [meta.to_dict() for meta in self.input_schema],
            "aggregationPeriod": self.aggregation_period,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelDefinition":
        return cls(
            model_params=data.get("modelParams") or {},
            inference_args=data.get("inferenceArgs") or {},
            input_schema=tuple(FieldMeta.from_dict(meta) for meta in data.get("inputSchema", [])),
            aggregation_period=data.get("aggregationPeriod"),
        )


@dataclass
class ModelInputRow:
    """One flat input row: field values as strings, in schema order"""

    row_id: int
    data: list[str]


@dataclass
class ModelInferenceResult:
    """Outcome of one command or input row"""

    row_id: Optional[int] = None
    raw_anomaly_score: Optional[float] = None
    status: int = 0
    command_id: Optional[str] = None


@dataclass
class ModelCommand:
    """A named command addressed to one model"""

    method: str
    model_id: str
    args: Optional[Any] = None
    command_id: str = field(default_factory=lambda: str(uuid.uuid4()))
