"""
Encoders converting flat input rows into records consumable by inference models.
"""

from datetime import datetime
from typing import Any, Optional, Sequence

from .models import FieldMeta, FieldType, SensorFlag


def parse_field_value(value: str, field_type: FieldType) -> Any:
    """Convert a raw string value according to its field type"""
    if value is None or value == "":
        return None
    if field_type == FieldType.DATETIME:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if field_type == FieldType.FLOAT:
        return float(value)
    if field_type == FieldType.INT:
        return int(value)
    return value


class ModelRecordEncoder:
    """Encodes metric data input rows as dicts keyed by field name

    The encoded record also carries the bookkeeping fields read by the
    inference step:
    '_timestamp': value of the timestamp field (None without one)
    '_timestampRecordIdx': record index of that timestamp when aggregating
    '_category', '_reset', '_sequenceId': not used by scalar metric models
    """

    def __init__(self, fields: Sequence[FieldMeta], aggregation_period: Optional[float] = None):
        if not fields:
            raise ValueError("fields arg must be non-empty")

        self.fields = tuple(fields)
        self.aggregation_period = aggregation_period
        self.field_names = [meta.name for meta in self.fields]

        timestamp_fields = [
            i for i, meta in enumerate(self.fields) if meta.special == SensorFlag.TIMESTAMP
        ]
        if len(timestamp_fields) > 1:
            raise ValueError(f"At most one timestamp field allowed, got {len(timestamp_fields)}")
        self.timestamp_field_index = timestamp_fields[0] if timestamp_fields else None

    def encode(self, input_row: Sequence[str]) -> dict[str, Any]:
        if len(input_row) != len(self.fields):
            raise ValueError(
                f"Input row has {len(input_row)} values, schema has {len(self.fields)} fields"
            )

        values = [parse_field_value(v, meta.field_type) for v, meta in zip(input_row, self.fields)]
        result: dict[str, Any] = dict(zip(self.field_names, values))

        if self.timestamp_field_index is not None:
            timestamp = values[self.timestamp_field_index]
            result["_timestamp"] = timestamp
            result["_timestampRecordIdx"] = self._compute_timestamp_record_idx(timestamp)
        else:
            result["_timestamp"] = None

        result["_category"] = None
        result["_reset"] = 0
        result["_sequenceId"] = None
        return result

    def _compute_timestamp_record_idx(self, timestamp: Optional[datetime]) -> Optional[int]:
        if self.aggregation_period is None or timestamp is None:
            return None
        return int(timestamp.timestamp() // self.aggregation_period)


class InputRowEncoder:
    """One-shot encoder: append exactly one row, then take its record"""

    def __init__(self, input_schema: Sequence[FieldMeta], aggregation_period: Optional[float] = None):
        self.input_schema = tuple(input_schema)
        self.aggregation_period = aggregation_period
        self._row: Optional[list[str]] = None
        self._record_encoder: Optional[ModelRecordEncoder] = None

    def get_field_names(self) -> list[str]:
        return [meta.name for meta in self.input_schema]

    def append_record(self, record: Sequence[str]) -> None:
        assert self._row is None, "previous row was not consumed"
        self._row = list(record)

    def get_next_record(self) -> list[str]:
        assert self._row is not None, "no pending row; call append_record first"
        row, self._row = self._row, None
        return row

    def get_next_record_dict(self) -> dict[str, Any]:
        values = self.get_next_record()
        if not values:
            return {}
        if self._record_encoder is None:
            self._record_encoder = ModelRecordEncoder(
                self.input_schema, aggregation_period=self.aggregation_period
            )
        return self._record_encoder.encode(values)
