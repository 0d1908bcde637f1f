"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.engine.anomaly.database import MemoryMetricDataStore
from src.engine.anomaly.models import LikelihoodConfig, Metric, MetricSample, MetricStatus
from src.engine.config import EngineConfig
from src.engine.model_swapper.checkpoint import MemoryCheckpointStore
from src.engine.model_swapper.models import FieldMeta, FieldType, ModelDefinition, SensorFlag

START_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_rows(count, start_row_id=0, raw_score=None, value=None):
    """Build consecutive 5-minute metric rows.

    Values alternate so the metric is never flat; raw_score, when given, is
    set on every row.
    """
    rows = []
    for offset in range(count):
        row_id = start_row_id + offset
        rows.append(
            MetricSample(
                row_id=row_id,
                timestamp=START_TIME + timedelta(minutes=5 * row_id),
                value=float(row_id % 7) if value is None else value,
                raw_anomaly_score=raw_score,
            )
        )
    return rows


# Anomaly likelihood fixtures
@pytest.fixture
def likelihood_config():
    """Small statistics window for fast tests."""
    return LikelihoodConfig(
        min_sample_size=200,
        max_sample_size=1000,
        min_refresh_interval=10,
        skip_records=0,
    )


@pytest.fixture
def row_factory():
    """Callable building consecutive metric rows (see make_rows)."""
    return make_rows


@pytest.fixture
def memory_store():
    """Empty in-memory metric data store."""
    return MemoryMetricDataStore()


@pytest.fixture
def active_metric(memory_store):
    """Active metric registered in the memory store, without likelihood params."""
    return memory_store.add_metric(Metric(uid="metric-1", status=MetricStatus.ACTIVE, name="cpu"))


# Model swapper fixtures
@pytest.fixture
def checkpoint_store():
    """Empty in-memory checkpoint store."""
    return MemoryCheckpointStore()


@pytest.fixture
def model_definition():
    """Definition for a running z-score model over (timestamp, value) rows."""
    return ModelDefinition(
        model_params={"model": "running_zscore"},
        inference_args={"predictedField": "c1"},
        input_schema=(
            FieldMeta("c0", FieldType.DATETIME, SensorFlag.TIMESTAMP),
            FieldMeta("c1", FieldType.FLOAT),
        ),
    )


# Engine fixtures
@pytest.fixture
def engine_config():
    """Engine configuration pointing at test services."""
    return EngineConfig(
        postgres_host="localhost",
        postgres_port=5432,
        postgres_database="test_db",
        postgres_user="test_user",
        postgres_password="test_password",
        redis_host="localhost",
        redis_port=6379,
    )
