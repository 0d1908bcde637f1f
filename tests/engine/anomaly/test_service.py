"""
Tests for the anomaly service.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from src.engine.anomaly.estimator import GaussianTailEstimator
from src.engine.anomaly.likelihood import AnomalyLikelihoodHelper
from src.engine.anomaly.models import Metric, MetricModelParams, MetricSample, MetricStatus
from src.engine.anomaly.service import DEFAULT_INPUT_SCHEMA, AnomalyService
from src.engine.errors import MetricNotActiveError, ModelNotFound
from src.engine.model_swapper.interface import ModelSwapperInterface
from src.engine.model_swapper.models import FieldMeta, FieldType, ModelInferenceResult, SensorFlag

START_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def add_pending(store, metric_id, count):
    return store.add_metric_data(
        metric_id,
        [(START_TIME + timedelta(minutes=5 * i), float(i % 7)) for i in range(count)],
    )


@pytest.fixture
def swapper(checkpoint_store):
    return ModelSwapperInterface(checkpoint_store)


@pytest.fixture
def service(memory_store, swapper, likelihood_config):
    helper = AnomalyLikelihoodHelper(
        memory_store, estimator=GaussianTailEstimator(), config=likelihood_config
    )
    return AnomalyService(memory_store, swapper, helper=helper, batch_size=1000)


class TestProcessModelInferenceResults:
    """Tests for process_model_inference_results."""

    def test_inactive_metric_skipped(self, service, memory_store):
        """Test results for a non-active metric are dropped."""
        memory_store.add_metric(Metric(uid="m1", status=MetricStatus.CREATE_PENDING))
        add_pending(memory_store, "m1", 3)

        processed = service.process_model_inference_results(
            "m1", [ModelInferenceResult(row_id=0, raw_anomaly_score=0.1)]
        )

        assert processed == []
        assert service.stats["inactive_skipped"] == 1
        assert memory_store.get_processed_metric_data_count("m1") == 0

    def test_raw_scores_saved(self, service, memory_store, active_metric):
        """Test raw scores are persisted while too few samples exist for likelihoods."""
        add_pending(memory_store, active_metric.uid, 3)
        results = [ModelInferenceResult(row_id=i, raw_anomaly_score=0.1 * i) for i in range(3)]

        processed = service.process_model_inference_results(active_metric.uid, results)

        assert [row.row_id for row in processed] == [0, 1, 2]
        assert all(row.anomaly_score is None for row in processed)
        assert memory_store.get_processed_metric_data_count(active_metric.uid) == 3
        assert service.stats["results_received"] == 3
        assert service.stats["rows_scored"] == 0

    def test_failed_results_counted(self, service, memory_store, active_metric):
        """Test failed inference results are not applied."""
        add_pending(memory_store, active_metric.uid, 2)
        results = [
            ModelInferenceResult(row_id=0, raw_anomaly_score=0.1),
            ModelInferenceResult(row_id=1, raw_anomaly_score=None, status=1),
        ]

        processed = service.process_model_inference_results(active_metric.uid, results)

        assert [row.row_id for row in processed] == [0]
        assert service.stats["failed_results"] == 1

    def test_redelivered_results_skipped(self, service, memory_store, active_metric):
        """Test rows that already carry a raw score are not processed again."""
        add_pending(memory_store, active_metric.uid, 2)
        results = [ModelInferenceResult(row_id=i, raw_anomaly_score=0.2) for i in range(2)]
        service.process_model_inference_results(active_metric.uid, results)

        processed = service.process_model_inference_results(active_metric.uid, results)

        assert processed == []
        assert service.stats["duplicates_skipped"] == 2

    def test_metric_deactivated_during_scoring(self, memory_store, swapper, active_metric):
        """Test a helper refusing the metric leaves the rows unsaved."""
        helper = MagicMock()
        helper.update_model_anomaly_scores.side_effect = MetricNotActiveError("inactive")
        service = AnomalyService(memory_store, swapper, helper=helper)
        add_pending(memory_store, active_metric.uid, 1)

        processed = service.process_model_inference_results(
            active_metric.uid, [ModelInferenceResult(row_id=0, raw_anomaly_score=0.1)]
        )

        assert processed == []
        assert service.stats["inactive_skipped"] == 1
        assert memory_store.get_processed_metric_data_count(active_metric.uid) == 0

    def test_display_value_set(self, memory_store, swapper, active_metric):
        """Test scored rows get a severity bucket."""

        def score(metric, rows):
            for row in rows:
                row.anomaly_score = 0.85
            return None

        helper = MagicMock()
        helper.update_model_anomaly_scores.side_effect = score
        service = AnomalyService(memory_store, swapper, helper=helper)
        add_pending(memory_store, active_metric.uid, 1)

        processed = service.process_model_inference_results(
            active_metric.uid, [ModelInferenceResult(row_id=0, raw_anomaly_score=0.9)]
        )

        assert processed[0].display_value == 3
        assert memory_store.get_metric_data(active_metric.uid, [0])[0].display_value == 3
        assert service.stats["rows_scored"] == 1


class TestEnsureModelDefined:
    """Tests for ensure_model_defined."""

    def test_defines_default_schema(self, service, checkpoint_store, active_metric):
        """Test metrics without an input schema get the default one."""
        definition = service.ensure_model_defined(active_metric)

        assert definition.input_schema == DEFAULT_INPUT_SCHEMA
        assert checkpoint_store.load_definition(active_metric.uid) == definition

    def test_uses_metric_schema(self, service, active_metric):
        """Test the metric's own input schema is used."""
        active_metric.model_params = MetricModelParams(
            model_config={"model": "running_zscore", "zScoreScale": 3.0},
            input_schema=[
                {"name": "ts", "type": "datetime", "special": "timestamp"},
                {"name": "v", "type": "float"},
            ],
        )

        definition = service.ensure_model_defined(active_metric)

        assert definition.input_schema[0] == FieldMeta("ts", FieldType.DATETIME, SensorFlag.TIMESTAMP)
        assert definition.model_params["zScoreScale"] == 3.0

    def test_existing_definition_kept(self, service, checkpoint_store, active_metric, model_definition):
        """Test a stored definition is not replaced."""
        checkpoint_store.define(active_metric.uid, model_definition)

        assert service.ensure_model_defined(active_metric) is model_definition


class TestRunPending:
    """Tests for run_pending and run_all."""

    def test_run_pending_scores_rows(self, service, memory_store, checkpoint_store, active_metric):
        """Test pending rows are run through the model and scored."""
        add_pending(memory_store, active_metric.uid, 300)

        count = service.run_pending(active_metric)

        assert count == 300
        assert memory_store.get_unprocessed_metric_data(active_metric.uid) == []
        rows = memory_store.get_metric_data(active_metric.uid, range(300))
        assert all(row.anomaly_score is None for row in rows[:200])
        assert all(0.0 <= row.anomaly_score <= 1.0 for row in rows[200:])
        assert all(row.display_value in (0, 1, 2, 3) for row in rows[200:])

        metric = memory_store.get_metric(active_metric.uid)
        assert metric.model_params.anomaly_likelihood_params.last_row_id_for_stats >= 199
        checkpoint_store.load(active_metric.uid)

    def test_run_pending_without_rows(self, service, checkpoint_store, active_metric):
        """Test nothing happens without pending rows."""
        assert service.run_pending(active_metric) == 0
        assert checkpoint_store.load_definition(active_metric.uid) is None

    def test_run_pending_respects_batch_size(self, memory_store, swapper, active_metric):
        """Test at most batch_size rows are processed per pass."""
        service = AnomalyService(memory_store, swapper, batch_size=10)
        add_pending(memory_store, active_metric.uid, 25)

        assert service.run_pending(active_metric) == 10
        assert len(memory_store.get_unprocessed_metric_data(active_metric.uid)) == 15

    def test_run_all(self, service, memory_store):
        """Test every active metric is processed."""
        for uid in ("a", "b"):
            memory_store.add_metric(Metric(uid=uid, status=MetricStatus.ACTIVE))
            add_pending(memory_store, uid, 5)
        memory_store.add_metric(Metric(uid="c", status=MetricStatus.UNMONITORED))
        add_pending(memory_store, "c", 5)

        stats = service.run_all()

        assert stats == {"metrics": 2, "rows": 10, "failed": 0}
        assert len(memory_store.get_unprocessed_metric_data("c")) == 5

    def test_run_all_counts_missing_models(self, memory_store, active_metric):
        """Test a missing model fails only its own metric."""
        swapper = MagicMock()
        swapper.checkpoint_store.load_definition.return_value = None
        swapper.submit_requests.side_effect = ModelNotFound("gone")
        service = AnomalyService(memory_store, swapper)
        add_pending(memory_store, active_metric.uid, 3)

        stats = service.run_all()

        assert stats == {"metrics": 1, "rows": 0, "failed": 1}


class TestToInputRow:
    """Tests for input row conversion."""

    def test_default_schema(self):
        """Test timestamp and value are encoded as strings in schema order."""
        row = MetricSample(row_id=4, timestamp=START_TIME, value=2.5)

        input_row = AnomalyService._to_input_row(row, DEFAULT_INPUT_SCHEMA)

        assert input_row.row_id == 4
        assert input_row.data == ["2024-01-01T00:00:00+00:00", "2.5"]
