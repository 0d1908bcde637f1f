"""
Anomaly service: turns model inference results into persisted anomaly scores.

Flow per metric:
1. Unprocessed rows are submitted to the model swapper (raw anomaly scores)
2. Raw scores are set on the rows and run through the likelihood helper
3. Row scores and the refreshed likelihood params are saved together
"""

import time
from typing import Sequence

import structlog

from ..errors import MetricNotActiveError, ModelNotFound
from ..model_swapper.interface import ModelSwapperInterface
from ..model_swapper.models import (
    FieldMeta,
    FieldType,
    ModelDefinition,
    ModelInferenceResult,
    ModelInputRow,
    SensorFlag,
)
from .database import MetricDataStore
from .likelihood import AnomalyLikelihoodHelper
from .models import Metric, MetricSample, MetricStatus

logger = structlog.get_logger(__name__)

DEFAULT_INPUT_SCHEMA = (
    FieldMeta("c0", FieldType.DATETIME, SensorFlag.TIMESTAMP),
    FieldMeta("c1", FieldType.FLOAT),
)


class AnomalyService:
    """Scores metric data rows with anomaly likelihoods"""

    def __init__(
        self,
        store: MetricDataStore,
        model_swapper: ModelSwapperInterface,
        helper: AnomalyLikelihoodHelper | None = None,
        batch_size: int = 1000,
    ):
        self.store = store
        self.model_swapper = model_swapper
        self.helper = helper or AnomalyLikelihoodHelper(store)
        self.batch_size = batch_size

        self.stats = {
            "results_received": 0,
            "rows_scored": 0,
            "duplicates_skipped": 0,
            "inactive_skipped": 0,
            "failed_results": 0,
        }

    def process_model_inference_results(
        self, metric_id: str, results: Sequence[ModelInferenceResult]
    ) -> list[MetricSample]:
        """Apply a batch of inference results to the metric's rows

        Results for rows that already carry a raw anomaly score are redeliveries
        and are skipped.

        Returns:
            The rows that were updated and saved
        """
        self.stats["results_received"] += len(results)

        metric = self.store.get_metric(metric_id)
        if metric.status != MetricStatus.ACTIVE:
            logger.warning(
                "Skipping inference results for inactive metric",
                metric_id=metric_id,
                status=metric.status.value,
                results=len(results),
            )
            self.stats["inactive_skipped"] += len(results)
            return []

        raw_scores = {}
        for result in results:
            if result.status != 0 or result.raw_anomaly_score is None:
                logger.error("Inference failed for row", metric_id=metric_id, row_id=result.row_id)
                self.stats["failed_results"] += 1
                continue
            raw_scores[result.row_id] = result.raw_anomaly_score

        rows = self.store.get_metric_data(metric_id, sorted(raw_scores))
        if len(rows) < len(raw_scores):
            logger.warning(
                "Inference results reference missing rows",
                metric_id=metric_id,
                expected=len(raw_scores),
                found=len(rows),
            )

        fresh = [row for row in rows if row.raw_anomaly_score is None]
        if len(fresh) < len(rows):
            logger.warning(
                "Skipping already processed rows",
                metric_id=metric_id,
                duplicates=len(rows) - len(fresh),
            )
            self.stats["duplicates_skipped"] += len(rows) - len(fresh)
        if not fresh:
            return []

        for row in fresh:
            row.raw_anomaly_score = raw_scores[row.row_id]

        try:
            anomaly_params = self.helper.update_model_anomaly_scores(metric, fresh)
        except MetricNotActiveError as e:
            logger.warning("Metric became inactive while scoring", metric_id=metric_id, error=str(e))
            self.stats["inactive_skipped"] += len(fresh)
            return []

        for row in fresh:
            if row.anomaly_score is not None:
                row.display_value = MetricSample.calculate_display_value(row.anomaly_score)

        self.store.save_scoring_results(metric_id, fresh, anomaly_params)

        scored = sum(1 for row in fresh if row.anomaly_score is not None)
        self.stats["rows_scored"] += scored
        logger.debug(
            "Inference results processed",
            metric_id=metric_id,
            rows=len(fresh),
            scored=scored,
            last_row_id_for_stats=(
                anomaly_params.last_row_id_for_stats if anomaly_params else None
            ),
        )
        return fresh

    def ensure_model_defined(self, metric: Metric) -> ModelDefinition:
        """Define the metric's model from its params if no definition is stored"""
        store = self.model_swapper.checkpoint_store
        definition = store.load_definition(metric.uid)
        if definition is not None:
            return definition

        params = metric.model_params
        input_schema = (
            tuple(FieldMeta.from_dict(meta) for meta in params.input_schema)
            if params.input_schema
            else DEFAULT_INPUT_SCHEMA
        )
        definition = ModelDefinition(
            model_params=params.model_config,
            inference_args=params.inference_args,
            input_schema=input_schema,
        )
        self.model_swapper.define_model(metric.uid, definition)
        return definition

    def run_pending(self, metric: Metric) -> int:
        """Run the metric's unprocessed rows through its model and score them

        Returns:
            Number of rows processed

        Raises:
            ModelNotFound: if the model cannot be loaded or built
        """
        rows = self.store.get_unprocessed_metric_data(metric.uid, limit=self.batch_size)
        if not rows:
            return 0

        definition = self.ensure_model_defined(metric)
        input_rows = [self._to_input_row(row, definition.input_schema) for row in rows]

        results = self.model_swapper.submit_requests(metric.uid, input_rows)
        processed = self.process_model_inference_results(metric.uid, results)
        return len(processed)

    def run_all(self) -> dict:
        """Process pending rows of every active metric

        Returns:
            Dictionary with run statistics
        """
        stats = {"metrics": 0, "rows": 0, "failed": 0}
        start_time = time.time()

        for metric in self.store.get_active_metrics():
            stats["metrics"] += 1
            try:
                stats["rows"] += self.run_pending(metric)
            except ModelNotFound as e:
                logger.error("Model not found for metric", metric_id=metric.uid, error=str(e))
                stats["failed"] += 1
            except Exception as e:
                logger.error(
                    "Failed to process metric", metric_id=metric.uid, error=str(e), exc_info=True
                )
                stats["failed"] += 1

        logger.info(
            "Scoring pass completed",
            metrics=stats["metrics"],
            rows=stats["rows"],
            failed=stats["failed"],
            elapsed_sec=round(time.time() - start_time, 1),
        )
        return stats

    @staticmethod
    def _to_input_row(row: MetricSample, schema: Sequence[FieldMeta]) -> ModelInputRow:
        data = []
        for meta in schema:
            if meta.special == SensorFlag.TIMESTAMP:
                data.append(row.timestamp.isoformat())
            else:
                data.append(repr(float(row.value)))
        return ModelInputRow(row_id=row.row_id, data=data)
