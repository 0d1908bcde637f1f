"""
Anomaly likelihood scoring for batches of model inference results.

Converts raw anomaly scores into anomaly likelihood scores and keeps the
likelihood statistics fresh:

- Bootstrap: the first statistics are built once a metric has accumulated
  `min_sample_size` raw scores (store history plus the current batch)
- Adaptive refresh: statistics are recomputed every refresh interval; the
  interval grows with the batch size so catch-up backlogs are processed faster
- Forced refresh: a severe anomaly ends the current run early so that the
  following rows are scored against statistics that include it

Usage:
    helper = AnomalyLikelihoodHelper(store)
    anomaly_params = helper.update_model_anomaly_scores(metric, rows)

Processing must be idempotent: inference result batches are delivered at
least once, so the same rows may be presented again. All cursors are derived
from row ids in the store, never from call-local counters.
"""

from typing import NamedTuple, Optional, Sequence

import structlog

from ..errors import MetricNotActiveError
from .database import MetricDataStore
from .estimator import GaussianTailEstimator, LikelihoodEstimator, Sample
from .models import AnomalyParams, LikelihoodConfig, Metric, MetricSample, MetricStatus

logger = structlog.get_logger(__name__)


class InitResult(NamedTuple):
    anomaly_params: Optional[AnomalyParams]
    sample_cache: Optional[list[MetricSample]]
    start_row_index: int


class RefreshResult(NamedTuple):
    anomaly_params: Optional[AnomalyParams]
    sample_cache: list[MetricSample]


class AnomalyLikelihoodHelper:
    """Runs anomaly likelihood calculations for one metric's inference results"""

    def __init__(
        self,
        store: MetricDataStore,
        estimator: LikelihoodEstimator | None = None,
        config: LikelihoodConfig | None = None,
    ):
        self.config = config or LikelihoodConfig()
        self.store = store
        self.estimator = estimator or GaussianTailEstimator(self.config.averaging_window)

        logger.debug(
            "Likelihood helper initialized",
            estimator=self.estimator.name,
            min_sample_size=self.config.min_sample_size,
            max_sample_size=self.config.max_sample_size,
            min_refresh_interval=self.config.min_refresh_interval,
        )

    def generate_anomaly_params(
        self,
        metric_id: str,
        sample_cache: Sequence[MetricSample],
        default_params: Optional[AnomalyParams],
    ) -> Optional[AnomalyParams]:
        """Generate likelihood params from the most recent samples of the cache

        Args:
            metric_id: Metric identifier
            sample_cache: Samples with raw anomaly scores in processed order
            default_params: Returned as-is if the cache holds too few samples

        Returns:
            New AnomalyParams, or default_params when there is not enough data
        """
        if len(sample_cache) < self.config.min_sample_size:
            logger.warning(
                "Not enough samples in cache to update anomaly params",
                metric_id=metric_id,
                have=len(sample_cache),
                min=self.config.min_sample_size,
                first_row_id=sample_cache[0].row_id if sample_cache else None,
                last_row_id=sample_cache[-1].row_id if sample_cache else None,
            )
            return default_params

        num_samples = min(len(sample_cache), self.config.max_sample_size)
        window = sample_cache[-num_samples:]

        # The first day of records is ignored while the model is still learning.
        # This keeps ignoring the window's first day even once it starts sliding.
        fitted = self.estimator.fit(
            [self._to_estimator_sample(row) for row in window],
            skip_records=self.config.skip_records,
        )

        return AnomalyParams(last_row_id_for_stats=window[-1].row_id, params=fitted)

    def get_statistics_refresh_interval(self, batch_size: int) -> int:
        """Number of rows to process between statistics refreshes

        Large batches are presumably catch-up data, so they are refreshed less
        often; min_refresh_interval is the baseline.
        """
        return max(self.config.min_refresh_interval, int(round(batch_size * 0.1)))

    def init_anomaly_likelihood_model(
        self, metric: Metric, rows: Sequence[MetricSample]
    ) -> InitResult:
        """Create the likelihood model for a metric that has no params yet

        Args:
            metric: Metric without anomaly likelihood params
            rows: Inference results batch, ascending by row id; not altered

        Returns:
            InitResult; if there are too few samples the params stay at the
            metric's value, the cache is None and start_row_index points past
            the last row
        """
        self._require_active(metric)

        anomaly_params = metric.model_params.anomaly_likelihood_params
        historical_count = self.store.get_processed_metric_data_count(metric.uid)

        if historical_count + len(rows) < self.config.min_sample_size:
            logger.debug(
                "Not enough raw scores to start anomaly likelihood processing",
                metric_id=metric.uid,
                processed=historical_count,
                batch_size=len(rows),
            )
            return InitResult(anomaly_params, None, len(rows))

        num_to_consume = max(0, self.config.min_sample_size - historical_count)
        consumed = list(rows[:num_to_consume])

        anomaly_params, sample_cache = self.refresh_anomaly_params(
            metric.uid, None, consumed, anomaly_params
        )

        logger.debug(
            "Generated initial anomaly params",
            metric_id=metric.uid,
            num_samples=len(sample_cache),
            first_row_id=sample_cache[0].row_id if sample_cache else None,
            last_row_id=sample_cache[-1].row_id if sample_cache else None,
        )

        return InitResult(anomaly_params, sample_cache, num_to_consume)

    def refresh_anomaly_params(
        self,
        metric_id: str,
        sample_cache: Optional[Sequence[MetricSample]],
        consumed_samples: Sequence[MetricSample],
        default_params: Optional[AnomalyParams],
    ) -> RefreshResult:
        """Fold consumed samples into the cache and regenerate params

        A cache of None is seeded from the store tail: up to the balance of
        max_sample_size in excess of consumed_samples. The returned cache is a
        new list holding at most max_sample_size of the latest samples.
        """
        if sample_cache is None:
            limit = max(0, self.config.max_sample_size - len(consumed_samples))
            cache = self.tail_metric_data_with_raw_anomaly_scores(metric_id, limit)
        else:
            cache = list(sample_cache)

        cache.extend(consumed_samples)
        cache = cache[-self.config.max_sample_size :]

        anomaly_params = self.generate_anomaly_params(metric_id, cache, default_params)
        return RefreshResult(anomaly_params, cache)

    def tail_metric_data_with_raw_anomaly_scores(
        self, metric_id: str, limit: int
    ) -> list[MetricSample]:
        """Up to `limit` latest rows with a raw anomaly score, ascending by timestamp"""
        if limit == 0:
            return []
        rows = self.store.get_metric_data_with_raw_anomaly_scores_tail(metric_id, limit)
        return sorted(rows, key=lambda row: row.timestamp)

    def update_model_anomaly_scores(
        self, metric: Metric, rows: Sequence[MetricSample]
    ) -> Optional[AnomalyParams]:
        """Score rows and return the metric's new likelihood params

        Args:
            metric: The model's metric
            rows: Inference results, ascending by row id, with raw anomaly
                scores set; their anomaly_score is updated in place

        Returns:
            Likelihood params to persist with the metric (None while there are
            not enough samples to build them)

        Raises:
            MetricNotActiveError: if the metric is not ACTIVE
        """
        self._require_active(metric)

        refresh_interval = self.get_statistics_refresh_interval(len(rows))

        sample_cache: Optional[list[MetricSample]] = None
        start_row_index = 0

        anomaly_params = metric.model_params.anomaly_likelihood_params
        if anomaly_params is None:
            anomaly_params, sample_cache, start_row_index = self.init_anomaly_likelihood_model(
                metric, rows
            )

        # Skipped while there are still too few samples to create params
        while start_row_index < len(rows):
            next_row_id = rows[start_row_index].row_id

            if sample_cache is None or len(sample_cache) >= self.config.min_sample_size:
                end_row_id = anomaly_params.last_row_id_for_stats + refresh_interval
                if end_row_id < next_row_id:
                    # Smaller refresh interval than last time, a gap in raw
                    # scores before this run, or changed statistics config
                    logger.warning(
                        "Anomaly run cutoff precedes samples",
                        metric_id=metric.uid,
                        first_row_id=next_row_id,
                        end_row_id=end_row_id,
                    )
                    if sample_cache is not None:
                        # Already refreshed once in this call; must advance
                        end_row_id = next_row_id
                        logger.warning(
                            "Advanced anomaly run cutoff to make progress",
                            metric_id=metric.uid,
                            first_row_id=next_row_id,
                            end_row_id=end_row_id,
                        )
            else:
                # Previous refresh was short of samples; extend the run so the
                # next one has enough
                end_row_id = next_row_id + (self.config.min_sample_size - len(sample_cache) - 1)

            if end_row_id < next_row_id:
                # Bypass scoring and refresh the params immediately
                limit_index = start_row_index
                logger.warning(
                    "Forcing refresh of anomaly params before scoring",
                    metric_id=metric.uid,
                    first_row_id=next_row_id,
                    end_row_id=end_row_id,
                )
            else:
                limit_index = start_row_index + min(
                    len(rows) - start_row_index, end_row_id + 1 - next_row_id
                )

            logger.debug(
                "Starting anomaly run",
                metric_id=metric.uid,
                start_row_index=start_row_index,
                limit_index=limit_index,
                first_row_id=next_row_id,
                end_row_id=end_row_id,
                last_row_id_for_stats=(
                    anomaly_params.last_row_id_for_stats if anomaly_params else None
                ),
                refresh_interval=refresh_interval,
                batch_size=len(rows),
            )

            consumed = self._score_run(
                metric, rows[start_row_index:limit_index], anomaly_params, sample_cache
            )

            if start_row_index + len(consumed) < len(rows) or (
                consumed and consumed[-1].row_id >= end_row_id
            ):
                # Stopped short of the batch end (including a bypass run), or
                # reached the cutoff on the last row
                anomaly_params, sample_cache = self.refresh_anomaly_params(
                    metric.uid, sample_cache, consumed, anomaly_params
                )

            start_row_index += len(consumed)

        return anomaly_params

    def _score_run(
        self,
        metric: Metric,
        run: Sequence[MetricSample],
        anomaly_params: Optional[AnomalyParams],
        sample_cache: Optional[list[MetricSample]],
    ) -> list[MetricSample]:
        """Score rows of one run; returns the rows consumed"""
        consumed: list[MetricSample] = []

        for row in run:
            consumed.append(row)
            if anomaly_params is None:
                continue

            likelihood = self.estimator.score(self._to_estimator_sample(row), anomaly_params.params)
            row.anomaly_score = 1.0 - likelihood

            if (
                row.anomaly_score > self.config.forced_refresh_score_threshold
                and row.row_id > anomaly_params.last_row_id_for_stats + 1
                and (
                    sample_cache is None
                    or len(sample_cache) + len(consumed) >= self.config.min_sample_size
                )
            ):
                logger.info(
                    "Forcing refresh of anomaly params due to exceeded anomaly score threshold",
                    metric_id=metric.uid,
                    row_id=row.row_id,
                    anomaly_score=round(row.anomaly_score, 5),
                )
                break

        return consumed

    @staticmethod
    def _require_active(metric: Metric) -> None:
        if metric.status != MetricStatus.ACTIVE:
            raise MetricNotActiveError(
                f"Metric {metric.uid} is not active; status={metric.status.value}"
            )

    @staticmethod
    def _to_estimator_sample(row: MetricSample) -> Sample:
        raw_score = row.raw_anomaly_score if row.raw_anomaly_score is not None else 0.0
        return Sample(timestamp=row.timestamp, value=row.value, raw_score=raw_score)
