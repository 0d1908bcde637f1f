"""
Metric and metric data storage for anomaly likelihood scoring.

Handles:
- Looking up metrics and their serialized model params
- Counting and tailing rows that already carry a raw anomaly score
- Persisting anomaly scores and refreshed likelihood params
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Sequence

import psycopg2.extras
import structlog

from src.core.database import PostgresConnection

from ..errors import MetricNotFound
from .models import AnomalyParams, Metric, MetricModelParams, MetricSample, MetricStatus

logger = structlog.get_logger(__name__)


class MetricDataStore(ABC):
    """Authoritative store of metrics and their sample history"""

    @abstractmethod
    def get_metric(self, metric_id: str) -> Metric:
        """Load a metric; raises MetricNotFound if it does not exist"""
        pass

    @abstractmethod
    def get_active_metrics(self) -> list[Metric]:
        pass

    @abstractmethod
    def get_processed_metric_data_count(self, metric_id: str) -> int:
        """Number of rows with a non-null raw anomaly score"""
        pass

    @abstractmethod
    def get_metric_data_with_raw_anomaly_scores_tail(
        self, metric_id: str, limit: int
    ) -> list[MetricSample]:
        """Most recent `limit` rows with a raw anomaly score, ascending by timestamp"""
        pass

    @abstractmethod
    def get_unprocessed_metric_data(
        self, metric_id: str, limit: int | None = None
    ) -> list[MetricSample]:
        """Rows still waiting for a raw anomaly score, ascending by row id"""
        pass

    @abstractmethod
    def get_metric_data(self, metric_id: str, row_ids: Sequence[int]) -> list[MetricSample]:
        """Rows with the given row ids, ascending by row id"""
        pass

    @abstractmethod
    def add_metric_data(
        self, metric_id: str, data: Iterable[tuple[datetime, float]]
    ) -> list[MetricSample]:
        """Append raw (timestamp, value) pairs, assigning consecutive row ids"""
        pass

    @abstractmethod
    def update_metric_data_scores(self, metric_id: str, rows: Sequence[MetricSample]) -> int:
        pass

    @abstractmethod
    def update_anomaly_params(self, metric_id: str, anomaly_params: AnomalyParams | None) -> None:
        pass

    def save_scoring_results(
        self,
        metric_id: str,
        rows: Sequence[MetricSample],
        anomaly_params: AnomalyParams | None,
    ) -> None:
        """Persist row scores and the refreshed likelihood params"""
        self.update_metric_data_scores(metric_id, rows)
        self.update_anomaly_params(metric_id, anomaly_params)


class MemoryMetricDataStore(MetricDataStore):
    """In-process store, used by tests and local runs"""

    def __init__(self):
        self._metrics: dict[str, Metric] = {}
        self._data: dict[str, list[MetricSample]] = {}

    def add_metric(self, metric: Metric) -> Metric:
        self._metrics[metric.uid] = copy.deepcopy(metric)
        self._data.setdefault(metric.uid, [])
        return metric

    def get_metric(self, metric_id: str) -> Metric:
        if metric_id not in self._metrics:
            raise MetricNotFound(f"Metric {metric_id} not found")
        return copy.deepcopy(self._metrics[metric_id])

    def get_active_metrics(self) -> list[Metric]:
        return [
            copy.deepcopy(m) for m in self._metrics.values() if m.status == MetricStatus.ACTIVE
        ]

    def get_processed_metric_data_count(self, metric_id: str) -> int:
        return sum(1 for row in self._rows(metric_id) if row.raw_anomaly_score is not None)

    def get_metric_data_with_raw_anomaly_scores_tail(
        self, metric_id: str, limit: int
    ) -> list[MetricSample]:
        if limit <= 0:
            return []
        scored = [row for row in self._rows(metric_id) if row.raw_anomaly_score is not None]
        scored.sort(key=lambda row: row.timestamp)
        return [copy.copy(row) for row in scored[-limit:]]

    def get_unprocessed_metric_data(
        self, metric_id: str, limit: int | None = None
    ) -> list[MetricSample]:
        pending = [copy.copy(row) for row in self._rows(metric_id) if row.raw_anomaly_score is None]
        return pending[:limit] if limit is not None else pending

    def get_metric_data(self, metric_id: str, row_ids: Sequence[int]) -> list[MetricSample]:
        wanted = set(row_ids)
        return [copy.copy(row) for row in self._rows(metric_id) if row.row_id in wanted]

    def add_metric_data(
        self, metric_id: str, data: Iterable[tuple[datetime, float]]
    ) -> list[MetricSample]:
        rows = self._rows(metric_id)
        next_row_id = rows[-1].row_id + 1 if rows else 0
        added = []
        for offset, (timestamp, value) in enumerate(data):
            row = MetricSample(row_id=next_row_id + offset, timestamp=timestamp, value=value)
            rows.append(row)
            added.append(copy.copy(row))
        return added

    def update_metric_data_scores(self, metric_id: str, rows: Sequence[MetricSample]) -> int:
        by_id = {row.row_id: row for row in self._rows(metric_id)}
        updated = 0
        for row in rows:
            stored = by_id.get(row.row_id)
            if stored is None:
                logger.warning("Row not found for score update", metric_id=metric_id, row_id=row.row_id)
                continue
            stored.raw_anomaly_score = row.raw_anomaly_score
            stored.anomaly_score = row.anomaly_score
            stored.display_value = row.display_value
            updated += 1
        return updated

    def update_anomaly_params(self, metric_id: str, anomaly_params: AnomalyParams | None) -> None:
        if metric_id not in self._metrics:
            raise MetricNotFound(f"Metric {metric_id} not found")
        self._metrics[metric_id].model_params.anomaly_likelihood_params = copy.deepcopy(
            anomaly_params
        )

    def _rows(self, metric_id: str) -> list[MetricSample]:
        if metric_id not in self._data:
            raise MetricNotFound(f"Metric {metric_id} not found")
        return self._data[metric_id]


class MetricDatabase(PostgresConnection, MetricDataStore):
    """PostgreSQL-backed metric data store"""

    def __init__(self, config):
        super().__init__(
            host=config.postgres_host,
            port=config.postgres_port,
            database=config.postgres_database,
            user=config.postgres_user,
            password=config.postgres_password,
        )
        self.config = config

    def get_metric(self, metric_id: str) -> Metric:
        row = self.fetch_one(
            "SELECT uid, name, status, model_params FROM metric WHERE uid = %s",
            (metric_id,),
        )
        if row is None:
            raise MetricNotFound(f"Metric {metric_id} not found")
        return self._to_metric(row)

    def get_active_metrics(self) -> list[Metric]:
        rows = self.fetch_all(
            "SELECT uid, name, status, model_params FROM metric WHERE status = %s ORDER BY uid",
            (MetricStatus.ACTIVE.value,),
        )
        logger.debug("Queried active metrics", count=len(rows))
        return [self._to_metric(row) for row in rows]

    def get_processed_metric_data_count(self, metric_id: str) -> int:
        row = self.fetch_one(
            """
            SELECT COUNT(*) AS processed
            FROM metric_data
            WHERE uid = %s AND raw_anomaly_score IS NOT NULL
            """,
            (metric_id,),
        )
        return int(row["processed"]) if row else 0

    def get_metric_data_with_raw_anomaly_scores_tail(
        self, metric_id: str, limit: int
    ) -> list[MetricSample]:
        if limit <= 0:
            return []

        query = """
            SELECT rowid, timestamp, metric_value, raw_anomaly_score,
                   anomaly_score, display_value
            FROM metric_data
            WHERE uid = %s AND raw_anomaly_score IS NOT NULL
            ORDER BY timestamp DESC
            LIMIT %s
        """
        try:
            rows = self.fetch_all(query, (metric_id, limit))
        except Exception as e:
            logger.error("Failed to query metric data tail", metric_id=metric_id, error=str(e))
            raise

        samples = [self._to_sample(row) for row in rows]
        samples.sort(key=lambda sample: sample.timestamp)
        logger.debug("Queried metric data tail", metric_id=metric_id, limit=limit, rows=len(samples))
        return samples

    def get_unprocessed_metric_data(
        self, metric_id: str, limit: int | None = None
    ) -> list[MetricSample]:
        query = """
            SELECT rowid, timestamp, metric_value, raw_anomaly_score,
                   anomaly_score, display_value
            FROM metric_data
            WHERE uid = %s AND raw_anomaly_score IS NULL
            ORDER BY rowid
        """
        params: tuple = (metric_id,)
        if limit is not None:
            query += " LIMIT %s"
            params = (metric_id, limit)
        return [self._to_sample(row) for row in self.fetch_all(query, params)]

    def get_metric_data(self, metric_id: str, row_ids: Sequence[int]) -> list[MetricSample]:
        if not row_ids:
            return []
        query = """
            SELECT rowid, timestamp, metric_value, raw_anomaly_score,
                   anomaly_score, display_value
            FROM metric_data
            WHERE uid = %s AND rowid = ANY(%s)
            ORDER BY rowid
        """
        return [self._to_sample(row) for row in self.fetch_all(query, (metric_id, list(row_ids)))]

    def add_metric_data(
        self, metric_id: str, data: Iterable[tuple[datetime, float]]
    ) -> list[MetricSample]:
        pairs = list(data)
        if not pairs:
            return []

        query = """
            INSERT INTO metric_data (uid, rowid, timestamp, metric_value)
            VALUES (%(uid)s, %(rowid)s, %(timestamp)s, %(metric_value)s)
        """
        with self.get_cursor() as cursor:
            cursor.execute(
                "SELECT COALESCE(MAX(rowid), -1) FROM metric_data WHERE uid = %s", (metric_id,)
            )
            next_row_id = cursor.fetchone()[0] + 1
            records = [
                {
                    "uid": metric_id,
                    "rowid": next_row_id + offset,
                    "timestamp": timestamp,
                    "metric_value": value,
                }
                for offset, (timestamp, value) in enumerate(pairs)
            ]
            psycopg2.extras.execute_batch(cursor, query, records, page_size=100)

        logger.debug("Metric data added", metric_id=metric_id, rows=len(records))
        return [
            MetricSample(row_id=r["rowid"], timestamp=r["timestamp"], value=r["metric_value"])
            for r in records
        ]

    def update_metric_data_scores(self, metric_id: str, rows: Sequence[MetricSample]) -> int:
        if not rows:
            return 0
        with self.get_cursor() as cursor:
            self._update_scores(cursor, metric_id, rows)
        return len(rows)

    def update_anomaly_params(self, metric_id: str, anomaly_params: AnomalyParams | None) -> None:
        with self.get_cursor() as cursor:
            self._update_params(cursor, metric_id, anomaly_params)

    def save_scoring_results(
        self,
        metric_id: str,
        rows: Sequence[MetricSample],
        anomaly_params: AnomalyParams | None,
    ) -> None:
        """Persist row scores and likelihood params in a single transaction"""
        with self.get_cursor() as cursor:
            if rows:
                self._update_scores(cursor, metric_id, rows)
            self._update_params(cursor, metric_id, anomaly_params)
        logger.debug("Scoring results saved", metric_id=metric_id, rows=len(rows))

    def ensure_tables_exist(self):
        """Create metric and metric_data tables if they don't exist"""
        query = """
            CREATE TABLE IF NOT EXISTS metric (
                uid VARCHAR(40) PRIMARY KEY,
                name VARCHAR(255),
                status VARCHAR(20) NOT NULL DEFAULT 'unmonitored',
                model_params JSONB
            );

            CREATE TABLE IF NOT EXISTS metric_data (
                uid VARCHAR(40) NOT NULL REFERENCES metric(uid) ON DELETE CASCADE,
                rowid INTEGER NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                metric_value DOUBLE PRECISION NOT NULL,
                raw_anomaly_score DOUBLE PRECISION,
                anomaly_score DOUBLE PRECISION,
                display_value INTEGER,
                PRIMARY KEY (uid, rowid)
            );

            CREATE INDEX IF NOT EXISTS idx_metric_data_timestamp
            ON metric_data(uid, timestamp);
        """

        try:
            with self.get_cursor() as cursor:
                cursor.execute(query)
                logger.info("Ensured metric tables exist")
        except Exception as e:
            logger.error("Failed to create metric tables", error=str(e))

    def _update_scores(self, cursor, metric_id: str, rows: Sequence[MetricSample]) -> None:
        query = """
            UPDATE metric_data
            SET raw_anomaly_score = %(raw_anomaly_score)s,
                anomaly_score = %(anomaly_score)s,
                display_value = %(display_value)s
            WHERE uid = %(uid)s AND rowid = %(rowid)s
        """
        records = [
            {
                "uid": metric_id,
                "rowid": row.row_id,
                "raw_anomaly_score": row.raw_anomaly_score,
                "anomaly_score": row.anomaly_score,
                "display_value": row.display_value,
            }
            for row in rows
        ]
        psycopg2.extras.execute_batch(cursor, query, records, page_size=100)

    def _update_params(self, cursor, metric_id: str, anomaly_params: AnomalyParams | None) -> None:
        cursor.execute("SELECT model_params FROM metric WHERE uid = %s FOR UPDATE", (metric_id,))
        row = cursor.fetchone()
        if row is None:
            raise MetricNotFound(f"Metric {metric_id} not found")

        model_params = self._load_model_params(row[0])
        model_params.anomaly_likelihood_params = anomaly_params
        cursor.execute(
            "UPDATE metric SET model_params = %s WHERE uid = %s",
            (model_params.to_json(), metric_id),
        )

    @staticmethod
    def _load_model_params(raw) -> MetricModelParams:
        # JSONB columns arrive already decoded
        if isinstance(raw, dict):
            return MetricModelParams.from_dict(raw)
        return MetricModelParams.from_json(raw)

    def _to_metric(self, row: dict) -> Metric:
        return Metric(
            uid=row["uid"],
            name=row.get("name") or "",
            status=MetricStatus(row["status"]),
            model_params=self._load_model_params(row.get("model_params")),
        )

    @staticmethod
    def _to_sample(row: dict) -> MetricSample:
        return MetricSample(
            row_id=row["rowid"],
            timestamp=row["timestamp"],
            value=row["metric_value"],
            raw_anomaly_score=row["raw_anomaly_score"],
            anomaly_score=row["anomaly_score"],
            display_value=row["display_value"],
        )

