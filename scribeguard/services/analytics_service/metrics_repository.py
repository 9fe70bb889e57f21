"""Metrics repository: raw per-subject writing metrics for the aggregator.

The aggregator only ever sees rows returned here. The ingestion jobs that
populate the metrics table are owned elsewhere; this side is read-only.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from scribeguard.shared.database import BaseRepository, ConnectionManager
from scribeguard.shared.models import MetricRow

logger = logging.getLogger(__name__)


class MetricsRepository(Protocol):
    """Collaborator contract consumed by the aggregator."""

    def fetch_metrics(
        self,
        subject_ids: Sequence[str],
        metric_names: Sequence[str],
        window_days: int,
    ) -> List[MetricRow]:
        ...


class InMemoryMetricsRepository:
    """Metrics held in memory, for development and tests.

    Each stored value carries an observation time so the window filter
    behaves like the PostgreSQL query.
    """

    def __init__(self):
        self._values: Dict[Tuple[str, str], List[Tuple[datetime, float]]] = {}
        self._lock = threading.Lock()
        self.fetch_count = 0

    def add(
        self,
        subject_id: str,
        metric: str,
        value: float,
        observed_at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            self._values.setdefault((subject_id, metric), []).append(
                (observed_at or datetime.utcnow(), float(value))
            )

    def add_many(self, subject_ids: Iterable[str], metric: str, value: float) -> None:
        for subject_id in subject_ids:
            self.add(subject_id, metric, value)

    def fetch_metrics(
        self,
        subject_ids: Sequence[str],
        metric_names: Sequence[str],
        window_days: int,
    ) -> List[MetricRow]:
        """Return one row per (subject, metric): the mean value within the window."""
        cutoff = datetime.utcnow() - timedelta(days=window_days)
        rows: List[MetricRow] = []
        with self._lock:
            self.fetch_count += 1
            for subject_id in subject_ids:
                for metric in metric_names:
                    values = [
                        v for observed_at, v in self._values.get((subject_id, metric), [])
                        if observed_at >= cutoff
                    ]
                    if values:
                        rows.append(MetricRow(subject_id, metric, sum(values) / len(values)))
        return rows


class PostgresMetricsRepository(BaseRepository[MetricRow]):
    """Reads windowed per-subject metric averages from PostgreSQL."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str = "writing_metrics",
    ):
        super().__init__(connection_manager, table_name)

    def fetch_metrics(
        self,
        subject_ids: Sequence[str],
        metric_names: Sequence[str],
        window_days: int,
    ) -> List[MetricRow]:
        """Fetch per-subject averages for the requested metrics.

        Raises:
            RepositoryError: If the query fails
        """
        if not subject_ids or not metric_names:
            return []

        query = f"""
            SELECT subject_id, metric, AVG(value)
            FROM {self.table_name}
            WHERE subject_id = ANY(%s)
              AND metric = ANY(%s)
              AND observed_at >= NOW() - (%s * INTERVAL '1 day')
            GROUP BY subject_id, metric
        """
        rows = self._fetch_all(query, (list(subject_ids), list(metric_names), window_days))

        logger.debug(
            "METRICS_FETCHED",
            extra={
                "subject_count": len(subject_ids),
                "metric_count": len(metric_names),
                "row_count": len(rows),
            }
        )
        return rows

    def _row_to_entity(self, row: tuple) -> MetricRow:
        return MetricRow(subject_id=row[0], metric=row[1], value=float(row[2]))
