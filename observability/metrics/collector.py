"""
Metrics Collector
=================

Prometheus-compatible metrics collection for export runs.

Supports:
- Prometheus pushgateway integration
- In-memory metrics for testing
"""

import logging
import threading
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, push_to_gateway, generate_latest
)

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and exports metrics for the export pipeline.

    Supports multiple backends:
    - prometheus: Push to Prometheus Pushgateway
    - memory: In-memory storage (for testing)
    """

    # Predefined metric definitions
    METRIC_DEFINITIONS = {
        "export_rows_total": {
            "type": "counter",
            "description": "Rows written to the warehouse",
            "labels": ["stream"]
        },
        "export_batches_total": {
            "type": "counter",
            "description": "Sink write transactions, empty ones included",
            "labels": ["stream"]
        },
        "export_cursor": {
            "type": "gauge",
            "description": "High-water mark (max committed id) per stream",
            "labels": ["stream"]
        },
        "export_errors_total": {
            "type": "counter",
            "description": "Failed export stages",
            "labels": ["stage", "error_type"]
        },
        "snapshot_rows_total": {
            "type": "counter",
            "description": "Daily snapshot rows materialized",
            "labels": []
        },
        "snapshot_days_total": {
            "type": "counter",
            "description": "Calendar days materialized",
            "labels": []
        },
        "snapshot_last_day": {
            "type": "gauge",
            "description": "Last materialized day (unix timestamp)",
            "labels": []
        },
        "export_run_duration_seconds": {
            "type": "histogram",
            "description": "Duration of export runs",
            "labels": ["command", "status"]
        }
    }

    def __init__(
        self,
        backend: str = "memory",
        pushgateway_url: Optional[str] = None,
        job_name: str = "redmine_export"
    ):
        """
        Initialize metrics collector.

        Args:
            backend: 'prometheus' or 'memory'
            pushgateway_url: Prometheus Pushgateway URL
            job_name: Job name for Prometheus
        """
        if backend not in ("prometheus", "memory"):
            raise ValueError(f"Unknown metrics backend: {backend}")

        self.backend = backend
        self.job_name = job_name
        self.pushgateway_url = pushgateway_url

        self._memory_store: List[Dict] = []
        self._prometheus_metrics: Dict = {}
        self._registry = CollectorRegistry()
        self._lock = threading.Lock()

        if backend == "prometheus":
            self._init_prometheus_metrics()

    def _init_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        for name, definition in self.METRIC_DEFINITIONS.items():
            metric_type = definition["type"]
            description = definition["description"]
            labels = definition.get("labels", [])

            if metric_type == "counter":
                self._prometheus_metrics[name] = Counter(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "gauge":
                self._prometheus_metrics[name] = Gauge(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "histogram":
                self._prometheus_metrics[name] = Histogram(
                    name, description, labels, registry=self._registry
                )

    # =========================================
    # METRIC RECORDING METHODS
    # =========================================

    def _record(self, metric_name: str, metric_type: str, value: float, labels: Optional[Dict]):
        labels = labels or {}

        with self._lock:
            if self.backend == "prometheus":
                metric = self._prometheus_metrics.get(metric_name)
                if metric is None:
                    logger.warning(f"Unknown metric: {metric_name}")
                    return
                if labels:
                    metric = metric.labels(**labels)
                if metric_type == "counter":
                    metric.inc(value)
                elif metric_type == "gauge":
                    metric.set(value)
                else:
                    metric.observe(value)

            else:  # memory
                self._memory_store.append({
                    "metric_name": metric_name,
                    "metric_type": metric_type,
                    "value": value,
                    "labels": labels,
                    "timestamp": datetime.now().isoformat()
                })

    def record_counter(self, metric_name: str, value: float = 1, labels: Optional[Dict] = None):
        """
        Increment a counter metric.

        Args:
            metric_name: Name of the metric
            value: Value to increment by
            labels: Label key-value pairs
        """
        self._record(metric_name, "counter", value, labels)

    def record_gauge(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        """Set a gauge metric value."""
        self._record(metric_name, "gauge", value, labels)

    def record_histogram(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        """Record a histogram observation."""
        self._record(metric_name, "histogram", value, labels)

    # =========================================
    # CONVENIENCE METHODS
    # =========================================

    def record_run(self, command: str, duration_seconds: float, status: str):
        """Record metrics for an export run."""
        self.record_histogram(
            "export_run_duration_seconds",
            duration_seconds,
            {"command": command, "status": status}
        )

    def record_error(self, stage: str, error: Exception):
        self.record_counter(
            "export_errors_total",
            1,
            {"stage": stage, "error_type": type(error).__name__}
        )

    def record_snapshots(self, rows: int, days: int, last_day: Optional[date] = None):
        """Record a snapshot materialization."""
        self.record_counter("snapshot_rows_total", rows)
        self.record_counter("snapshot_days_total", days)
        if last_day is not None:
            midnight = datetime(last_day.year, last_day.month, last_day.day, tzinfo=timezone.utc)
            self.record_gauge("snapshot_last_day", midnight.timestamp())

    # =========================================
    # EXPORT METHODS
    # =========================================

    def push_to_prometheus(self) -> bool:
        """Push metrics to Prometheus Pushgateway."""
        if self.backend != "prometheus":
            return False

        if not self.pushgateway_url:
            logger.warning("Pushgateway URL not configured")
            return False

        try:
            push_to_gateway(
                self.pushgateway_url,
                job=self.job_name,
                registry=self._registry
            )
            logger.info("Metrics pushed to Prometheus Pushgateway")
            return True
        except OSError as e:
            logger.error(f"Failed to push metrics: {e}")
            return False

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self._registry).decode('utf-8')

    def get_memory_metrics(self) -> List[Dict]:
        """Get in-memory metrics store."""
        return self._memory_store.copy()

    def total(self, metric_name: str, labels: Optional[Dict] = None) -> float:
        """Sum of in-memory observations of a metric, optionally filtered by labels."""
        labels = labels or {}
        return sum(
            m["value"] for m in self._memory_store
            if m["metric_name"] == metric_name
            and all(m["labels"].get(k) == v for k, v in labels.items())
        )

    def clear_memory_metrics(self):
        """Clear in-memory metrics store."""
        with self._lock:
            self._memory_store.clear()
