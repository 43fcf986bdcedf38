"""
Redmine Export Observability Module
===================================

Provides metrics and logging for export runs.

Components:
- metrics: Prometheus-compatible metrics collection
- logging: Structured (JSON) logging with run context

Usage:
    from observability import MetricsCollector, setup_logging, context

    # Metrics
    metrics = MetricsCollector(backend="memory")
    metrics.record_counter("export_rows_total", 300, {"stream": "changes"})

    # Logging
    setup_logging(level="INFO", json_format=True)
    with context(run_id="abc123", command="export"):
        logging.getLogger(__name__).info("Export started")
"""

from .metrics.collector import MetricsCollector
from .logging.structured_logger import JsonFormatter, context, setup_logging

__version__ = "1.0.0"
__all__ = ["MetricsCollector", "JsonFormatter", "context", "setup_logging"]
