"""
Export Engine Core
==================

Main orchestrator for the Redmine -> warehouse export.

Stages, always in this order:
1. issues     - next issues after the cursor, as originally created
2. changes    - next journals after the cursor, in chunks
3. snapshots  - daily state rows derived from the warehouse's own data

Each stage returns a result dictionary; an export run stops at the first
stage that fails.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .connectors.mysql_connector import MySQLConnector
from .connectors.postgres_connector import PostgresConnector, TABLES
from .cursor import CHANGES, ISSUES, STREAM_TABLES, HighWaterMarkCursor
from .emitter import BatchEmitter
from .errors import ExportError
from .settings import RunConfig
from observability.logging.structured_logger import (
    context, log_run_end, log_run_start, new_trace_id, setup_logging
)
from observability.metrics.collector import MetricsCollector
from processing.common_code.changes import ChangeDecoder
from processing.common_code.projects import ProjectSet, ProjectSetResolver
from processing.common_code.reconstruct import PointInTimeReconstructor
from processing.common_code.snapshots import DailySnapshotMaterializer
from processing.common_code.utils import generate_batch_id

logger = logging.getLogger(__name__)

SOURCE_TABLES = ["projects", "issues", "journals", "journal_details"]


class ExportEngine:
    """
    Incremental exporter of Redmine issues, their journal and daily snapshots.

    Connectors can be injected (tests use in-memory fakes); otherwise they
    are built from the RunConfig on connect().
    """

    def __init__(
        self,
        config: RunConfig,
        source_connector=None,
        target_connector=None,
        metrics: Optional[MetricsCollector] = None
    ):
        """
        Initialize the export engine.

        Args:
            config: Validated run configuration
            source_connector: Optional source connector (default: MySQLConnector)
            target_connector: Optional sink connector (default: PostgresConnector)
            metrics: Optional metrics collector (default: from config)
        """
        self.config = config
        self.source_connector = source_connector
        self.target_connector = target_connector
        self.metrics = metrics or self._build_metrics()
        self.batch_id = generate_batch_id()
        self.run_id = new_trace_id()

        self.decoder: Optional[ChangeDecoder] = None
        self.reconstructor: Optional[PointInTimeReconstructor] = None
        self.project_set: Optional[ProjectSet] = None
        self._cursor: Optional[HighWaterMarkCursor] = None

        self._setup_logging()

    def _setup_logging(self):
        """Setup logging configuration."""
        log_settings = self.config.log_settings
        setup_logging(
            level=log_settings.get("level", "INFO"),
            json_format=log_settings.get("json", False),
            log_to_file=log_settings.get("log_to_file", False),
            log_path=log_settings.get("log_path", "logs/export.log")
        )

    def _build_metrics(self) -> MetricsCollector:
        metrics_settings = self.config.metrics_settings
        return MetricsCollector(
            backend=metrics_settings.get("backend", "memory"),
            pushgateway_url=metrics_settings.get("pushgateway_url"),
            job_name=metrics_settings.get("job_name", "redmine_export")
        )

    # =========================================
    # CONNECTIONS
    # =========================================

    def connect(self):
        """Establish connections to source and target."""
        logger.info("Connecting to source and target systems...")

        if self.source_connector is None:
            self.source_connector = MySQLConnector(dict(self.config.source))
        self.source_connector.connect()
        logger.info("✓ Connected to Redmine source")

        if self.target_connector is None:
            self.target_connector = PostgresConnector(dict(self.config.target))
        self.target_connector.connect()
        logger.info("✓ Connected to warehouse target")

        self._cursor = HighWaterMarkCursor(self.target_connector)

    def disconnect(self):
        """Close all connections."""
        if self.source_connector:
            self.source_connector.disconnect()
        if self.target_connector:
            self.target_connector.disconnect()
        logger.info("Connections closed")

    @property
    def cursor(self) -> HighWaterMarkCursor:
        """One cursor per connection, so monotonicity is checked across stages."""
        if self._cursor is None:
            self._cursor = HighWaterMarkCursor(self.target_connector)
        return self._cursor

    def _prepare(self):
        """Load lookups, the resolution field and the project set once per run."""
        if self.decoder is not None:
            return

        lookups = self.source_connector.get_lookup_tables()
        resolution_id = self.source_connector.get_custom_field_id(self.config.resolution_field)
        self.decoder = ChangeDecoder(lookups, resolution_id)
        self.reconstructor = PointInTimeReconstructor(self.decoder)

        resolver = ProjectSetResolver(
            self.source_connector.get_projects(),
            direction=self.config.project_closure
        )
        self.project_set = resolver.resolve(self.config.include_projects, self.config.exclude_projects)

    def _run_stage(self, stage: str, func: Callable[[], Dict]) -> Dict:
        """Run one stage, turning failures into a failed result."""
        started = datetime.now().isoformat()
        try:
            result = func()
        except Exception as e:
            if isinstance(e, ExportError):
                logger.error(f"  ✗ {stage} failed: {e}")
            else:
                logger.exception(f"  ✗ {stage} failed unexpectedly: {e}")
            self.metrics.record_error(stage, e)
            result = {
                "status": "failed",
                "rows_extracted": 0,
                "rows_loaded": 0,
                "start_time": started,
                "error": str(e)
            }
        result["stage"] = stage
        result.setdefault("start_time", started)
        result["end_time"] = datetime.now().isoformat()
        return result

    # =========================================
    # STAGES
    # =========================================

    def _extract_issues(self, after_id: int, limit: int) -> List[Dict]:
        raw = self.source_connector.fetch_issues(after_id, self.config.cutoff, self.project_set, limit)
        if raw.empty:
            return []

        issue_ids = [int(i) for i in raw["id"]]
        journal = self.source_connector.fetch_issue_changes(issue_ids)
        events = self.decoder.decode_all(journal.to_dict("records")) if not journal.empty else []
        return self.reconstructor.reconstruct_all(raw, events)

    def _extract_changes(self, after_id: int, limit: int) -> List[Dict]:
        raw = self.source_connector.fetch_changes(after_id, self.config.cutoff, self.project_set, limit)
        if raw.empty:
            return []
        return [event.to_row() for event in self.decoder.decode_all(raw.to_dict("records"))]

    def sync_issues(self) -> Dict:
        """
        Export the next issues after the issue cursor as one batch.

        Returns:
            Result dictionary
        """
        def stage():
            logger.info(f"Syncing issues (max {self.config.max_issues}, created before {self.config.cutoff})")
            self._prepare()
            emitter = BatchEmitter(self.cursor, self.metrics)
            return emitter.emit_batch(
                ISSUES, self._extract_issues, self.target_connector.insert_issues, self.config.max_issues
            )

        return self._run_stage("issues", stage)

    def sync_changes(self) -> Dict:
        """
        Export the next journals after the change cursor, chunk by chunk.

        Returns:
            Result dictionary
        """
        def stage():
            logger.info(
                f"Syncing changes (max {self.config.max_changes}, "
                f"{self.config.change_batch_size} per batch)"
            )
            self._prepare()
            missing_before = self.decoder.missing_lookups
            emitter = BatchEmitter(self.cursor, self.metrics)
            result = emitter.emit(
                CHANGES,
                self._extract_changes,
                self.target_connector.insert_changes,
                batch_size=self.config.change_batch_size,
                cap=self.config.max_changes
            )
            missing = self.decoder.missing_lookups - missing_before
            if missing:
                logger.warning(f"  {missing} values referenced missing lookup rows")
            result["missing_lookups"] = missing
            return result

        return self._run_stage("changes", stage)

    def materialize_snapshots(self) -> Dict:
        """
        Append daily snapshot rows for the next window of completed days.

        Returns:
            Result dictionary
        """
        def stage():
            materializer = DailySnapshotMaterializer(self.config.max_days, self.config.run_date)
            last_day = self.target_connector.get_last_snapshot_day()
            first_created, _ = self.target_connector.get_created_on_range()
            window = materializer.window(last_day, first_created.date() if first_created else None)

            result = {
                "status": "success",
                "rows_extracted": 0,
                "rows_loaded": 0,
                "last_day": last_day,
                "window_start": None,
                "window_end": None,
                "days": 0,
                "error": None
            }

            if window is None:
                logger.info(f"No snapshot days to materialize (last day: {last_day})")
                return result

            start, end = window
            until = datetime.combine(end + timedelta(days=1), datetime.min.time())
            logger.info(f"Materializing snapshots {start} .. {end}")

            issues = self.target_connector.read_issues(created_before=until)
            changes = self.target_connector.read_changes(occurred_before=until)
            snapshots = materializer.materialize(issues, changes, start, end)
            written = self.target_connector.insert_snapshots(snapshots)

            days = (end - start).days + 1
            result.update({
                "rows_extracted": len(changes),
                "rows_loaded": written,
                "window_start": start,
                "window_end": end,
                "days": days
            })
            self.metrics.record_snapshots(written, days, end)
            logger.info(f"  ✓ {written} snapshot rows for {days} days")
            return result

        return self._run_stage("snapshots", stage)

    def run_export(self) -> List[Dict]:
        """
        Run issues, changes and snapshots in order.

        Snapshots only run once both streams are drained; otherwise the
        window would be frozen with rows still pending in the source.

        Returns:
            List of result dictionaries
        """
        logger.info("=" * 60)
        logger.info("STARTING EXPORT")
        logger.info(f"Batch ID: {self.batch_id}")
        logger.info(f"Run date: {self.config.run_date}")
        logger.info("=" * 60)

        results = []
        for stage in (self.sync_issues, self.sync_changes):
            result = stage()
            results.append(result)
            if result["status"] != "success":
                logger.error(f"Stopping export after failed stage: {result['stage']}")
                break
        else:
            pending = [r["stage"] for r in results if not r.get("drained", True)]
            if pending:
                logger.info(f"Skipping snapshots, rows still pending for: {', '.join(pending)}")
                results.append({
                    "stage": "snapshots",
                    "status": "skipped",
                    "rows_extracted": 0,
                    "rows_loaded": 0,
                    "error": None
                })
            else:
                results.append(self.materialize_snapshots())

        success = sum(1 for r in results if r["status"] == "success")
        failed = sum(1 for r in results if r["status"] == "failed")
        total_rows = sum(r["rows_loaded"] for r in results)

        logger.info("=" * 60)
        logger.info("EXPORT COMPLETE")
        logger.info(f"  Stages: {success} success, {failed} failed")
        logger.info(f"  Total rows: {total_rows}")
        logger.info("=" * 60)

        return results

    # =========================================
    # HOUSEKEEPING
    # =========================================

    def setup(self) -> Dict:
        """Create the warehouse schema and tables."""
        def stage():
            self.target_connector.ensure_schema()
            return {"status": "success", "rows_extracted": 0, "rows_loaded": 0, "tables": TABLES, "error": None}

        return self._run_stage("setup", stage)

    def test_connections(self) -> Dict:
        """Row counts on both sides; proves both connections work."""
        def stage():
            source_counts = {t: self.source_connector.get_row_count(t) for t in SOURCE_TABLES}
            target_counts = {t: self.target_connector.get_row_count(t) for t in TABLES}
            for table, count in source_counts.items():
                logger.info(f"  source {table}: {count:,} rows")
            for table, count in target_counts.items():
                logger.info(f"  target {table}: {count:,} rows")
            return {
                "status": "success",
                "rows_extracted": 0,
                "rows_loaded": 0,
                "source": source_counts,
                "target": target_counts,
                "error": None
            }

        return self._run_stage("test", stage)

    def status(self) -> Dict:
        """Cursors, created_on range and the next snapshot window."""
        def stage():
            cursor = self.cursor
            cursors = {stream: cursor.get(stream) for stream in STREAM_TABLES}
            first_created, last_created = self.target_connector.get_created_on_range()
            last_day = self.target_connector.get_last_snapshot_day()
            materializer = DailySnapshotMaterializer(self.config.max_days, self.config.run_date)
            window = materializer.window(last_day, first_created.date() if first_created else None)

            logger.info(f"  cursors: {cursors}")
            logger.info(f"  created_on: {first_created} .. {last_created}")
            logger.info(f"  last snapshot day: {last_day}, next window: {window}")
            return {
                "status": "success",
                "rows_extracted": 0,
                "rows_loaded": 0,
                "cursors": cursors,
                "created_on_range": [first_created, last_created],
                "last_snapshot_day": last_day,
                "next_window": list(window) if window else None,
                "error": None
            }

        return self._run_stage("status", stage)

    # =========================================
    # ENTRY POINT
    # =========================================

    def run(self, command: str) -> List[Dict]:
        """
        Connect, run one command and record run metrics.

        Args:
            command: test, setup, status, issues, changes, snapshots or export

        Returns:
            List of stage result dictionaries
        """
        handlers = {
            "test": lambda: [self.test_connections()],
            "setup": lambda: [self.setup()],
            "status": lambda: [self.status()],
            "issues": lambda: [self.sync_issues()],
            "changes": lambda: [self.sync_changes()],
            "snapshots": lambda: [self.materialize_snapshots()],
            "export": self.run_export,
        }
        if command not in handlers:
            raise ValueError(f"Unknown command: {command}")

        started = time.time()
        results: List[Dict] = []
        status = "failed"
        with context(run_id=self.run_id, command=command):
            log_run_start(logger, command, self.run_id, self.config.describe())
            try:
                self.connect()
                results = handlers[command]()
                status = "failed" if any(r["status"] == "failed" for r in results) else "success"
            finally:
                self.disconnect()
                duration = time.time() - started
                self.metrics.record_run(command, duration, status)
                self.metrics.push_to_prometheus()
                log_run_end(
                    logger, command, self.run_id, status, duration,
                    rows_exported=sum(r["rows_loaded"] for r in results)
                )

        return results
