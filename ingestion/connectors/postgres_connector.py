"""
PostgreSQL Sink Connector
=========================

Connector for the warehouse schema holding the exported issues, their
change history and the daily snapshots.

Every write is one transaction: either the whole batch is committed or
nothing is, so the MAX(id) cursor only ever reflects complete batches.
Transport-encoded text (base64) is decoded inside the INSERT statement.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import psycopg2
from psycopg2 import sql
from psycopg2.extras import execute_values

from ..errors import SinkError
from processing.common_code.changes import ATTR, CF, TRACKED_FIELDS
from processing.common_code.reconstruct import ISSUE_COLUMNS
from processing.common_code.snapshots import SNAPSHOT_COLUMNS
from processing.common_code.utils import is_missing

logger = logging.getLogger(__name__)

TEXT = "convert_from(decode(%s, 'base64'), 'UTF8')"
DATE = "NULLIF(convert_from(decode(%s, 'base64'), 'UTF8'), '')::date"

CHANGE_COLUMNS = [
    "id", "detail_id", "issue_id", "actor", "occurred_on",
    "category", "field_key", "new_value", "old_value", "notes",
]

# Row template per table; encoded columns are decoded on insert
ISSUE_TEMPLATE = "(" + ", ".join(
    ["%s"] + [DATE if f == "due_date" else TEXT for f in TRACKED_FIELDS] + [TEXT, "%s"]
) + ")"
CHANGE_TEMPLATE = f"(%s, %s, %s, {TEXT}, %s, %s, %s, {TEXT}, {TEXT}, {TEXT})"

SCHEMA_DDL = """
    CREATE SCHEMA IF NOT EXISTS {schema};

    CREATE TABLE IF NOT EXISTS {schema}.issues (
        id              INTEGER PRIMARY KEY,
        tracker         TEXT,
        project         TEXT,
        priority        TEXT,
        category        TEXT,
        status          TEXT,
        resolution      TEXT,
        assigned_to     TEXT,
        due_date        DATE,
        author          TEXT,
        created_on      TIMESTAMP NOT NULL,
        exported_at     TIMESTAMP NOT NULL DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS {schema}.issue_changes (
        id              INTEGER NOT NULL,
        detail_id       INTEGER NOT NULL DEFAULT 0,
        issue_id        INTEGER NOT NULL,
        actor           TEXT,
        occurred_on     TIMESTAMP NOT NULL,
        category        TEXT,
        field_key       TEXT,
        new_value       TEXT,
        old_value       TEXT,
        notes           TEXT,
        exported_at     TIMESTAMP NOT NULL DEFAULT now(),
        PRIMARY KEY (id, detail_id)
    );

    CREATE INDEX IF NOT EXISTS issue_changes_issue_idx
        ON {schema}.issue_changes (issue_id, id, detail_id);

    CREATE TABLE IF NOT EXISTS {schema}.issue_snapshots (
        issue_id        INTEGER NOT NULL,
        day             DATE NOT NULL,
        tracker         TEXT,
        project         TEXT,
        priority        TEXT,
        category        TEXT,
        status          TEXT,
        resolution      TEXT,
        assigned_to     TEXT,
        due_date        DATE,
        created_on      TIMESTAMP NOT NULL,
        updated_on      TIMESTAMP NOT NULL,
        PRIMARY KEY (issue_id, day)
    );
"""

TABLES = ["issues", "issue_changes", "issue_snapshots"]


def to_db_value(value: Any) -> Any:
    """Convert pandas/numpy scalars to values psycopg2 can adapt."""
    if is_missing(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        return value.item()
    return value


def to_records(rows: List[Dict[str, Any]], columns: List[str]) -> List[Tuple]:
    return [tuple(to_db_value(row.get(c)) for c in columns) for row in rows]


class PostgresConnector:
    """
    PostgreSQL warehouse connector.
    """

    def __init__(self, config: Dict):
        """
        Initialize PostgreSQL connector.

        Args:
            config: Connection configuration dict with host, port, database,
                user, password and optional schema (default: redmine)
        """
        self.config = config
        self.schema = config.get("schema", "redmine")
        self._db_conn = None

    def connect(self):
        """Establish connection to the warehouse."""
        try:
            self._db_conn = psycopg2.connect(
                host=self.config["host"],
                port=self.config["port"],
                dbname=self.config["database"],
                user=self.config["user"],
                password=self.config["password"],
                connect_timeout=self.config.get("connect_timeout", 10),
            )
        except psycopg2.Error as e:
            raise SinkError(f"Cannot connect to PostgreSQL {self.config['host']}: {e}") from e

        logger.info(
            f"Connected to PostgreSQL: {self.config['host']}:{self.config['port']}/"
            f"{self.config['database']} (schema {self.schema})"
        )

    @property
    def db_conn(self):
        """Get database connection."""
        if self._db_conn is None or self._db_conn.closed:
            raise SinkError("PostgreSQL connector is not connected")
        return self._db_conn

    def disconnect(self):
        """Close database connection."""
        if self._db_conn and not self._db_conn.closed:
            self._db_conn.close()
            logger.info("PostgreSQL connection closed")

    def _table(self, table: str) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self.schema), sql.Identifier(table))

    def _fetch(self, query, params: Optional[Tuple] = None) -> Tuple[List[str], List[Tuple]]:
        """Run a read query in its own transaction."""
        try:
            with self.db_conn:
                with self.db_conn.cursor() as cur:
                    cur.execute(query, params)
                    columns = [d[0] for d in cur.description]
                    return columns, cur.fetchall()
        except psycopg2.Error as e:
            raise SinkError(f"Sink query failed: {e}") from e

    def _scalar(self, query, params: Optional[Tuple] = None) -> Any:
        _, rows = self._fetch(query, params)
        return rows[0][0] if rows else None

    def _frame(self, query, params: Optional[Tuple] = None) -> pd.DataFrame:
        columns, rows = self._fetch(query, params)
        return pd.DataFrame(rows, columns=columns)

    def _write(self, table: str, columns: List[str], records: List[Tuple], template: Optional[str] = None) -> int:
        """
        Insert records in one transaction. An empty batch still commits a
        (no-op) transaction.
        """
        statement = sql.SQL("INSERT INTO {table} ({columns}) VALUES %s ON CONFLICT DO NOTHING").format(
            table=self._table(table),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
        )
        try:
            with self.db_conn:
                with self.db_conn.cursor() as cur:
                    if not records:
                        cur.execute(sql.SQL("SELECT 1 FROM {} LIMIT 0").format(self._table(table)))
                        return 0
                    execute_values(cur, statement.as_string(cur), records, template=template, page_size=1000)
        except psycopg2.Error as e:
            logger.error(f"Insert into {self.schema}.{table} failed, batch rolled back: {e}")
            raise SinkError(f"Insert into {self.schema}.{table} failed: {e}") from e

        logger.debug(f"Committed {len(records)} rows into {self.schema}.{table}")
        return len(records)

    # =========================================
    # SCHEMA
    # =========================================

    def ensure_schema(self):
        """Create the schema and its tables if they do not exist."""
        ddl = SCHEMA_DDL.format(schema=sql.Identifier(self.schema).as_string(self.db_conn))
        try:
            with self.db_conn:
                with self.db_conn.cursor() as cur:
                    cur.execute(ddl)
        except psycopg2.Error as e:
            raise SinkError(f"Schema setup failed: {e}") from e
        logger.info(f"Schema {self.schema} ready ({', '.join(TABLES)})")

    # =========================================
    # CURSORS AND RANGES
    # =========================================

    def get_max_id(self, table: str) -> int:
        """MAX(id) of `table`, 0 when empty."""
        query = sql.SQL("SELECT COALESCE(MAX(id), 0) FROM {}").format(self._table(table))
        return int(self._scalar(query) or 0)

    def get_row_count(self, table: str) -> int:
        query = sql.SQL("SELECT COUNT(*) FROM {}").format(self._table(table))
        return int(self._scalar(query) or 0)

    def get_created_on_range(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """(MIN, MAX) created_on of exported issues."""
        query = sql.SQL("SELECT MIN(created_on), MAX(created_on) FROM {}").format(self._table("issues"))
        _, rows = self._fetch(query)
        return (rows[0][0], rows[0][1]) if rows else (None, None)

    def get_last_snapshot_day(self) -> Optional[date]:
        query = sql.SQL("SELECT MAX(day) FROM {}").format(self._table("issue_snapshots"))
        return self._scalar(query)

    # =========================================
    # WRITES
    # =========================================

    def insert_issues(self, rows: List[Dict[str, Any]]) -> int:
        """Insert reconstructed issue rows (transport-encoded text)."""
        return self._write("issues", ISSUE_COLUMNS, to_records(rows, ISSUE_COLUMNS), ISSUE_TEMPLATE)

    def insert_changes(self, rows: List[Dict[str, Any]]) -> int:
        """Insert change rows (transport-encoded text)."""
        return self._write("issue_changes", CHANGE_COLUMNS, to_records(rows, CHANGE_COLUMNS), CHANGE_TEMPLATE)

    def insert_snapshots(self, df: pd.DataFrame) -> int:
        """Append daily snapshot rows."""
        rows = df.to_dict("records") if df is not None else []
        return self._write("issue_snapshots", SNAPSHOT_COLUMNS, to_records(rows, SNAPSHOT_COLUMNS))

    # =========================================
    # READS FOR MATERIALIZATION
    # =========================================

    def read_issues(self, created_before: Optional[datetime] = None) -> pd.DataFrame:
        """Exported issues (original values), optionally created before an instant."""
        query = sql.SQL("SELECT {columns} FROM {table}").format(
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in ISSUE_COLUMNS),
            table=self._table("issues"),
        )
        params = None
        if created_before is not None:
            query = query + sql.SQL(" WHERE created_on < %s")
            params = (created_before,)
        return self._frame(query + sql.SQL(" ORDER BY id ASC"), params)

    def read_changes(self, occurred_before: Optional[datetime] = None) -> pd.DataFrame:
        """Exported attribute changes to tracked fields, in replay order."""
        query = sql.SQL(
            "SELECT id, detail_id, issue_id, occurred_on, category, field_key, new_value "
            "FROM {table} WHERE category IN (%s, %s) AND field_key = ANY(%s)"
        ).format(table=self._table("issue_changes"))
        params = [ATTR, CF, list(TRACKED_FIELDS)]
        if occurred_before is not None:
            query = query + sql.SQL(" AND occurred_on < %s")
            params.append(occurred_before)
        return self._frame(query + sql.SQL(" ORDER BY id ASC, detail_id ASC"), tuple(params))
