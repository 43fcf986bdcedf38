"""
MySQL Source Connector
======================

Read-only connector for the Redmine database.
Extracts projects, lookup tables, issues and journals with bound,
cursor-gated queries.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Any

import pandas as pd
from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from ..errors import SourceError
from processing.common_code.projects import ProjectSet

logger = logging.getLogger(__name__)

# Lookup table name -> query returning (id, label)
LOOKUP_QUERIES = {
    "trackers": "SELECT id, name AS label FROM trackers",
    "projects": "SELECT id, name AS label FROM projects",
    "priorities": "SELECT id, name AS label FROM enumerations WHERE type = 'IssuePriority'",
    "categories": "SELECT id, name AS label FROM issue_categories",
    "statuses": "SELECT id, name AS label FROM issue_statuses",
    "users": "SELECT id, login AS label FROM users",
}

ISSUE_QUERY = """
    SELECT i.id, i.tracker_id, i.project_id, i.priority_id, i.category_id,
           i.status_id, i.assigned_to_id, i.author_id, i.due_date, i.created_on
    FROM issues AS i
    WHERE i.id > :after_id AND i.created_on < :before {project_filter}
    ORDER BY i.id ASC
    LIMIT :limit
"""

CHANGE_COLUMNS = """
    j.id, jd.id AS detail_id, j.journalized_id AS issue_id, j.created_on, j.user_id,
    j.notes, jd.property, jd.prop_key, jd.value, jd.old_value
"""

# Paging happens on journals so that one journal's details stay together
CHANGE_QUERY = """
    SELECT {columns}
    FROM (
        SELECT j.id
        FROM journals AS j
        JOIN issues AS i ON (i.id = j.journalized_id)
        WHERE j.journalized_type = 'Issue'
          AND j.id > :after_id AND j.created_on < :before {project_filter}
        ORDER BY j.id ASC
        LIMIT :limit
    ) AS page
    JOIN journals AS j ON (j.id = page.id)
    LEFT JOIN journal_details AS jd ON (jd.journal_id = j.id)
    ORDER BY j.id ASC, jd.id ASC
"""

ISSUE_CHANGES_QUERY = """
    SELECT {columns}
    FROM journals AS j
    JOIN journal_details AS jd ON (jd.journal_id = j.id)
    WHERE j.journalized_type = 'Issue'
      AND j.journalized_id IN :issue_ids
      AND jd.property IN ('attr', 'cf')
    ORDER BY j.id ASC, jd.id ASC
"""


def project_filter(project_set: ProjectSet, column: str = "i.project_id"):
    """
    SQL fragment and parameters restricting `column` to a project set.

    Returns:
        (fragment, params, expanding parameter names)
    """
    if project_set.all_projects:
        if not project_set.excluded:
            return "", {}, []
        return f"AND {column} NOT IN :excluded", {"excluded": sorted(project_set.excluded)}, ["excluded"]
    return f"AND {column} IN :projects", {"projects": project_set.project_ids}, ["projects"]


class MySQLConnector:
    """
    MySQL database connector for the Redmine source.
    """

    def __init__(self, config: Dict):
        """
        Initialize MySQL connector.

        Args:
            config: Connection configuration dict with host, port, database, username, password
        """
        self.config = config
        self.engine = None

    def connect(self):
        """Establish connection to MySQL database."""
        connection_string = (
            f"mysql+pymysql://{self.config['username']}:{self.config['password']}"
            f"@{self.config['host']}:{self.config['port']}/{self.config['database']}"
            f"?charset=utf8mb4"
        )
        try:
            self.engine = create_engine(
                connection_string,
                connect_args={"connect_timeout": self.config.get("connect_timeout", 10)}
            )

            # Test connection
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise SourceError(f"Cannot connect to MySQL {self.config['host']}: {e}") from e

        logger.info(f"Connected to MySQL: {self.config['host']}:{self.config['port']}/{self.config['database']}")

    def disconnect(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            self.engine = None
            logger.info("MySQL connection closed")

    def _read(self, query: str, params: Optional[Dict] = None, expanding: Optional[List[str]] = None) -> pd.DataFrame:
        """Run a parameterized query into a DataFrame."""
        if self.engine is None:
            raise SourceError("MySQL connector is not connected")

        statement = text(query)
        for name in expanding or []:
            statement = statement.bindparams(bindparam(name, expanding=True))

        try:
            with self.engine.connect() as conn:
                return pd.read_sql(statement, conn, params=params or {})
        except SQLAlchemyError as e:
            raise SourceError(f"Source query failed: {e}") from e

    def get_row_count(self, table: str) -> int:
        """
        Get row count for a table.

        Args:
            table: Table name

        Returns:
            Row count
        """
        df = self._read(f"SELECT COUNT(*) AS n FROM `{table}`")
        return int(df["n"].iloc[0])

    def get_projects(self) -> pd.DataFrame:
        """Project directory: id, identifier, parent_id, name."""
        return self._read("SELECT id, identifier, parent_id, name FROM projects ORDER BY id ASC")

    def get_lookup_tables(self) -> Dict[str, Dict[int, str]]:
        """
        Load every lookup table used to label coded values.

        Returns:
            Dict of lookup name -> {id: label}
        """
        lookups = {}
        for name, query in LOOKUP_QUERIES.items():
            df = self._read(query)
            lookups[name] = {int(row.id): row.label for row in df.itertuples(index=False)}
            logger.debug(f"Loaded lookup {name}: {len(lookups[name])} rows")
        logger.info(f"Loaded {len(lookups)} lookup tables")
        return lookups

    def get_custom_field_id(self, name: str) -> Optional[int]:
        """
        Id of the issue custom field called `name`, if it exists.

        Args:
            name: Custom field name (e.g. Resolution)

        Returns:
            custom_fields.id or None
        """
        df = self._read(
            "SELECT id FROM custom_fields WHERE type = 'IssueCustomField' AND name = :name ORDER BY id ASC LIMIT 1",
            {"name": name}
        )
        if df.empty:
            logger.warning(f"Custom field not found: {name}")
            return None
        return int(df["id"].iloc[0])

    def fetch_issues(
        self,
        after_id: int,
        before: datetime,
        project_set: ProjectSet,
        limit: int
    ) -> pd.DataFrame:
        """
        Extract the next issues after the cursor.

        Args:
            after_id: Issue cursor (exclusive)
            before: Only issues created before this instant
            project_set: Projects to export
            limit: Maximum number of issues

        Returns:
            DataFrame of raw issue rows ordered by id
        """
        if project_set.is_empty:
            logger.info("Project set is empty, no issues to extract")
            return pd.DataFrame()

        fragment, params, expanding = project_filter(project_set)
        params.update({"after_id": after_id, "before": before, "limit": limit})

        df = self._read(ISSUE_QUERY.format(project_filter=fragment), params, expanding)
        logger.info(f"Extracted {len(df)} issues after id {after_id}")
        return df

    def fetch_issue_changes(self, issue_ids: List[int]) -> pd.DataFrame:
        """
        Full attribute journal of the given issues, used to recover
        the values they had when created.
        """
        if not issue_ids:
            return pd.DataFrame()
        return self._read(
            ISSUE_CHANGES_QUERY.format(columns=CHANGE_COLUMNS),
            {"issue_ids": [int(i) for i in issue_ids]},
            ["issue_ids"]
        )

    def fetch_changes(
        self,
        after_id: int,
        before: datetime,
        project_set: ProjectSet,
        limit: int
    ) -> pd.DataFrame:
        """
        Extract the next journals after the cursor, with their details.

        Args:
            after_id: Change cursor (journal id, exclusive)
            before: Only journals created before this instant
            project_set: Projects to export
            limit: Maximum number of journals

        Returns:
            DataFrame with one row per journal detail (one row with NULL
            detail columns for a notes-only journal), ordered by (id, detail_id)
        """
        if project_set.is_empty:
            logger.info("Project set is empty, no changes to extract")
            return pd.DataFrame()

        fragment, params, expanding = project_filter(project_set)
        params.update({"after_id": after_id, "before": before, "limit": limit})

        df = self._read(CHANGE_QUERY.format(columns=CHANGE_COLUMNS, project_filter=fragment), params, expanding)
        logger.info(f"Extracted {len(df)} change rows after journal {after_id}")
        return df
