import re
from datetime import date, datetime
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import psycopg2
import pytest
from psycopg2 import sql

from ingestion.connectors import mysql_connector, postgres_connector
from ingestion.connectors.mysql_connector import MySQLConnector, project_filter
from ingestion.connectors.postgres_connector import (
    CHANGE_COLUMNS, CHANGE_TEMPLATE, DATE, ISSUE_TEMPLATE, TEXT,
    PostgresConnector, to_db_value, to_records
)
from ingestion.errors import SinkError, SourceError
from processing.common_code.projects import ALL_PROJECTS, ProjectSet
from processing.common_code.reconstruct import ISSUE_COLUMNS

TARGET = {"host": "dwh", "port": 5432, "database": "dwh", "user": "dwh", "password": "", "schema": "redmine"}
SOURCE = {"host": "redmine-db", "port": 3306, "database": "redmine", "username": "redmine", "password": ""}

PLACEHOLDER = re.compile("|".join(re.escape(p) for p in (DATE, TEXT, "%s")))


def _kinds(template):
    kinds = {DATE: "date", TEXT: "text", "%s": "raw"}
    return [kinds[token] for token in PLACEHOLDER.findall(template)]


# =========================================
# POSTGRES TEMPLATES AND VALUES
# =========================================

def test_issue_template_decodes_text_and_due_date():
    kinds = dict(zip(ISSUE_COLUMNS, _kinds(ISSUE_TEMPLATE)))

    assert len(_kinds(ISSUE_TEMPLATE)) == len(ISSUE_COLUMNS)
    assert kinds["id"] == "raw"
    assert kinds["created_on"] == "raw"
    assert kinds["due_date"] == "date"
    assert kinds["status"] == "text"
    assert kinds["author"] == "text"


def test_change_template_decodes_text_columns_only():
    kinds = dict(zip(CHANGE_COLUMNS, _kinds(CHANGE_TEMPLATE)))

    assert len(_kinds(CHANGE_TEMPLATE)) == len(CHANGE_COLUMNS)
    assert [c for c, k in kinds.items() if k == "text"] == ["actor", "new_value", "old_value", "notes"]


@pytest.mark.parametrize("value, expected", [
    (None, None),
    (np.nan, None),
    (pd.NaT, None),
    (np.int64(7), 7),
    (np.float64(1.5), 1.5),
    ("text", "text"),
    (date(2024, 3, 1), date(2024, 3, 1)),
])
def test_to_db_value(value, expected):
    assert to_db_value(value) == expected


def test_to_db_value_returns_native_types():
    assert type(to_db_value(np.int64(7))) is int
    assert type(to_db_value(pd.Timestamp("2024-03-01 09:00"))) is datetime


def test_to_records_orders_columns_and_fills_missing_keys():
    rows = [{"b": np.int64(2), "a": "x"}, {"a": None}]

    assert to_records(rows, ["a", "b"]) == [("x", 2), (None, None)]


# =========================================
# POSTGRES WRITES
# =========================================

@pytest.fixture
def sink():
    connector = PostgresConnector(dict(TARGET))
    connector._db_conn = MagicMock(closed=False)
    return connector


def _cursor(connector):
    return connector._db_conn.cursor.return_value.__enter__.return_value


def _change_row(**overrides):
    row = {"id": 10, "detail_id": 100, "issue_id": 1, "actor": "YWxpY2U=",
           "occurred_on": pd.Timestamp("2024-03-02 10:00"), "category": "attr",
           "field_key": "status", "new_value": "Q2xvc2Vk", "old_value": "T3Blbg==", "notes": None}
    row.update(overrides)
    return row


def test_insert_changes_is_one_committed_batch(sink):
    with patch.object(postgres_connector, "execute_values") as execute_values, \
            patch.object(sql.Composed, "as_string", return_value="INSERT ..."):
        written = sink.insert_changes([_change_row(), _change_row(detail_id=101)])

    assert written == 2
    execute_values.assert_called_once()
    _, statement, records = execute_values.call_args[0]
    assert statement == "INSERT ..."
    assert execute_values.call_args[1]["template"] == CHANGE_TEMPLATE
    assert records[0] == (10, 100, 1, "YWxpY2U=", datetime(2024, 3, 2, 10, 0),
                          "attr", "status", "Q2xvc2Vk", "T3Blbg==", None)
    assert sink._db_conn.__exit__.call_args[0] == (None, None, None)


def test_empty_batch_commits_a_no_op(sink):
    with patch.object(postgres_connector, "execute_values") as execute_values:
        written = sink.insert_issues([])

    assert written == 0
    execute_values.assert_not_called()
    query = _cursor(sink).execute.call_args[0][0]
    assert "LIMIT 0" in repr(query)
    assert sink._db_conn.__exit__.call_args[0] == (None, None, None)


def test_failed_batch_is_rolled_back_as_sink_error(sink):
    with patch.object(postgres_connector, "execute_values", side_effect=psycopg2.Error("duplicate")), \
            patch.object(sql.Composed, "as_string", return_value="INSERT ..."):
        with pytest.raises(SinkError):
            sink.insert_changes([_change_row()])

    assert sink._db_conn.__exit__.call_args[0][0] is psycopg2.Error


def test_unconnected_sink_raises():
    with pytest.raises(SinkError):
        PostgresConnector(dict(TARGET)).get_max_id("issues")


# =========================================
# MYSQL PROJECT FILTER AND READS
# =========================================

@pytest.mark.parametrize("project_set, expected", [
    (ProjectSet(frozenset({ALL_PROJECTS})), ("", {}, [])),
    (ProjectSet(frozenset({ALL_PROJECTS}), excluded=frozenset({2, 1})),
     ("AND i.project_id NOT IN :excluded", {"excluded": [1, 2]}, ["excluded"])),
    (ProjectSet(frozenset({5, 3})),
     ("AND i.project_id IN :projects", {"projects": [3, 5]}, ["projects"])),
])
def test_project_filter(project_set, expected):
    assert project_filter(project_set) == expected


def test_project_filter_on_other_column():
    fragment, _, _ = project_filter(ProjectSet(frozenset({1})), column="p.id")

    assert fragment == "AND p.id IN :projects"


@pytest.fixture
def source():
    connector = MySQLConnector(dict(SOURCE))
    connector.engine = MagicMock()
    return connector


def test_fetch_changes_binds_cursor_cutoff_and_projects(source):
    before = datetime(2024, 3, 10)
    project_set = ProjectSet(frozenset({ALL_PROJECTS}), excluded=frozenset({3}))

    with patch.object(mysql_connector.pd, "read_sql", return_value=pd.DataFrame()) as read_sql:
        source.fetch_changes(300, before, project_set, 300)

    statement = read_sql.call_args[0][0]
    params = read_sql.call_args[1]["params"]
    assert "NOT IN :excluded" in statement.text
    assert "LIMIT :limit" in statement.text
    assert params == {"excluded": [3], "after_id": 300, "before": before, "limit": 300}


def test_empty_project_set_skips_the_query(source):
    with patch.object(mysql_connector.pd, "read_sql") as read_sql:
        df = source.fetch_issues(0, datetime(2024, 3, 10), ProjectSet(frozenset()), 100)

    assert df.empty
    read_sql.assert_not_called()


def test_unconnected_source_raises():
    with pytest.raises(SourceError):
        MySQLConnector(dict(SOURCE)).get_projects()
