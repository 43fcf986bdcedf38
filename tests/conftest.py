from datetime import date
from pathlib import Path
import sys

import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ingestion.errors import SinkError
from ingestion.settings import RunConfig
from processing.common_code.changes import ATTR, CF, TRACKED_FIELDS
from processing.common_code.reconstruct import ISSUE_COLUMNS
from processing.common_code.snapshots import SNAPSHOT_COLUMNS
from processing.common_code.utils import decode_transport, parse_date

RESOLUTION_CF_ID = 7

LOOKUPS = {
    "trackers": {1: "Bug", 2: "Feature"},
    "projects": {1: "Platform", 2: "Platform API", 3: "Mobile"},
    "priorities": {3: "Low", 4: "Normal", 5: "High"},
    "categories": {10: "Backend"},
    "statuses": {1: "Open", 2: "In Progress", 5: "Closed"},
    "users": {1: "alice", 2: "bob"},
}

PROJECTS = [
    {"id": 1, "identifier": "platform", "parent_id": None, "name": "Platform"},
    {"id": 2, "identifier": "platform-api", "parent_id": 1, "name": "Platform API"},
    {"id": 3, "identifier": "mobile", "parent_id": None, "name": "Mobile"},
]

CHANGE_COLUMNS = [
    "id", "detail_id", "issue_id", "created_on", "user_id", "notes",
    "property", "prop_key", "value", "old_value",
]


def make_issue(issue_id, created_on, project_id=1, status_id=1, **fields):
    issue = {
        "id": issue_id,
        "tracker_id": 1,
        "project_id": project_id,
        "priority_id": 4,
        "category_id": None,
        "status_id": status_id,
        "assigned_to_id": None,
        "author_id": 1,
        "due_date": None,
        "created_on": created_on,
    }
    issue.update(fields)
    return issue


def make_journal(journal_id, issue_id, created_on, details=(), user_id=1, notes=None):
    """details: (detail_id, property, prop_key, old_value, value) tuples."""
    return {
        "id": journal_id,
        "issue_id": issue_id,
        "created_on": created_on,
        "user_id": user_id,
        "notes": notes,
        "details": list(details),
    }


class FakeSource:
    """In-memory Redmine with the MySQLConnector query surface."""

    def __init__(self, issues=None, journals=None, projects=None, lookups=None,
                 resolution_field_id=RESOLUTION_CF_ID):
        self.issues = list(issues or [])
        self.journals = list(journals or [])
        self.projects = list(PROJECTS if projects is None else projects)
        self.lookups = LOOKUPS if lookups is None else lookups
        self.resolution_field_id = resolution_field_id
        self.connected = False
        self.change_requests = []

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def get_row_count(self, table):
        return {"projects": len(self.projects), "issues": len(self.issues),
                "journals": len(self.journals),
                "journal_details": sum(len(j["details"]) for j in self.journals)}[table]

    def get_projects(self):
        return pd.DataFrame(self.projects)

    def get_lookup_tables(self):
        return self.lookups

    def get_custom_field_id(self, name):
        return self.resolution_field_id if name == "Resolution" else None

    def _project_of(self, issue_id):
        for issue in self.issues:
            if issue["id"] == issue_id:
                return issue["project_id"]
        return None

    def _rows(self, journals, attr_only=False):
        rows = []
        for j in journals:
            if not j["details"] and not attr_only:
                rows.append({"id": j["id"], "detail_id": None, "issue_id": j["issue_id"],
                             "created_on": j["created_on"], "user_id": j["user_id"], "notes": j["notes"],
                             "property": None, "prop_key": None, "value": None, "old_value": None})
            for detail_id, prop, key, old, new in j["details"]:
                if attr_only and prop not in (ATTR, CF):
                    continue
                rows.append({"id": j["id"], "detail_id": detail_id, "issue_id": j["issue_id"],
                             "created_on": j["created_on"], "user_id": j["user_id"], "notes": j["notes"],
                             "property": prop, "prop_key": key, "value": new, "old_value": old})
        rows.sort(key=lambda r: (r["id"], r["detail_id"] or 0))
        return pd.DataFrame(rows, columns=CHANGE_COLUMNS)

    def fetch_issues(self, after_id, before, project_set, limit):
        selected = sorted(
            (i for i in self.issues
             if i["id"] > after_id and i["created_on"] < before and project_set.contains(i["project_id"])),
            key=lambda i: i["id"]
        )[:limit]
        return pd.DataFrame(selected)

    def fetch_issue_changes(self, issue_ids):
        ids = set(issue_ids)
        return self._rows([j for j in self.journals if j["issue_id"] in ids], attr_only=True)

    def fetch_changes(self, after_id, before, project_set, limit):
        self.change_requests.append((after_id, limit))
        selected = sorted(
            (j for j in self.journals
             if j["id"] > after_id and j["created_on"] < before
             and project_set.contains(self._project_of(j["issue_id"]))),
            key=lambda j: j["id"]
        )[:limit]
        return self._rows(selected)


class FakeSink:
    """In-memory warehouse with the PostgresConnector surface."""

    def __init__(self, fail_on_write=None):
        self.tables = {"issues": {}, "issue_changes": {}, "issue_snapshots": {}}
        self.writes = []
        self.fail_on_write = fail_on_write
        self.connected = False
        self.schema_ready = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def ensure_schema(self):
        self.schema_ready = True

    def _write(self, table, rows, key):
        if self.fail_on_write is not None and len(self.writes) == self.fail_on_write:
            self.writes.append((table, None))
            raise SinkError(f"Insert into redmine.{table} failed: simulated")
        self.writes.append((table, len(rows)))
        for row in rows:
            self.tables[table].setdefault(key(row), row)
        return len(rows)

    def get_max_id(self, table):
        keys = self.tables[table].keys()
        return max((k[0] if isinstance(k, tuple) else k for k in keys), default=0)

    def get_row_count(self, table):
        return len(self.tables[table])

    def get_created_on_range(self):
        created = [r["created_on"] for r in self.tables["issues"].values()]
        return (min(created), max(created)) if created else (None, None)

    def get_last_snapshot_day(self):
        return max((k[1] for k in self.tables["issue_snapshots"]), default=None)

    def insert_issues(self, rows):
        decoded = []
        for row in rows:
            row = dict(row)
            for field in TRACKED_FIELDS + ["author"]:
                row[field] = decode_transport(row[field])
            row["due_date"] = parse_date(row["due_date"])
            decoded.append(row)
        return self._write("issues", decoded, lambda r: r["id"])

    def insert_changes(self, rows):
        decoded = []
        for row in rows:
            row = dict(row)
            for field in ("actor", "new_value", "old_value", "notes"):
                row[field] = decode_transport(row[field])
            decoded.append(row)
        return self._write("issue_changes", decoded, lambda r: (r["id"], r["detail_id"]))

    def insert_snapshots(self, df):
        rows = df.to_dict("records")
        return self._write("issue_snapshots", rows, lambda r: (r["issue_id"], r["day"]))

    def read_issues(self, created_before=None):
        rows = [r for r in self.tables["issues"].values()
                if created_before is None or r["created_on"] < created_before]
        return pd.DataFrame(sorted(rows, key=lambda r: r["id"]), columns=ISSUE_COLUMNS)

    def read_changes(self, occurred_before=None):
        columns = ["id", "detail_id", "issue_id", "occurred_on", "category", "field_key", "new_value"]
        rows = [
            {c: r[c] for c in columns} for r in self.tables["issue_changes"].values()
            if r["category"] in (ATTR, CF) and r["field_key"] in TRACKED_FIELDS
            and (occurred_before is None or r["occurred_on"] < occurred_before)
        ]
        rows.sort(key=lambda r: (r["id"], r["detail_id"]))
        return pd.DataFrame(rows, columns=columns)

    def snapshot_rows(self):
        rows = sorted(self.tables["issue_snapshots"].values(), key=lambda r: (r["day"], -r["issue_id"]))
        return pd.DataFrame(rows, columns=SNAPSHOT_COLUMNS)

    def writes_to(self, table):
        return [n for t, n in self.writes if t == table]


SETTINGS = {
    "source": {"connection": {"host": "redmine-db", "port": 3306, "database": "redmine",
                              "username": "redmine", "password": "secret"}},
    "target": {"connection": {"host": "dwh", "port": 5432, "database": "dwh",
                              "user": "dwh", "password": "secret"}},
    "task_settings": {"export": {}, "logging": {"level": "INFO"}, "metrics": {"backend": "memory"}},
}


def make_config(run_date=date(2024, 3, 10), **overrides):
    overrides["run_date"] = run_date
    return RunConfig.from_settings(SETTINGS, overrides, env={})
