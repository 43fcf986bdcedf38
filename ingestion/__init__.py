"""
Redmine Export Engine
=====================

Incremental export of Redmine issues and their journal into a PostgreSQL
warehouse:
- Issues: as originally created, gated by a MAX(id) cursor
- Changes: field-level journal entries, exported in chunks
- Snapshots: one row per issue per completed day, derived in the warehouse

The cursor lives in the warehouse itself; re-running after a failure picks
up exactly where the last committed batch ended.
"""

__version__ = "1.0.0"
