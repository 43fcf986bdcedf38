"""
Processing Module
=================

Pure transformations of the Redmine export, independent of any database.

Components:
- changes: journal rows -> decoded, redacted, transport-encoded change events
- projects: include/exclude identifiers -> closed project id set
- reconstruct: live issue rows + journal -> as-created issue rows
- snapshots: warehouse issues + changes -> one row per issue per day
"""
