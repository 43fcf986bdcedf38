"""
High-Water-Mark Cursor
======================

Per-stream cursor derived from the warehouse itself: the cursor of a stream
is MAX(id) of the rows already committed to its sink table.

Nothing is persisted besides the exported rows, so the cursor cannot drift
from committed data. A failed batch rolls back, the next run derives the
same cursor and extracts the same range again.
"""

import logging
from typing import Dict

logger = logging.getLogger(__name__)

ISSUES = "issues"
CHANGES = "changes"

# Stream -> warehouse table
STREAM_TABLES = {
    ISSUES: "issues",
    CHANGES: "issue_changes",
}


class HighWaterMarkCursor:
    """Reads stream cursors from a sink connector exposing get_max_id(table)."""

    def __init__(self, sink):
        self.sink = sink
        self.history: Dict[str, list] = {}

    def get(self, stream: str) -> int:
        """
        Current cursor for `stream`.

        Returns:
            Max committed id, 0 when the stream is empty
        """
        if stream not in STREAM_TABLES:
            raise KeyError(f"Unknown stream: {stream}")

        value = self.sink.get_max_id(STREAM_TABLES[stream]) or 0
        value = int(value)

        seen = self.history.setdefault(stream, [])
        if seen and value < seen[-1]:
            logger.warning(f"Cursor for {stream} moved backwards: {seen[-1]} -> {value}")
        seen.append(value)

        logger.debug(f"Cursor {stream} = {value}")
        return value
