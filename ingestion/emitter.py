"""
Batch Emitter
=============

Moves extracted rows into the warehouse in bounded batches.

Core Logic:
1. Read the stream cursor from the sink (MAX(id) already committed)
2. Extract the next chunk after the cursor, at most min(batch_size, remaining cap)
3. Write the chunk in one transaction, then re-read the cursor
4. Stop when a chunk is shorter than its limit, the per-run cap is spent,
   or an extraction comes back empty
5. A stream with nothing pending still gets one empty write so every run
   leaves the same trace in the sink, whether it moved rows or not

Chunk size is measured in distinct ids: a change chunk of N journals holds
every detail row of those journals, so a journal is never split in two.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List

from .cursor import HighWaterMarkCursor

logger = logging.getLogger(__name__)

Rows = List[Dict[str, Any]]
Extractor = Callable[[int, int], Rows]
Writer = Callable[[Rows], int]


def count_units(rows: Rows) -> int:
    """Number of distinct ids in a chunk."""
    return len({row["id"] for row in rows})


class BatchEmitter:
    """
    Chunked, cursor-driven writer for one stream at a time.

    Extractors receive (after_id, limit) and return rows with an "id" key.
    Writers receive the rows and commit them atomically, returning the
    number of rows written.
    """

    def __init__(self, cursor: HighWaterMarkCursor, metrics=None):
        """
        Initialize emitter.

        Args:
            cursor: Cursor reading committed high-water marks from the sink
            metrics: Optional MetricsCollector
        """
        self.cursor = cursor
        self.metrics = metrics

    def emit(
        self,
        stream: str,
        extract: Extractor,
        write: Writer,
        batch_size: int,
        cap: int
    ) -> Dict:
        """
        Export everything pending for `stream`, up to `cap` ids.

        Args:
            stream: Stream name (issues, changes)
            extract: Callable (after_id, limit) -> rows
            write: Callable (rows) -> rows written
            batch_size: Ids per chunk
            cap: Ids per run

        Returns:
            Result dictionary with cursors, row counts and batch sizes
        """
        if batch_size < 1 or cap < 0:
            raise ValueError(f"Invalid batch_size={batch_size} / cap={cap} for {stream}")

        previous = self.cursor.get(stream)

        result = {
            "stream": stream,
            "status": "pending",
            "rows_extracted": 0,
            "rows_loaded": 0,
            "batches": [],
            "previous_cursor": previous,
            "new_cursor": previous,
            "drained": False,
            "start_time": datetime.now().isoformat(),
            "end_time": None,
            "error": None
        }

        current = previous
        emitted = 0
        wrote = False
        drained = False

        while emitted < cap:
            limit = min(batch_size, cap - emitted)
            logger.info(f"  [{stream}] extracting after id {current} (limit {limit})")

            rows = extract(current, limit)
            if not rows:
                logger.info(f"  [{stream}] nothing pending after id {current}")
                drained = True
                break

            units = count_units(rows)
            written = write(rows)
            wrote = True

            result["rows_extracted"] += len(rows)
            result["rows_loaded"] += written
            result["batches"].append(len(rows))
            emitted += units
            self._record_batch(stream, written)

            latest = self.cursor.get(stream)
            logger.info(f"  [{stream}] batch of {len(rows)} rows committed, cursor {current} -> {latest}")
            if latest <= current:
                logger.warning(f"  [{stream}] cursor did not advance past {current}; stopping")
                current = latest
                break
            current = latest

            if units < limit:
                drained = True
                break

        if not wrote:
            write([])
            result["batches"].append(0)
            self._record_batch(stream, 0)
            logger.info(f"  [{stream}] empty batch committed")

        result["new_cursor"] = current
        result["drained"] = drained
        result["status"] = "success"
        result["end_time"] = datetime.now().isoformat()

        if self.metrics:
            self.metrics.record_gauge("export_cursor", current, {"stream": stream})

        logger.info(
            f"  ✓ [{stream}] {result['rows_loaded']} rows in {len(result['batches'])} batches "
            f"(cursor {previous} -> {current})"
        )
        return result

    def emit_batch(self, stream: str, extract: Extractor, write: Writer, limit: int) -> Dict:
        """Export at most `limit` ids of `stream` as a single batch."""
        return self.emit(stream, extract, write, batch_size=max(limit, 1), cap=limit)

    def _record_batch(self, stream: str, rows: int):
        if not self.metrics:
            return
        self.metrics.record_counter("export_batches_total", 1, {"stream": stream})
        if rows:
            self.metrics.record_counter("export_rows_total", rows, {"stream": stream})
