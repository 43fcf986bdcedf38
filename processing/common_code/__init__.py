"""
Common Code Module
==================

Decoding, reconstruction and snapshot logic shared by the export engine.
"""

from .changes import ChangeDecoder, ChangeEvent, TRACKED_FIELDS
from .projects import ProjectSet, ProjectSetResolver
from .reconstruct import PointInTimeReconstructor
from .snapshots import DailySnapshotMaterializer, snapshot_window
from .utils import (
    parse_timestamp,
    encode_transport,
    decode_transport
)

__all__ = [
    "ChangeDecoder",
    "ChangeEvent",
    "TRACKED_FIELDS",
    "ProjectSet",
    "ProjectSetResolver",
    "PointInTimeReconstructor",
    "DailySnapshotMaterializer",
    "snapshot_window",
    "parse_timestamp",
    "encode_transport",
    "decode_transport"
]
