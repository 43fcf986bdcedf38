"""
Change Decoder
==============

Turns raw Redmine journal rows (journals LEFT JOIN journal_details) into
typed ChangeEvent records ready for the warehouse.

Decoding steps:
1. Map field-key aliases to canonical names (status_id -> status, the
   configured resolution custom field id -> resolution)
2. Resolve lookup-coded attribute values to labels (status name, user login...)
3. Redact free text (subject, description, attachments, notes)
4. Transport-encode every text value (base64); empty values become None
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .utils import REDACTED, encode_transport, is_missing, parse_date, parse_int, parse_timestamp

logger = logging.getLogger(__name__)

# Property categories of journal_details.property
ATTR = "attr"
CF = "cf"
ATTACHMENT = "attachment"

ATTRIBUTE_ALIASES = {
    "tracker_id": "tracker",
    "project_id": "project",
    "priority_id": "priority",
    "category_id": "category",
    "status_id": "status",
    "assigned_to_id": "assigned_to",
}

# Canonical field -> lookup table holding its labels
LOOKUP_FIELDS = {
    "tracker": "trackers",
    "project": "projects",
    "priority": "priorities",
    "category": "categories",
    "status": "statuses",
    "assigned_to": "users",
    "author": "users",
}

FREE_TEXT_ATTRIBUTES = {"subject", "description"}

RESOLUTION_FIELD = "resolution"

# Fields replayed by the reconstructor and the daily snapshots
TRACKED_FIELDS = [
    "tracker",
    "project",
    "priority",
    "category",
    "status",
    "resolution",
    "assigned_to",
    "due_date",
]


@dataclass(frozen=True)
class ChangeEvent:
    """One field-level edit. Text fields hold transport-encoded values."""
    id: int
    detail_id: int
    entity_id: int
    actor: Optional[str]
    occurred_on: datetime
    category: Optional[str]
    field_key: Optional[str]
    new_value: Optional[str]
    old_value: Optional[str]
    notes: Optional[str]

    @property
    def replay_key(self) -> Tuple[int, int]:
        return (self.id, self.detail_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "detail_id": self.detail_id,
            "issue_id": self.entity_id,
            "actor": self.actor,
            "occurred_on": self.occurred_on,
            "category": self.category,
            "field_key": self.field_key,
            "new_value": self.new_value,
            "old_value": self.old_value,
            "notes": self.notes,
        }


def _as_text(value: Any) -> Optional[str]:
    if is_missing(value):
        return None
    if isinstance(value, bytes):
        try:
            value = value.decode('utf-8')
        except UnicodeDecodeError:
            logger.debug(f"Replacing undecodable bytes in {value[:40]!r}")
            value = value.decode('utf-8', errors='replace')
    text = str(value)
    return text if text.strip() else None


class ChangeDecoder:
    """
    Decoder for raw journal rows.

    Lookup tables are loaded once per run by the source connector and keyed
    by table name ("statuses", "users", ...), each mapping integer id to label.
    """

    def __init__(
        self,
        lookups: Optional[Dict[str, Dict[int, str]]] = None,
        resolution_field_id: Optional[int] = None
    ):
        """
        Initialize decoder.

        Args:
            lookups: Dict of lookup table name -> {id: label}
            resolution_field_id: custom_fields.id of the resolution field, if any
        """
        self.lookups = lookups or {}
        self.resolution_field_id = resolution_field_id
        self.missing_lookups = 0

        if resolution_field_id is None:
            logger.warning("No resolution custom field configured; resolution will be absent")

    def canonical_key(self, category: Optional[str], key: Any) -> Optional[str]:
        """Map an internal property key to its canonical field name."""
        key = _as_text(key)
        if key is None:
            return None
        key = key.strip()
        if category == ATTR:
            return ATTRIBUTE_ALIASES.get(key, key)
        if category == CF and self.resolution_field_id is not None:
            if parse_int(key) == self.resolution_field_id:
                return RESOLUTION_FIELD
        return key

    def resolve_label(self, field: str, raw: Any) -> Optional[str]:
        """
        Resolve a raw column value to the text exported for `field`.

        Lookup-coded fields go through their lookup table; a dangling id
        resolves to None. Other fields are returned as text.
        """
        if field == "due_date" and isinstance(raw, (date, datetime)):
            return parse_date(raw).isoformat()

        table = LOOKUP_FIELDS.get(field)
        if table is None:
            return _as_text(raw)

        ref = parse_int(raw)
        if ref is None:
            return None

        label = self.lookups.get(table, {}).get(ref)
        if label is None:
            self.missing_lookups += 1
            logger.debug(f"Lookup {table}#{ref} not found for field {field}")
        return _as_text(label)

    def decode_value(self, category: Optional[str], field_key: Optional[str], raw: Any) -> Optional[str]:
        """Decode one old/new value to plain text (before transport encoding)."""
        if category == ATTACHMENT or (category == ATTR and field_key in FREE_TEXT_ATTRIBUTES):
            return None if is_missing(raw) else REDACTED
        if category == ATTR and field_key in LOOKUP_FIELDS:
            return self.resolve_label(field_key, raw)
        return _as_text(raw)

    def decode(self, record: Dict[str, Any]) -> ChangeEvent:
        """
        Decode a single raw change row.

        Args:
            record: Row with id, detail_id, issue_id, created_on, user_id,
                notes, property, prop_key, value, old_value

        Returns:
            ChangeEvent with transport-encoded text fields
        """
        category = _as_text(record.get("property"))
        field_key = self.canonical_key(category, record.get("prop_key"))

        new_value = self.decode_value(category, field_key, record.get("value"))
        old_value = self.decode_value(category, field_key, record.get("old_value"))
        notes = None if _as_text(record.get("notes")) is None else REDACTED

        return ChangeEvent(
            id=int(record["id"]),
            detail_id=parse_int(record.get("detail_id")) or 0,
            entity_id=int(record["issue_id"]),
            actor=encode_transport(self.resolve_label("author", record.get("user_id"))),
            occurred_on=parse_timestamp(record.get("created_on")),
            category=category,
            field_key=field_key,
            new_value=encode_transport(new_value),
            old_value=encode_transport(old_value),
            notes=encode_transport(notes),
        )

    def decode_all(self, records: Iterable[Dict[str, Any]]) -> List[ChangeEvent]:
        """Decode rows and return them in replay order."""
        events = [self.decode(r) for r in records]
        events.sort(key=lambda e: e.replay_key)
        return events

    def encode_live(self, field: str, raw: Any) -> Optional[str]:
        """Resolve and transport-encode a live issue column."""
        return encode_transport(self.resolve_label(field, raw))
