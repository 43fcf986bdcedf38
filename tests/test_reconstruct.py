from datetime import date, datetime

import pandas as pd

from processing.common_code.changes import ChangeDecoder
from processing.common_code.reconstruct import PointInTimeReconstructor, original_value
from processing.common_code.utils import decode_transport

from conftest import LOOKUPS, RESOLUTION_CF_ID, make_issue

T0 = datetime(2024, 3, 1, 9, 0)


def _change(journal_id, detail_id, prop_key, old, new, prop="attr", issue_id=1):
    return {
        "id": journal_id, "detail_id": detail_id, "issue_id": issue_id,
        "created_on": datetime(2024, 3, 2), "user_id": 1, "notes": None,
        "property": prop, "prop_key": prop_key, "value": new, "old_value": old,
    }


def _reconstruct(issue, records):
    decoder = ChangeDecoder(LOOKUPS, RESOLUTION_CF_ID)
    row = PointInTimeReconstructor(decoder).reconstruct(issue, decoder.decode_all(records))
    return {k: (decode_transport(v) if isinstance(v, str) else v) for k, v in row.items()}


def test_issue_closed_later_is_exported_as_open():
    issue = make_issue(1, T0, status_id=5)

    row = _reconstruct(issue, [_change(10, 100, "status_id", "1", "5")])

    assert row["status"] == "Open"


def test_first_change_supplies_the_original():
    issue = make_issue(1, T0, status_id=5)
    records = [
        _change(11, 110, "status_id", "2", "5"),
        _change(10, 100, "status_id", "1", "2"),
    ]

    row = _reconstruct(issue, records)

    assert row["status"] == "Open"


def test_untouched_fields_keep_live_values():
    issue = make_issue(1, T0, priority_id=5, assigned_to_id=2, due_date=date(2024, 4, 1))

    row = _reconstruct(issue, [_change(10, 100, "status_id", "1", "5")])

    assert row["tracker"] == "Bug"
    assert row["project"] == "Platform"
    assert row["priority"] == "High"
    assert row["assigned_to"] == "bob"
    assert row["author"] == "alice"
    assert row["due_date"] == "2024-04-01"
    assert row["category"] is None
    assert row["created_on"] == T0


def test_due_date_original_comes_from_journal():
    issue = make_issue(1, T0, due_date=date(2024, 5, 1))

    row = _reconstruct(issue, [_change(10, 100, "due_date", "2024-04-01", "2024-05-01")])

    assert row["due_date"] == "2024-04-01"


def test_due_date_added_later_was_absent_originally():
    issue = make_issue(1, T0, due_date=date(2024, 5, 1))

    row = _reconstruct(issue, [_change(10, 100, "due_date", None, "2024-05-01")])

    assert row["due_date"] is None


def test_resolution_needs_a_non_empty_old_value():
    issue = make_issue(1, T0)
    cf = str(RESOLUTION_CF_ID)

    set_once = _reconstruct(issue, [_change(10, 100, cf, None, "Fixed", prop="cf")])
    changed = _reconstruct(issue, [
        _change(10, 100, cf, None, "Fixed", prop="cf"),
        _change(11, 110, cf, "Fixed", "Won't fix", prop="cf"),
    ])

    assert set_once["resolution"] is None
    assert changed["resolution"] == "Fixed"


def test_original_value_ignores_other_categories():
    decoder = ChangeDecoder(LOOKUPS, RESOLUTION_CF_ID)
    events = decoder.decode_all([_change(10, 100, "status_id", "1", "5", prop="attachment")])

    assert original_value(events, "status_id", "live") == "live"


def test_reconstruct_all_orders_by_id_and_attaches_events():
    decoder = ChangeDecoder(LOOKUPS, RESOLUTION_CF_ID)
    issues = pd.DataFrame([make_issue(2, T0, status_id=5), make_issue(1, T0, status_id=5)])
    events = decoder.decode_all([_change(10, 100, "status_id", "1", "5", issue_id=2)])

    rows = PointInTimeReconstructor(decoder).reconstruct_all(issues, events)

    assert [r["id"] for r in rows] == [1, 2]
    assert decode_transport(rows[0]["status"]) == "Closed"
    assert decode_transport(rows[1]["status"]) == "Open"
