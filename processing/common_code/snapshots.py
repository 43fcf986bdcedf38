"""
Daily Snapshot Materializer
===========================

Derives one row per issue per calendar day from the warehouse's own
issues and issue_changes tables.

Core Logic:
1. Window: start at the day after the last materialized day, cover at most
   max_days days, never go past yesterday (today is not a completed day)
2. Grid: every day from max(start, created_on day) to the window end
3. Forward-fill, independently per tracked field: a day takes the new_value
   of the replay-latest change (highest id, detail_id) that happened on or
   before that day; without one, the issue's original value
4. updated_on: latest occurred_on among the changes used for that day,
   else created_on
5. Order rows by day ascending, then issue id descending
"""

import logging
from datetime import date, timedelta
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from .changes import ATTR, CF, TRACKED_FIELDS
from .utils import parse_date

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = ["issue_id", "day"] + TRACKED_FIELDS + ["created_on", "updated_on"]


def snapshot_window(
    last_day: Optional[date],
    first_created: Optional[date],
    max_days: int,
    run_date: date
) -> Optional[Tuple[date, date]]:
    """
    Compute the next window to materialize.

    Args:
        last_day: Last day already materialized (None if nothing yet)
        first_created: Earliest issue created_on day in the warehouse
        max_days: Maximum number of days per run
        run_date: Day the run happens; its previous day is the upper bound

    Returns:
        (start, end) inclusive, or None when there is nothing to do
    """
    start = last_day + timedelta(days=1) if last_day else first_created
    if start is None or max_days < 1:
        return None

    yesterday = run_date - timedelta(days=1)
    end = min(start + timedelta(days=max_days - 1), yesterday)
    if end < start:
        return None
    return start, end


def _empty_snapshots() -> pd.DataFrame:
    return pd.DataFrame(columns=SNAPSHOT_COLUMNS)


def _latest_change_per_day(grid: pd.DataFrame, events: pd.DataFrame) -> pd.Series:
    """
    For each grid row, the replay sequence number of the latest event on
    or before that day (NaN when there is none).
    """
    if events.empty:
        return pd.Series(np.nan, index=grid.index)

    per_day = events.groupby(["issue_id", "day"], as_index=False)["seq"].max()
    per_day = per_day.sort_values(["issue_id", "day"])
    # a later day must not fall back to an older event because of clock skew
    per_day["seq"] = per_day.groupby("issue_id")["seq"].cummax()
    per_day["is_grid"] = False
    per_day["row"] = -1

    cells = grid[["issue_id", "day"]].copy()
    cells["seq"] = np.nan
    cells["is_grid"] = True
    cells["row"] = grid.index

    combined = pd.concat([per_day, cells], ignore_index=True)
    # event rows sort before grid rows of the same day so they count for it
    combined = combined.sort_values(["issue_id", "day", "is_grid"]).reset_index(drop=True)
    combined["seq"] = combined.groupby("issue_id")["seq"].ffill()

    selected = combined[combined["is_grid"]].set_index("row")["seq"]
    return selected.reindex(grid.index)


class DailySnapshotMaterializer:
    """Builds daily snapshot rows for a window of days."""

    def __init__(self, max_days: int, run_date: date):
        self.max_days = max_days
        self.run_date = run_date

    def window(self, last_day: Optional[date], first_created: Optional[date]) -> Optional[Tuple[date, date]]:
        return snapshot_window(last_day, first_created, self.max_days, self.run_date)

    def materialize(
        self,
        issues: pd.DataFrame,
        changes: pd.DataFrame,
        start: date,
        end: date
    ) -> pd.DataFrame:
        """
        Materialize snapshot rows for [start, end].

        Args:
            issues: Warehouse issues (id, tracked fields with original values, created_on)
            changes: Warehouse changes (id, detail_id, issue_id, occurred_on,
                category, field_key, new_value)
            start: First day to materialize
            end: Last day to materialize (callers bound it by yesterday)

        Returns:
            DataFrame with SNAPSHOT_COLUMNS, ordered by day asc, issue_id desc
        """
        yesterday = self.run_date - timedelta(days=1)
        end = min(end, yesterday)
        if issues.empty or end < start:
            return _empty_snapshots()

        start_ts = pd.Timestamp(start)
        end_ts = pd.Timestamp(end)

        issues = issues.copy()
        issues["id"] = issues["id"].astype("int64")
        issues["created_on"] = pd.to_datetime(issues["created_on"])
        issues = issues[issues["created_on"].dt.normalize() <= end_ts]
        if issues.empty:
            return _empty_snapshots()
        issues = issues.set_index("id")

        first_days = issues["created_on"].dt.normalize().clip(lower=start_ts)
        grid = pd.concat(
            [
                pd.DataFrame({"issue_id": issue_id, "day": pd.date_range(first, end_ts, freq="D")})
                for issue_id, first in first_days.items()
            ],
            ignore_index=True,
        )
        grid["issue_id"] = grid["issue_id"].astype("int64")
        grid = grid.sort_values(["issue_id", "day"]).reset_index(drop=True)

        events = changes.copy() if changes is not None else pd.DataFrame()
        if events.empty:
            events = pd.DataFrame(columns=["id", "detail_id", "issue_id", "occurred_on",
                                           "category", "field_key", "new_value"])
        events = events[events["category"].isin([ATTR, CF]) & events["field_key"].isin(TRACKED_FIELDS)]
        events = events[events["issue_id"].isin(issues.index)].copy()
        events["occurred_on"] = pd.to_datetime(events["occurred_on"])
        events["day"] = events["occurred_on"].dt.normalize()
        events = events[events["day"] <= end_ts].copy()
        events["detail_id"] = events["detail_id"].fillna(0)
        events = events.sort_values(["id", "detail_id"]).reset_index(drop=True)
        events["seq"] = np.arange(len(events))
        events["issue_id"] = events["issue_id"].astype("int64")
        by_seq = events.set_index("seq")

        result = grid.copy()
        used_at = pd.DataFrame(index=grid.index)

        for field in TRACKED_FIELDS:
            selected = _latest_change_per_day(grid, events[events["field_key"] == field])
            has_change = selected.notna()
            picked = selected[has_change].astype("int64").values

            values = pd.Series(None, index=grid.index, dtype=object)
            values[has_change] = by_seq.loc[picked, "new_value"].values
            original = grid["issue_id"].map(issues[field]) if field in issues.columns \
                else pd.Series(None, index=grid.index, dtype=object)
            result[field] = values.where(has_change, original)

            occurred = pd.Series(pd.NaT, index=grid.index, dtype=events["occurred_on"].dtype)
            occurred[has_change] = by_seq.loc[picked, "occurred_on"].values
            used_at[field] = occurred

        created_on = grid["issue_id"].map(issues["created_on"])
        result["created_on"] = created_on
        result["updated_on"] = used_at.max(axis=1).fillna(created_on)
        result["due_date"] = result["due_date"].map(parse_date)
        for field in TRACKED_FIELDS:
            column = result[field].astype(object)
            result[field] = column.where(column.notna(), None)

        result = result.sort_values(["day", "issue_id"], ascending=[True, False]).reset_index(drop=True)
        result["day"] = result["day"].dt.date

        logger.info(
            f"  Materialized {len(result)} snapshot rows for {result['issue_id'].nunique()} issues "
            f"({start} .. {end})"
        )
        return result[SNAPSHOT_COLUMNS]
