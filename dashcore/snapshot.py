from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from dashcore.deadline import race_with_deadline
from dashcore.monthly_index import (
    Cancelled,
    InvalidParams,
    TimedOut,
    UpstreamFailed,
    classify_failure,
)
from dashcore.months import is_year_month

if TYPE_CHECKING:
    from dashcore.sheets import MonthlyTabSource


logger = logging.getLogger(__name__)

MECHANICAL_PLAN_COLUMNS = {
    "Snapshot Date": "SnapshotDate",
    "SnapshotDate": "SnapshotDate",
    "Data Source": "DataSource",
    "DataSource": "DataSource",
    "Area/Building": "AreaOrBuilding",
    "Area / Building": "AreaOrBuilding",
    "AreaOrBuilding": "AreaOrBuilding",
    "Mechanical Activity": "MechanicalActivity",
    "Mechanical Activity/System": "MechanicalActivity",
    "MechanicalActivity": "MechanicalActivity",
    "Original Duration": "OriginalDuration",
    "Original Duration (Days)": "OriginalDuration",
    "Planned Duration": "OriginalDuration",
    "OriginalDuration": "OriginalDuration",
    "Progress %": "CurrentProgressPct",
    "Progress": "CurrentProgressPct",
    "Current Progress %": "CurrentProgressPct",
    "Current Progress (%)": "CurrentProgressPct",
    "CurrentProgressPct": "CurrentProgressPct",
    "Manpower Total": "ManpowerTotal",
    "Total Manpower": "ManpowerTotal",
    "ManpowerTotal": "ManpowerTotal",
    "Remarks": "Remarks",
    "Remarks/Justification": "Remarks",
}

NUMERIC_COLUMNS = ["OriginalDuration", "CurrentProgressPct", "ManpowerTotal"]
NULL_TOKENS = {"", "-", "n/a", "na", "tbd", "nan", "none"}


class MonthNotFoundError(LookupError):
    def __init__(self, year_month: str) -> None:
        super().__init__(f"Month {year_month} not found")
        self.year_month = year_month


@dataclass(frozen=True)
class MonthlySnapshot:
    month: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SnapshotOk:
    snapshot: MonthlySnapshot


@dataclass(frozen=True)
class NotFound:
    year_month: str


SnapshotOutcome = Union[SnapshotOk, NotFound, InvalidParams, TimedOut, Cancelled, UpstreamFailed]


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    s = str(value).strip()
    if s.lower() in NULL_TOKENS:
        return None
    s = s.replace("%", "").replace("days", "").replace(",", "").strip()
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None


def clean_mechanical_plan_rows(rows: Iterable[Dict[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(rows))
    if df.empty:
        return df
    df.columns = [str(c).strip() for c in df.columns]
    renames = {c: MECHANICAL_PLAN_COLUMNS[c] for c in df.columns if c in MECHANICAL_PLAN_COLUMNS}
    # Keep the first column that maps to each canonical name.
    seen: Dict[str, str] = {}
    for original, target in renames.items():
        seen.setdefault(target, original)
    df = df.rename(columns={original: target for target, original in seen.items()})
    df = df.loc[:, ~df.columns.duplicated()]
    for col in NUMERIC_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col].map(_to_number), errors="coerce")
    return df


def _column_mean(df: pd.DataFrame, col: str) -> Optional[float]:
    if col not in df.columns:
        return None
    values = df[col].dropna()
    if values.empty:
        return None
    return float(values.mean())


def _column_sum(df: pd.DataFrame, col: str) -> Optional[float]:
    if col not in df.columns:
        return None
    values = df[col].dropna()
    if values.empty:
        return None
    return float(values.sum())


def summarize_snapshot(df: pd.DataFrame) -> Dict[str, Any]:
    return {
        "total_rows": int(len(df)),
        "avg_progress_pct": _column_mean(df, "CurrentProgressPct"),
        "total_manpower": _column_sum(df, "ManpowerTotal"),
    }


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    return df.astype(object).where(pd.notna(df), None).to_dict(orient="records")


async def load_monthly_snapshot(source: "MonthlyTabSource", year_month: str) -> MonthlySnapshot:
    tabs = await source.list_monthly_tabs()
    tab = next((t for t in tabs if t.year_month == year_month), None)
    if tab is None:
        logger.info("No monthly tab for %s among %d tabs", year_month, len(tabs))
        raise MonthNotFoundError(year_month)
    raw_rows = await source.get_sheet_rows(tab.sheet_title)
    df = clean_mechanical_plan_rows(raw_rows)
    return MonthlySnapshot(month=year_month, rows=_records(df), summary=summarize_snapshot(df))


async def run_monthly_snapshot(year_month: str, source: "MonthlyTabSource", budget_ms: int) -> SnapshotOutcome:
    if not is_year_month(year_month):
        return InvalidParams("yearMonth", "Invalid yearMonth: must be YYYY-MM")
    try:
        snapshot = await race_with_deadline(
            lambda: load_monthly_snapshot(source, year_month),
            budget_ms,
            f"GET /monthly/{year_month}",
        )
    except MonthNotFoundError:
        return NotFound(year_month)
    except Exception as exc:
        return classify_failure(exc)
    return SnapshotOk(snapshot)
