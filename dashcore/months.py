from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


logger = logging.getLogger(__name__)

# Fixed width and zero padded, so string order is calendar order.
YEAR_MONTH_RE = re.compile(r"\d{4}-(0[1-9]|1[0-2])", re.ASCII)

MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]
MONTH_LOOKUP: Dict[str, int] = {}
for _num, _name in enumerate(MONTH_NAMES, start=1):
    MONTH_LOOKUP[_name] = _num
    MONTH_LOOKUP[_name[:3]] = _num
MONTH_LOOKUP["sept"] = 9

_YEAR_FIRST = re.compile(r"^(\d{4})\s*[-/._]\s*(\d{1,2})\Z", re.ASCII)
_COMPACT = re.compile(r"^(\d{4})(\d{2})\Z", re.ASCII)
_MONTH_FIRST = re.compile(r"^(\d{1,2})\s*[-/._]\s*(\d{4})\Z", re.ASCII)
_NAME_YEAR = re.compile(r"^([A-Za-z]+)\.?[\s,\-]+(\d{4})\Z", re.ASCII)
_YEAR_NAME = re.compile(r"^(\d{4})[\s,\-]+([A-Za-z]+)\.?\Z", re.ASCII)

_TITLE_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"(?<!\d)(\d{4})\s*[-/._]\s*(\d{1,2})(?!\d)", re.ASCII), "ym"),
    (re.compile(r"(?<!\d)(\d{1,2})\s*[-/._]\s*(\d{4})(?!\d)", re.ASCII), "my"),
    (re.compile(r"\b([A-Za-z]{3,9})\.?[\s,\-]+(\d{4})(?!\d)", re.ASCII), "name_y"),
    (re.compile(r"(?<!\d)(\d{4})[\s,\-]+([A-Za-z]{3,9})\b", re.ASCII), "y_name"),
    (re.compile(r"(?<!\d)(\d{4})(\d{2})(?!\d)", re.ASCII), "ym"),
]


@dataclass(frozen=True)
class MonthlyTabMeta:
    sheet_id: int
    sheet_title: str
    year_month: str
    year: int
    month: int
    index: int


def is_year_month(value: object) -> bool:
    return isinstance(value, str) and YEAR_MONTH_RE.fullmatch(value) is not None


def split_year_month(year_month: str) -> Tuple[int, int]:
    """Split a canonical "YYYY-MM" into (year, month)."""
    if not is_year_month(year_month):
        raise ValueError(f"Not a YYYY-MM value: {year_month!r}")
    year, month = year_month.split("-")
    return int(year), int(month)


def _format(year: object, month: object) -> Optional[str]:
    try:
        y = int(year)  # type: ignore[arg-type]
        m = int(month)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not 1 <= m <= 12 or not 1000 <= y <= 9999:
        return None
    return f"{y:04d}-{m:02d}"


def _month_from_name(name: str) -> Optional[int]:
    return MONTH_LOOKUP.get(name.strip().lower())


def normalize_year_month(value: Optional[str]) -> Optional[str]:
    """Return the canonical "YYYY-MM" form of a month written in a common style, else None.

    Accepts 2025-09, 2025-9, 2025/09, 202509, 09/2025, Sep 2025 and September 2025.
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None

    match = _YEAR_FIRST.match(s) or _COMPACT.match(s)
    if match:
        return _format(match.group(1), match.group(2))
    match = _MONTH_FIRST.match(s)
    if match:
        return _format(match.group(2), match.group(1))
    match = _NAME_YEAR.match(s)
    if match:
        return _format(match.group(2), _month_from_name(match.group(1)))
    match = _YEAR_NAME.match(s)
    if match:
        return _format(match.group(1), _month_from_name(match.group(2)))
    return None


def extract_year_month_from_title(title: Optional[str]) -> Optional[str]:
    """Find the earliest recognisable month inside a free-text tab title."""
    if not title:
        return None
    candidates: List[Tuple[int, str]] = []
    for pattern, kind in _TITLE_PATTERNS:
        for match in pattern.finditer(title):
            a, b = match.group(1), match.group(2)
            if kind == "ym":
                ym = _format(a, b)
            elif kind == "my":
                ym = _format(b, a)
            elif kind == "name_y":
                ym = _format(b, _month_from_name(a))
            else:
                ym = _format(a, _month_from_name(b))
            if ym is not None:
                candidates.append((match.start(), ym))
    if not candidates:
        return None
    return min(candidates)[1]


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def tabs_from_sheet_meta(sheets: Iterable[Mapping[str, Any]]) -> List[MonthlyTabMeta]:
    """Turn raw sheet properties ({sheetId, title, index}) into monthly tabs.

    Titles without a month are skipped. When two tabs resolve to the same month the
    one titled exactly "YYYY-MM" wins, then the one further right (higher index).
    The result is sorted by month, oldest first.
    """
    chosen: Dict[str, MonthlyTabMeta] = {}
    for sheet in sheets:
        title = str(sheet.get("title") or "")
        year_month = extract_year_month_from_title(title)
        if year_month is None:
            continue
        year, month = split_year_month(year_month)
        tab = MonthlyTabMeta(
            sheet_id=_as_int(sheet.get("sheetId")),
            sheet_title=title,
            year_month=year_month,
            year=year,
            month=month,
            index=_as_int(sheet.get("index")),
        )
        current = chosen.get(year_month)
        if current is None:
            chosen[year_month] = tab
            continue
        if _preference(tab) > _preference(current):
            kept, dropped = tab, current
        else:
            kept, dropped = current, tab
        chosen[year_month] = kept
        logger.warning(
            "Duplicate monthly tab for %s: keeping %r (index %s), ignoring %r (index %s)",
            year_month, kept.sheet_title, kept.index, dropped.sheet_title, dropped.index,
        )
    return [chosen[ym] for ym in sorted(chosen)]


def _preference(tab: MonthlyTabMeta) -> Tuple[bool, int]:
    return (tab.sheet_title.strip() == tab.year_month, tab.index)
