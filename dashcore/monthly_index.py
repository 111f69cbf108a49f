from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Union

from dashcore.deadline import DeadlineError, is_cancel_error, is_timeout_error, race_with_deadline
from dashcore.months import MonthlyTabMeta, is_year_month

if TYPE_CHECKING:
    from dashcore.sheets import MonthlyTabSource


logger = logging.getLogger(__name__)

ORDERS = ("asc", "desc")
DEFAULT_ORDER = "desc"
DEFAULT_LIMIT = 12
MIN_LIMIT = 1
MAX_LIMIT = 100

_INT_RE = re.compile(r"[+-]?\d+", re.ASCII)


class ParamValidationError(ValueError):
    """A query parameter is structurally invalid."""

    def __init__(self, param: str, message: str) -> None:
        super().__init__(message)
        self.param = param
        self.message = message


class DuplicateMonthError(RuntimeError):
    """The upstream source listed the same month under more than one tab."""

    def __init__(self, year_month: str, tabs: List[MonthlyTabMeta]) -> None:
        titles = ", ".join(repr(t.sheet_title) for t in tabs)
        super().__init__(f"Month {year_month} appears in more than one tab: {titles}")
        self.year_month = year_month
        self.tabs = tabs


@dataclass(frozen=True)
class IndexParams:
    order: str = DEFAULT_ORDER
    limit: int = DEFAULT_LIMIT
    from_month: Optional[str] = None
    to_month: Optional[str] = None


@dataclass(frozen=True)
class MonthlyIndexResult:
    months: List[str] = field(default_factory=list)
    meta_by_month: Dict[str, MonthlyTabMeta] = field(default_factory=dict)
    latest_month: Optional[str] = None


# Tagged outcomes; the HTTP layer maps each one to exactly one response.
@dataclass(frozen=True)
class IndexOk:
    result: MonthlyIndexResult


@dataclass(frozen=True)
class InvalidParams:
    param: str
    message: str


@dataclass(frozen=True)
class TimedOut:
    error: BaseException


@dataclass(frozen=True)
class Cancelled:
    error: BaseException


@dataclass(frozen=True)
class UpstreamFailed:
    error: BaseException


IndexOutcome = Union[IndexOk, InvalidParams, TimedOut, Cancelled, UpstreamFailed]


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _parse_limit(raw: Optional[str]) -> int:
    text = str(DEFAULT_LIMIT) if _blank(raw) else str(raw).strip()
    if not _INT_RE.fullmatch(text):
        raise ParamValidationError("limit", f"Invalid limit: must be {MIN_LIMIT}-{MAX_LIMIT}")
    limit = int(text)
    if limit < MIN_LIMIT or limit > MAX_LIMIT:
        raise ParamValidationError("limit", f"Invalid limit: must be {MIN_LIMIT}-{MAX_LIMIT}")
    return limit


def _parse_bound(raw: Optional[str], name: str) -> Optional[str]:
    if _blank(raw):
        return None
    text = str(raw).strip()
    if not is_year_month(text):
        raise ParamValidationError(name, f"Invalid {name}: must be YYYY-MM")
    return text


def parse_index_params(raw: Mapping[str, Optional[str]]) -> IndexParams:
    """Validate raw query values; raises ParamValidationError naming the bad parameter."""
    limit = _parse_limit(raw.get("limit"))

    order = DEFAULT_ORDER if _blank(raw.get("order")) else str(raw.get("order"))
    if order not in ORDERS:
        raise ParamValidationError("order", 'Invalid order: must be "asc" or "desc"')

    from_month = _parse_bound(raw.get("from"), "from")
    to_month = _parse_bound(raw.get("to"), "to")
    return IndexParams(order=order, limit=limit, from_month=from_month, to_month=to_month)


def _check_unique(tabs: List[MonthlyTabMeta]) -> None:
    by_month: Dict[str, List[MonthlyTabMeta]] = {}
    for tab in tabs:
        by_month.setdefault(tab.year_month, []).append(tab)
    for year_month, group in by_month.items():
        if len(group) > 1:
            raise DuplicateMonthError(year_month, group)


def build_monthly_index(tabs: Iterable[MonthlyTabMeta], params: IndexParams) -> MonthlyIndexResult:
    valid: List[MonthlyTabMeta] = []
    for tab in tabs:
        if not is_year_month(tab.year_month):
            logger.warning("Skipping tab %r with malformed month %r", tab.sheet_title, tab.year_month)
            continue
        valid.append(tab)
    _check_unique(valid)

    filtered = [
        t for t in valid
        if (params.from_month is None or t.year_month >= params.from_month)
        and (params.to_month is None or t.year_month <= params.to_month)
    ]
    filtered.sort(key=lambda t: t.year_month, reverse=params.order == "desc")
    kept = filtered[: params.limit]

    months = [t.year_month for t in kept]
    meta_by_month = {t.year_month: t for t in kept}
    latest_month = max(months) if months else None
    return MonthlyIndexResult(months=months, meta_by_month=meta_by_month, latest_month=latest_month)


async def load_monthly_index(source: "MonthlyTabSource", params: IndexParams) -> MonthlyIndexResult:
    tabs = await source.list_monthly_tabs()
    return build_monthly_index(tabs, params)


def classify_failure(exc: BaseException) -> IndexOutcome:
    if isinstance(exc, DeadlineError) or is_timeout_error(exc):
        return TimedOut(exc)
    if is_cancel_error(exc):
        return Cancelled(exc)
    return UpstreamFailed(exc)


async def run_monthly_index(
    raw_params: Mapping[str, Optional[str]],
    source: "MonthlyTabSource",
    budget_ms: int,
) -> IndexOutcome:
    try:
        params = parse_index_params(raw_params)
    except ParamValidationError as exc:
        return InvalidParams(exc.param, exc.message)

    try:
        result = await race_with_deadline(lambda: load_monthly_index(source, params), budget_ms, "GET /monthly")
    except Exception as exc:
        return classify_failure(exc)
    return IndexOk(result)
