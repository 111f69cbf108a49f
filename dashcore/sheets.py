from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx

from dashcore.config import DEFAULT_SHEETS_API_BASE, SHEETS_TIMEOUT_MS, get_settings
from dashcore.deadline import CancelSignal, OperationCancelled, fetch_with_deadline
from dashcore.months import MonthlyTabMeta, tabs_from_sheet_meta


logger = logging.getLogger(__name__)

SHEET_PROPERTIES_FIELDS = "sheets.properties(sheetId,title,index)"
VALUES_COLUMNS = "A:Z"


class MonthlyTabSource(Protocol):
    async def list_monthly_tabs(self) -> List[MonthlyTabMeta]:
        ...

    async def get_sheet_rows(self, title: str) -> List[Dict[str, str]]:
        ...


class SheetsSourceError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def rows_from_values(values: List[List[Any]]) -> List[Dict[str, str]]:
    """Convert a Sheets value grid into records keyed by the header row."""
    if not values:
        return []
    headers = [str(h).strip() for h in values[0]]
    rows: List[Dict[str, str]] = []
    for raw in values[1:]:
        cells = list(raw) + [""] * (len(headers) - len(raw))
        rows.append({header: ("" if cells[i] is None else str(cells[i])) for i, header in enumerate(headers) if header})
    return rows


def _a1_range(title: str) -> str:
    escaped = title.replace("'", "''")
    return f"'{escaped}'!{VALUES_COLUMNS}"


class SheetsApiSource:
    """Monthly tab source backed by the Google Sheets v4 REST API (API-key access)."""

    def __init__(
        self,
        spreadsheet_id: str,
        api_key: str,
        *,
        base_url: str = DEFAULT_SHEETS_API_BASE,
        client: Optional[httpx.AsyncClient] = None,
        signal: Optional[CancelSignal] = None,
        timeout_ms: int = SHEETS_TIMEOUT_MS,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.signal = signal
        self.timeout_ms = timeout_ms

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        if not self.spreadsheet_id:
            raise SheetsSourceError("No spreadsheet configured (SHEET_ID is empty)")
        url = f"{self.base_url}/spreadsheets/{quote(self.spreadsheet_id, safe='')}{path}"
        query = dict(params or {})
        if self.api_key:
            query["key"] = self.api_key

        response = await fetch_with_deadline(
            url,
            budget_ms=self.timeout_ms,
            signal=self.signal,
            client=self.client,
            params=query,
        )
        if response.status_code >= 400:
            logger.warning("Sheets API returned %s for %s", response.status_code, path or "/")
            raise SheetsSourceError(
                f"Sheets API returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise SheetsSourceError("Sheets API returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise SheetsSourceError("Sheets API returned an unexpected payload")
        return data

    async def list_sheets_with_meta(self) -> List[Dict[str, Any]]:
        data = await self._get_json("", {"fields": SHEET_PROPERTIES_FIELDS})
        return [sheet.get("properties") or {} for sheet in data.get("sheets") or []]

    async def list_monthly_tabs(self) -> List[MonthlyTabMeta]:
        return tabs_from_sheet_meta(await self.list_sheets_with_meta())

    async def get_sheet_rows(self, title: str) -> List[Dict[str, str]]:
        data = await self._get_json(f"/values/{quote(_a1_range(title), safe='')}")
        return rows_from_values(data.get("values") or [])


async def get_tab_source() -> AsyncIterator[SheetsApiSource]:
    """FastAPI dependency: one source and HTTP client per request.

    The source's signal fires when the request is finished, so fetches left behind
    by a lost deadline race stop instead of running on.
    """
    settings = get_settings()
    signal = CancelSignal()
    async with httpx.AsyncClient(timeout=None) as client:
        try:
            yield SheetsApiSource(
                settings.sheet_id,
                settings.google_api_key,
                base_url=settings.sheets_api_base,
                client=client,
                signal=signal,
                timeout_ms=settings.fetch_timeout_ms,
            )
        finally:
            signal.abort(OperationCancelled("Request finished"))
