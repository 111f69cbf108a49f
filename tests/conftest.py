"""Pytest configuration and fixtures."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from dashapi.main import app
from dashcore.months import MonthlyTabMeta
from dashcore.sheets import get_tab_source


def _make_tab(year_month, sheet_id=1, index=0, title=None):
    year, month = year_month.split("-")
    return MonthlyTabMeta(
        sheet_id=sheet_id,
        sheet_title=title or year_month,
        year_month=year_month,
        year=int(year),
        month=int(month),
        index=index,
    )


class FakeTabSource:
    """In-memory tab source that counts how often it is asked for data."""

    def __init__(self, tabs=None, rows=None, delay=0.0, error=None):
        self.tabs = list(tabs or [])
        self.rows = dict(rows or {})
        self.delay = delay
        self.error = error
        self.list_calls = 0
        self.row_calls = []

    async def list_monthly_tabs(self):
        self.list_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.tabs)

    async def get_sheet_rows(self, title):
        self.row_calls.append(title)
        return list(self.rows.get(title, []))


@pytest.fixture
def make_tab():
    return _make_tab


@pytest.fixture
def three_month_tabs():
    # Deliberately out of order, as the Sheets API may list them.
    return [
        _make_tab("2025-09", sheet_id=1, index=10),
        _make_tab("2025-10", sheet_id=2, index=11),
        _make_tab("2025-08", sheet_id=3, index=9),
    ]


@pytest.fixture
def fake_source(three_month_tabs):
    return FakeTabSource(three_month_tabs)


@pytest.fixture
def source_factory():
    return FakeTabSource


@pytest.fixture
def client(fake_source):
    app.dependency_overrides[get_tab_source] = lambda: fake_source
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def recorded_timers(monkeypatch):
    """Record every timer handle the deadline helpers schedule."""
    import dashcore.deadline as deadline_mod

    handles = []
    original = deadline_mod._schedule

    def _recording_schedule(loop, delay_ms, callback, *args):
        handle = original(loop, delay_ms, callback, *args)
        handles.append(handle)
        return handle

    monkeypatch.setattr(deadline_mod, "_schedule", _recording_schedule)
    return handles
