from __future__ import annotations

import logging
import math
import time
from typing import Optional

import numpy as np
import pandas as pd
from fastapi import Depends, FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dashapi.schemas import ErrorResponse, MonthlyIndexResponse, MonthlySnapshotResponse
from dashcore.config import get_settings
from dashcore.monthly_index import (
    Cancelled,
    IndexOk,
    InvalidParams,
    TimedOut,
    run_monthly_index,
)
from dashcore.sheets import MonthlyTabSource, get_tab_source
from dashcore.snapshot import NotFound, SnapshotOk, run_monthly_snapshot


app = FastAPI(title="MEP Progress Dashboard API", version="0.1.0")
logger = logging.getLogger(__name__)

DURATION_HEADER = "x-duration-ms"

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[DURATION_HEADER],
)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _json(data: object, *, started: float, status_code: int = 200) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects and the elapsed-time header."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        ),
        headers={DURATION_HEADER: str(_elapsed_ms(started))},
    )


def _error(message: str, status_code: int, started: float) -> JSONResponse:
    return _json(ErrorResponse(error=message).model_dump(), started=started, status_code=status_code)


def _failure_response(outcome: object, route: str, started: float) -> JSONResponse:
    if isinstance(outcome, InvalidParams):
        return _error(outcome.message, 400, started)
    if isinstance(outcome, NotFound):
        return _error("Month not found", 404, started)
    if isinstance(outcome, TimedOut):
        logger.error("Timeout in %s: %s", route, outcome.error)
        return _error("Request timed out", 504, started)
    if isinstance(outcome, Cancelled):
        logger.warning("%s cancelled: %s", route, outcome.error)
        return _error("Internal server error", 500, started)
    error = getattr(outcome, "error", None)
    logger.error("%s failed", route, exc_info=error if isinstance(error, BaseException) else None)
    return _error("Internal server error", 500, started)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/monthly")
async def monthly_index(
    order: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    from_: Optional[str] = Query(default=None, alias="from"),
    to: Optional[str] = Query(default=None),
    source: MonthlyTabSource = Depends(get_tab_source),
):
    started = time.monotonic()
    raw = {"order": order, "limit": limit, "from": from_, "to": to}
    outcome = await run_monthly_index(raw, source, get_settings().sheets_timeout_ms)
    if isinstance(outcome, IndexOk):
        body = MonthlyIndexResponse.from_result(outcome.result).model_dump(by_alias=True, exclude_none=True)
        return _json(body, started=started)
    return _failure_response(outcome, "GET /monthly", started)


@app.get("/monthly/{year_month}")
async def monthly_snapshot(year_month: str, source: MonthlyTabSource = Depends(get_tab_source)):
    started = time.monotonic()
    outcome = await run_monthly_snapshot(year_month, source, get_settings().sheets_timeout_ms)
    if isinstance(outcome, SnapshotOk):
        body = MonthlySnapshotResponse.from_snapshot(outcome.snapshot).model_dump(by_alias=True)
        return _json(body, started=started)
    return _failure_response(outcome, f"GET /monthly/{year_month}", started)
