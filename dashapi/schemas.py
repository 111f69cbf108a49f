from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dashcore.monthly_index import MonthlyIndexResult
from dashcore.snapshot import MonthlySnapshot


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MonthlyTabMetaModel(CamelModel):
    sheet_id: int
    sheet_title: str
    year_month: str
    year: int
    month: int
    index: int


class MonthlyIndexResponse(CamelModel):
    months: List[str] = Field(default_factory=list)
    meta_by_month: Dict[str, MonthlyTabMetaModel] = Field(default_factory=dict)
    latest_month: Optional[str] = None

    @classmethod
    def from_result(cls, result: MonthlyIndexResult) -> "MonthlyIndexResponse":
        return cls(
            months=list(result.months),
            meta_by_month={ym: MonthlyTabMetaModel(**asdict(meta)) for ym, meta in result.meta_by_month.items()},
            latest_month=result.latest_month,
        )


class SnapshotSummaryModel(CamelModel):
    total_rows: int = 0
    avg_progress_pct: Optional[float] = None
    total_manpower: Optional[float] = None


class MonthlySnapshotModel(CamelModel):
    month: str
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    summary: SnapshotSummaryModel = Field(default_factory=SnapshotSummaryModel)


class MonthlySnapshotResponse(CamelModel):
    month: str
    snapshot: MonthlySnapshotModel

    @classmethod
    def from_snapshot(cls, snapshot: MonthlySnapshot) -> "MonthlySnapshotResponse":
        return cls(
            month=snapshot.month,
            snapshot=MonthlySnapshotModel(
                month=snapshot.month,
                rows=snapshot.rows,
                summary=SnapshotSummaryModel(**snapshot.summary),
            ),
        )


class ErrorResponse(BaseModel):
    error: str
