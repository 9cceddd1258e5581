from __future__ import annotations

from datetime import UTC, datetime
from typing import Optional

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ApiUsageStat(SQLModel, table=True):
    """Running request count per imagery provider."""

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(index=True, unique=True)
    request_count: int = Field(default=0)
    last_used_at: Optional[datetime] = Field(default=None)


class ExportRecord(SQLModel, table=True):
    """One completed acquisition and the files it produced."""

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(index=True)
    date: str
    zoom: int
    south: float
    west: float
    north: float
    east: float
    output_path: str
    tiles_total: int = Field(default=0)
    tiles_failed: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
