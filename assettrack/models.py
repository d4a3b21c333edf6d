from datetime import datetime, timezone

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CachedRecord(SQLModel, table=True):
    __tablename__ = "cached_record"

    # (collection, record_id) 唯一：同一条记录再写就是覆盖
    collection: str = Field(primary_key=True)   # assets / assignments / inspections
    record_id: str = Field(primary_key=True)

    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    cached_at: datetime = Field(default_factory=_utcnow)
