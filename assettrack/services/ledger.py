import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from assettrack.schemas import AssignmentCreate

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def row_time(row: dict, *fields: str) -> datetime:
    """取行里第一个有值的时间字段；没有或解析不了就当最早。"""
    for f in fields:
        v = row.get(f)
        if not v:
            continue
        if isinstance(v, datetime):
            dt = v
        else:
            try:
                dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
            except ValueError:
                continue
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return _EPOCH


def latest_first(rows: Iterable[dict], *fields: str) -> list[dict]:
    # sorted 是稳定排序，reverse=True 时同时间的行保持原顺序
    return sorted(rows, key=lambda r: row_time(r, *fields), reverse=True)


def build_assignment_row(asset_id: str, data: AssignmentCreate, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    row = data.to_row()
    row.update(
        {
            "id": new_id(),
            "assetId": asset_id,
            "outAt": iso(data.out_at or now),
            "inAt": None,
            "createdAt": iso(now),
            "updatedAt": iso(now),
        }
    )
    return row


def check_in_patch(now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    return {"inAt": iso(now), "updatedAt": iso(now)}


def entity_label(asset_id: str, label: Optional[str]) -> str:
    label = (label or "").strip()
    return label or f"Asset {asset_id}"
