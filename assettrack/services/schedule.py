from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from assettrack.schemas import Asset, Inspection

OVERDUE = "overdue"
UPCOMING = "upcoming"
COMPLETED = "completed"

DUE_SOON = "due_soon"
CURRENT = "current"

DUE_SOON_DAYS = 7


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def classify_inspection(inspection: Inspection, now: Optional[datetime] = None) -> str:
    # 没有下次到期时间 = 已完成，不再跟进
    if inspection.next_due is None:
        return COMPLETED
    if inspection.next_due < _now(now):
        return OVERDUE
    return UPCOMING


def bucket_inspections(
    inspections: Iterable[Inspection], now: Optional[datetime] = None
) -> dict[str, list[Inspection]]:
    now = _now(now)
    buckets: dict[str, list[Inspection]] = {OVERDUE: [], UPCOMING: [], COMPLETED: []}
    for item in inspections:
        buckets[classify_inspection(item, now)].append(item)

    far = datetime.max.replace(tzinfo=timezone.utc)
    for key in (OVERDUE, UPCOMING):
        buckets[key].sort(key=lambda i: i.next_due or far)
    # 已完成的按最近更新排前面
    buckets[COMPLETED].sort(
        key=lambda i: i.updated_at or i.created_at or datetime.min.replace(tzinfo=timezone.utc),
        reverse=True,
    )
    return buckets


def inspection_status(asset: Asset, now: Optional[datetime] = None) -> Optional[str]:
    """资产自身 inspectionDate 的状态：None / overdue / due_soon / current。

    due_soon：距离到期不超过 7 天（按天向上取整）。
    """
    if asset.inspection_date is None:
        return None
    delta = asset.inspection_date - _now(now)
    if delta < timedelta(0):
        return OVERDUE
    days = delta.days + (1 if delta % timedelta(days=1) else 0)
    if days <= DUE_SOON_DAYS:
        return DUE_SOON
    return CURRENT


def overdue_warranties(assets: Iterable[Asset], now: Optional[datetime] = None) -> list[Asset]:
    now = _now(now)
    expired = [a for a in assets if a.warranties_date is not None and a.warranties_date < now]
    return sorted(expired, key=lambda a: a.warranties_date)


def recent_inspections(assets: Iterable[Asset], limit: int = 10) -> list[Asset]:
    dated = [a for a in assets if a.inspection_date is not None]
    return sorted(dated, key=lambda a: a.inspection_date, reverse=True)[:limit]
