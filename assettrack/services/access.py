import logging
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from assettrack.error import (
    CacheError,
    ConflictError,
    InternalError,
    NotFoundError,
    Result,
    TransportError,
    ValidationError,
)
from assettrack.schemas import (
    Asset,
    AssetCreate,
    AssetStatus,
    AssetUpdate,
    Assignment,
    AssignmentCreate,
    AssignmentUpdate,
    AuditLog,
    Company,
    CompanyCreate,
    CompanyUpdate,
    Inspection,
    InspectionCreate,
    InspectionUpdate,
    User,
    UserCreate,
    UserUpdate,
)
from assettrack.services.audit import AUDIT_TABLE, AuditTrail
from assettrack.services.ledger import (
    build_assignment_row,
    check_in_patch,
    entity_label,
    iso,
    latest_first,
    new_id,
    utcnow,
)
from assettrack.services.schedule import COMPLETED, OVERDUE, UPCOMING, bucket_inspections

logger = logging.getLogger(__name__)


def _validate(model: type[BaseModel], payload: Any):
    if isinstance(payload, model):
        return payload, None
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    try:
        return model.model_validate(payload or {}), None
    except PydanticValidationError as e:
        first = e.errors(include_url=False)[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        return None, ValidationError(
            f"参数校验失败：{where} {first.get('msg', '')}".strip(),
            e.errors(include_url=False, include_context=False),
        )


def _matches(row: dict, eq: Optional[dict]) -> bool:
    return all(row.get(k) == v for k, v in (eq or {}).items())


class EntityAccess:
    """单个实体类型的读写入口。

    读：先远端；远端失败再读本地缓存（有缓存集合的实体才有），兜底成功就不算错误。
    写：只走远端；远端确认成功后才镜像到缓存，缓存写失败只记日志。
    """

    table: str = ""
    collection: Optional[str] = None
    label: str = "记录"
    model: type[BaseModel]
    create_model: Optional[type[BaseModel]] = None
    update_model: Optional[type[BaseModel]] = None
    order_field: str = "updatedAt"
    time_fields: tuple[str, ...] = ("updatedAt", "createdAt")
    tenant_required: bool = False
    read_only: bool = False

    def __init__(self, facade: "AccessFacade"):
        self._facade = facade

    @property
    def _gateway(self):
        return self._facade.gateway

    @property
    def _cache(self):
        return self._facade.cache

    # ---- 读 ----

    def _parse(self, rows: list[dict]) -> list:
        return [self.model.model_validate(r) for r in rows]

    def _parse_cached(self, rows: list[dict]) -> list:
        items = []
        for r in rows:
            try:
                items.append(self.model.model_validate(r))
            except PydanticValidationError as e:
                logger.warning("skipping malformed cached %s row %s (%d errors)", self.collection, r.get("id"), e.error_count())
        return items

    async def _cached_rows(self, remote_error) -> Optional[list[dict]]:
        if self.collection is None or self._cache is None:
            return None
        logger.warning("%s remote read failed (%s), falling back to local cache", self.table, remote_error.message)
        try:
            return await self._cache.get_all(self.collection)
        except CacheError as e:
            logger.warning("local cache unavailable for %s: %s", self.collection, e.message)
            return None

    async def _select(self, *, eq=None, order_by=None, limit=None) -> Result:
        # gateway 本该只返回 Result；真抛了也按远端失败处理，读路径才能走缓存兜底
        try:
            return await self._gateway.select(self.table, eq=eq, order_by=order_by, descending=True, limit=limit)
        except Exception as e:
            logger.warning("%s remote read raised %s: %s", self.table, type(e).__name__, e)
            return Result(None, TransportError(f"远端读取失败：{e}"))

    async def _read(
        self,
        *,
        eq: Optional[dict] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Result:
        res = await self._select(eq=eq, order_by=order_by, limit=limit)
        if res.error is None:
            return Result(self._parse(res.data or []), None)

        rows = await self._cached_rows(res.error)
        if rows is None:
            return Result([], res.error)

        # 缓存没有查询能力，过滤/排序/截断都在内存里做
        rows = [r for r in rows if _matches(r, eq)]
        if order_by:
            rows = latest_first(rows, order_by, *self.time_fields)
        if limit is not None:
            rows = rows[:limit]
        return Result(self._parse_cached(rows), None)

    async def get_all(self) -> Result:
        return await self._read()

    async def get_last_n(self, n: int = 10) -> Result:
        if n is None or n < 1:
            return Result([], ValidationError("n 必须 >= 1"))
        return await self._read(order_by=self.order_field, limit=n)

    async def _get_latest(self, field: str, value: Optional[str]) -> Result:
        if isinstance(value, str):
            value = value.strip()
        if not value:
            return Result(None, ValidationError(f"{field} 不能为空"))

        res = await self._select(eq={field: value}, order_by=self.order_field)
        if res.error is not None:
            return Result(None, res.error)

        rows = res.data or []
        if not rows:
            return Result(None, NotFoundError(f"未找到{self.label}：{value}"))
        if len(rows) > 1:
            self._facade.record_duplicate(self.table, field, value, len(rows))
            rows = latest_first(rows, *self.time_fields)
        return Result(self.model.model_validate(rows[0]), None)

    async def get_by_id(self, record_id: str) -> Result:
        return await self._get_latest("id", record_id)

    # ---- 写 ----

    def _new_row(self, data: BaseModel) -> dict:
        now = iso(utcnow())
        row = data.to_row()
        row["id"] = new_id()
        row["createdAt"] = now
        row["updatedAt"] = now
        if "companyId" in row and not row["companyId"]:
            row["companyId"] = self._facade.company_id
        return row

    async def _mirror(self, row: Optional[dict]) -> None:
        if self.collection is None or self._cache is None or not row:
            return
        try:
            await self._cache.put(self.collection, row)
        except CacheError as e:
            logger.warning("cache mirror failed for %s/%s: %s", self.collection, row.get("id"), e.message)

    async def _prune(self, record_id: str) -> None:
        if self.collection is None or self._cache is None:
            return
        try:
            await self._cache.discard(self.collection, record_id)
        except CacheError as e:
            logger.warning("cache prune failed for %s/%s: %s", self.collection, record_id, e.message)

    def _refuse_write(self) -> Result:
        return Result(None, ValidationError(f"{self.label}不允许直接修改"))

    async def create(self, payload: Any, actor_id: Optional[str] = None) -> Result:
        if self.read_only or self.create_model is None:
            return self._refuse_write()
        data, error = _validate(self.create_model, payload)
        if error is not None:
            return Result(None, error)

        row = self._new_row(data)
        if self.tenant_required and not row.get("companyId"):
            return Result(None, ValidationError("companyId 不能为空"))

        res = await self._gateway.insert(self.table, row)
        if res.error is not None:
            self._on_failed("CREATE", res.error, actor_id, row["id"])
            return Result(None, res.error)

        created = res.data or row
        await self._mirror(created)
        record = self.model.model_validate(created)
        self._on_created(record, actor_id)
        return Result(record, None)

    async def update(self, record_id: str, patch: Any, actor_id: Optional[str] = None) -> Result:
        if self.read_only or self.update_model is None:
            return self._refuse_write()
        if not record_id:
            return Result(None, ValidationError("id 不能为空"))
        data, error = _validate(self.update_model, patch)
        if error is not None:
            return Result(None, error)

        changes = data.to_patch()
        if not changes:
            return Result(None, ValidationError("没有要更新的字段"))
        changes["updatedAt"] = iso(utcnow())

        res = await self._gateway.update(self.table, record_id, changes)
        if res.error is not None:
            self._on_failed("UPDATE", res.error, actor_id, record_id)
            return Result(None, res.error)

        await self._mirror(res.data)
        record = self.model.model_validate(res.data)
        self._on_updated(record, changes, actor_id)
        return Result(record, None)

    async def delete(self, record_id: str, actor_id: Optional[str] = None, label: Optional[str] = None) -> Result:
        if self.read_only:
            return self._refuse_write()
        if not record_id:
            return Result(None, ValidationError("id 不能为空"))

        res = await self._gateway.delete(self.table, record_id)
        if res.error is not None:
            self._on_failed("DELETE", res.error, actor_id, record_id)
            return Result(None, res.error)

        # 删掉的记录不能在离线时又从缓存里冒出来
        await self._prune(record_id)
        self._on_deleted(record_id, actor_id, label)
        return Result(None, None)

    # ---- 审计钩子，子类按需覆盖 ----

    def _on_failed(self, op: str, error, actor_id: Optional[str], record_id: Optional[str]) -> None:
        pass

    def _on_created(self, record, actor_id: Optional[str]) -> None:
        pass

    def _on_updated(self, record, changes: dict, actor_id: Optional[str]) -> None:
        pass

    def _on_deleted(self, record_id: str, actor_id: Optional[str], label: Optional[str]) -> None:
        pass


class AssetAccess(EntityAccess):
    table = "Asset"
    collection = "assets"
    label = "资产"
    model = Asset
    create_model = AssetCreate
    update_model = AssetUpdate
    tenant_required = True

    def _new_row(self, data: BaseModel) -> dict:
        row = super()._new_row(data)
        # 没给 qr 就用 id，打印出来的码才能扫回来
        if not row.get("qr"):
            row["qr"] = row["id"]
        return row

    async def get_by_code(self, code: str) -> Result:
        return await self._get_latest("qr", code)

    async def _set_status(self, asset_id: str, status: AssetStatus) -> None:
        res = await self._gateway.update(
            self.table, asset_id, {"status": status.value, "updatedAt": iso(utcnow())}
        )
        if res.error is not None:
            logger.warning("asset %s status -> %s not saved: %s", asset_id, status.value, res.error.message)
            return
        await self._mirror(res.data)

    async def check_out(
        self,
        asset_id: str,
        assignment: Any,
        actor_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> Result:
        emit = self._facade.emit
        try:
            data, error = _validate(AssignmentCreate, assignment)
            if error is not None:
                return Result(None, error)

            asset, error = await self.get_by_id(asset_id)
            if error is not None:
                emit("error", actor_id, "ASSET_CHECKOUT", f"Failed to check out asset: {error.message}", asset_id)
                return Result(None, error)
            label = entity_label(asset_id, label or asset.name)

            current, error = await self._facade.assignments.get_open(asset_id)
            if error is not None and not isinstance(error, NotFoundError):
                emit("error", actor_id, "ASSET_CHECKOUT", f"Failed to check out asset: {error.message}", asset_id)
                return Result(None, error)
            if current is not None:
                conflict = ConflictError(f"{label} 已借出给 {current.assigned_to}，请先归还")
                emit("error", actor_id, "ASSET_CHECKOUT", conflict.message, asset_id)
                return Result(None, conflict)

            row = build_assignment_row(asset_id, data)
            res = await self._gateway.insert(AssignmentAccess.table, row)
            if res.error is not None:
                emit("error", actor_id, "ASSET_CHECKOUT", f"Failed to check out asset: {res.error.message}", asset_id)
                return Result(None, res.error)

            created = res.data or row
            await self._facade.assignments._mirror(created)
            await self._set_status(asset_id, AssetStatus.checked_out)
            emit("asset_checked_out", actor_id, asset_id, label, data.assigned_to)
            return Result(Assignment.model_validate(created), None)
        except Exception as e:
            logger.exception("unexpected error checking out asset %s", asset_id)
            emit("error", actor_id, "ASSET_CHECKOUT", f"Unexpected error checking out asset: {e}", asset_id)
            return Result(None, InternalError(f"借出失败：{e}"))

    async def check_in(self, asset_id: str, actor_id: Optional[str] = None, label: Optional[str] = None) -> Result:
        emit = self._facade.emit
        try:
            current, error = await self._facade.assignments.get_open(asset_id)
            if error is not None:
                emit("error", actor_id, "ASSET_CHECKIN", f"Failed to check in asset: {error.message}", asset_id)
                return Result(None, error)

            res = await self._gateway.update(AssignmentAccess.table, current.id, check_in_patch())
            if res.error is not None:
                emit("error", actor_id, "ASSET_CHECKIN", f"Failed to check in asset: {res.error.message}", asset_id)
                return Result(None, res.error)

            await self._facade.assignments._mirror(res.data)
            await self._set_status(asset_id, AssetStatus.available)
            emit("asset_checked_in", actor_id, asset_id, entity_label(asset_id, label))
            return Result(Assignment.model_validate(res.data), None)
        except Exception as e:
            logger.exception("unexpected error checking in asset %s", asset_id)
            emit("error", actor_id, "ASSET_CHECKIN", f"Unexpected error checking in asset: {e}", asset_id)
            return Result(None, InternalError(f"归还失败：{e}"))

    def record_scan(self, actor_id: Optional[str], asset: Optional[Asset], payload: Optional[str]) -> None:
        self._facade.emit("qr_code_scanned", actor_id, asset.id if asset else None, payload)

    def _on_failed(self, op, error, actor_id, record_id):
        self._facade.emit("error", actor_id, f"ASSET_{op}", error.message, record_id)

    def _on_created(self, record: Asset, actor_id):
        self._facade.emit("asset_created", actor_id, record.id, record.name)

    def _on_updated(self, record: Asset, changes, actor_id):
        fields = ", ".join(sorted(k for k in changes if k != "updatedAt"))
        self._facade.emit("asset_updated", actor_id, record.id, record.name, fields)

    def _on_deleted(self, record_id, actor_id, label):
        self._facade.emit("asset_deleted", actor_id, record_id, entity_label(record_id, label))


class AssignmentAccess(EntityAccess):
    table = "Assignment"
    collection = "assignments"
    label = "借出记录"
    model = Assignment
    update_model = AssignmentUpdate

    async def create(self, payload: Any, actor_id: Optional[str] = None) -> Result:
        # 借出记录只能由 assets.check_out 产生
        return Result(None, ValidationError("借出记录请通过 check_out 创建"))

    async def get_open(self, asset_id: str) -> Result:
        """资产当前未归还（inAt 为空）的那条借出记录，多条时取 outAt 最新的。"""
        if not asset_id:
            return Result(None, ValidationError("assetId 不能为空"))
        res = await self._select(eq={"assetId": asset_id, "inAt": None}, order_by="outAt")
        if res.error is not None:
            return Result(None, res.error)

        rows = res.data or []
        if not rows:
            return Result(None, NotFoundError(f"没有未归还的借出记录：{asset_id}"))
        if len(rows) > 1:
            self._facade.record_duplicate(self.table, "open", asset_id, len(rows))
        rows = latest_first(rows, "outAt", "createdAt")
        return Result(Assignment.model_validate(rows[0]), None)

    async def get_for_asset(self, asset_id: str, open_only: bool = False) -> Result:
        eq: dict = {"assetId": asset_id}
        if open_only:
            eq["inAt"] = None
        return await self._read(eq=eq, order_by="outAt")


class InspectionAccess(EntityAccess):
    table = "Inspection"
    collection = "inspections"
    label = "检查记录"
    model = Inspection
    create_model = InspectionCreate
    update_model = InspectionUpdate

    async def get_by_asset(self, asset_id: str) -> Result:
        return await self._read(eq={"assetId": asset_id}, order_by=self.order_field)

    async def buckets(self, now: Optional[datetime] = None) -> Result:
        items, error = await self.get_all()
        return Result(bucket_inspections(items, now), error)

    async def get_upcoming(self, now: Optional[datetime] = None) -> Result:
        grouped, error = await self.buckets(now)
        return Result(grouped[UPCOMING], error)

    async def get_overdue(self, now: Optional[datetime] = None) -> Result:
        grouped, error = await self.buckets(now)
        return Result(grouped[OVERDUE], error)

    async def get_completed(self, now: Optional[datetime] = None) -> Result:
        grouped, error = await self.buckets(now)
        return Result(grouped[COMPLETED], error)

    def _on_created(self, record: Inspection, actor_id):
        self._facade.emit("inspection_completed", actor_id, record.asset_id, f"Asset {record.asset_id}", record.result)


class AuditLogAccess(EntityAccess):
    # 只读：写入只能走 AuditTrail
    table = AUDIT_TABLE
    label = "审计日志"
    model = AuditLog
    order_field = "timestamp"
    time_fields = ("timestamp", "createdAt")
    read_only = True

    async def get_recent(
        self,
        limit: Optional[int] = None,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        asset_id: Optional[str] = None,
    ) -> Result:
        eq = {k: v for k, v in (("action", action), ("userId", user_id), ("assetId", asset_id)) if v}
        return await self._read(eq=eq or None, order_by=self.order_field, limit=limit)


class UserAccess(EntityAccess):
    table = "User"
    label = "用户"
    model = User
    create_model = UserCreate
    update_model = UserUpdate
    tenant_required = True


class CompanyAccess(EntityAccess):
    table = "Company"
    label = "公司"
    model = Company
    create_model = CompanyCreate
    update_model = CompanyUpdate


class AccessFacade:
    """组合根里构造一次：gateway（远端）+ cache（本地兜底）+ audit（审计 worker）。"""

    def __init__(self, gateway, cache=None, audit: Optional[AuditTrail] = None, *, company_id: Optional[str] = None):
        self.gateway = gateway
        self.cache = cache
        self.audit = audit if audit is not None else AuditTrail(gateway)
        self.company_id = company_id
        self.duplicate_hits: Counter = Counter()

        self.assets = AssetAccess(self)
        self.assignments = AssignmentAccess(self)
        self.inspections = InspectionAccess(self)
        self.audit_logs = AuditLogAccess(self)
        self.users = UserAccess(self)
        self.companies = CompanyAccess(self)

    def record_duplicate(self, table: str, field: str, value: Any, count: int) -> None:
        self.duplicate_hits[(table, field)] += 1
        logger.warning(
            "duplicate rows table=%s field=%s value=%s count=%d, using most recent",
            table, field, value, count,
        )

    def emit(self, name: str, *args) -> None:
        # 审计失败永远不影响主操作
        try:
            getattr(self.audit, name)(*args)
        except Exception:
            logger.exception("audit %s not recorded", name)

    async def aclose(self) -> None:
        await self.audit.close()
        close = getattr(self.gateway, "aclose", None)
        if close is not None:
            await close()
        if self.cache is not None:
            self.cache.dispose()
