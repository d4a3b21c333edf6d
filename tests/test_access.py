import pytest

from assettrack.db import LocalCacheStore
from assettrack.error import ConflictError, InternalError, NotFoundError, TransportError, ValidationError
from assettrack.schemas import AssetStatus
from assettrack.services.access import AccessFacade

pytestmark = pytest.mark.asyncio


def _asset(asset_id, name="冲击钻", updated="2024-01-01T00:00:00Z", **extra):
    row = {
        "id": asset_id,
        "name": name,
        "category": "Tools",
        "status": "available",
        "qr": asset_id,
        "companyId": "c1",
        "createdAt": updated,
        "updatedAt": updated,
    }
    row.update(extra)
    return row


def _assignment(assignment_id, asset_id, out_at, in_at=None, assigned_to="u1"):
    return {
        "id": assignment_id,
        "assetId": asset_id,
        "assignedTo": assigned_to,
        "outAt": out_at,
        "inAt": in_at,
        "createdAt": out_at,
        "updatedAt": in_at or out_at,
    }


def _actions(gateway):
    return [r["action"] for r in gateway.tables["AuditLog"]]


# ---- 读 ----

async def test_get_all_remote_success_never_reads_cache(facade, gateway, cache):
    await cache.put("assets", _asset("stale"))

    items, error = await facade.assets.get_all()
    assert error is None
    assert items == []  # 远端说没有就是没有
    assert cache.reads == 0


async def test_get_all_falls_back_to_cache_without_error(facade, gateway, cache):
    # 远端一直失败，缓存里有两条
    gateway.offline = True
    await cache.put("assets", _asset("A1", name="Laptop"))
    await cache.put("assets", _asset("A2", name="Projector"))

    items, error = await facade.assets.get_all()
    assert error is None
    assert sorted(a.id for a in items) == ["A1", "A2"]
    assert cache.reads == 1


async def test_get_all_empty_cache_is_still_success(facade, gateway):
    gateway.offline = True

    items, error = await facade.assets.get_all()
    assert error is None
    assert items == []


async def test_get_all_cache_unavailable_returns_remote_error(gateway):
    broken = LocalCacheStore("sqlite:////nonexistent-dir/sub/cache.db")
    facade = AccessFacade(gateway, broken, company_id="c1")
    gateway.offline = True

    items, error = await facade.assets.get_all()
    assert items == []
    assert isinstance(error, TransportError)
    assert error.status == 503


async def test_get_all_without_cache_returns_remote_error(gateway):
    facade = AccessFacade(gateway, None, company_id="c1")
    gateway.offline = True

    items, error = await facade.assets.get_all()
    assert items == []
    assert isinstance(error, TransportError)


async def test_get_last_n_remote_passes_order_and_limit(facade, gateway):
    gateway.seed(
        "Asset",
        _asset("A1", updated="2024-01-01T00:00:00Z"),
        _asset("A2", updated="2024-03-01T00:00:00Z"),
        _asset("A3", updated="2024-02-01T00:00:00Z"),
    )

    items, error = await facade.assets.get_last_n(2)
    assert error is None
    assert [a.id for a in items] == ["A2", "A3"]
    assert gateway.calls[-1] == ("select", "Asset", None, "updatedAt", 2)


async def test_get_last_n_offline_sorts_and_limits_cached_rows(facade, gateway, cache):
    gateway.offline = True
    await cache.put("assets", _asset("A1", updated="2024-01-01T00:00:00Z"))
    await cache.put("assets", _asset("A2", updated="2024-03-01T00:00:00+00:00"))
    await cache.put("assets", _asset("A3", updated="2024-02-01T00:00:00Z"))

    items, error = await facade.assets.get_last_n(2)
    assert error is None
    assert [a.id for a in items] == ["A2", "A3"]


async def test_get_last_n_rejects_non_positive(facade):
    items, error = await facade.assets.get_last_n(0)
    assert items == []
    assert isinstance(error, ValidationError)


async def test_get_by_id_duplicates_pick_latest_and_are_counted(facade, gateway):
    gateway.seed(
        "Asset",
        _asset("A1", name="旧的", updated="2024-01-01T00:00:00Z"),
        _asset("A1", name="新的", updated="2024-06-01T00:00:00Z"),
    )

    asset, error = await facade.assets.get_by_id("A1")
    assert error is None
    assert asset.name == "新的"
    assert facade.duplicate_hits[("Asset", "id")] == 1


async def test_get_by_id_single_row_not_counted(facade, gateway):
    gateway.seed("Asset", _asset("A1"))

    asset, error = await facade.assets.get_by_id("A1")
    assert error is None
    assert asset.id == "A1"
    assert facade.duplicate_hits == {}


async def test_get_by_id_not_found(facade):
    asset, error = await facade.assets.get_by_id("missing")
    assert asset is None
    assert isinstance(error, NotFoundError)


async def test_get_by_id_blank_is_validation_error(facade, gateway):
    asset, error = await facade.assets.get_by_id("   ")
    assert asset is None
    assert isinstance(error, ValidationError)
    assert gateway.calls == []


async def test_get_by_code_duplicates(facade, gateway):
    gateway.seed(
        "Asset",
        _asset("A1", qr="AST-42", updated="2024-01-01T00:00:00Z"),
        _asset("A2", qr="AST-42", updated="2024-05-01T00:00:00Z"),
    )

    asset, error = await facade.assets.get_by_code("AST-42")
    assert error is None
    assert asset.id == "A2"
    assert facade.duplicate_hits[("Asset", "qr")] == 1


async def test_legacy_status_values_are_normalized(facade, gateway):
    gateway.seed("Asset", _asset("A1", status="Checked Out", condition="Needs Repair"))

    asset, error = await facade.assets.get_by_id("A1")
    assert error is None
    assert asset.status == AssetStatus.checked_out
    assert asset.condition.value == "needs_repair"


# ---- 写 ----

async def test_create_then_get_all(facade, gateway, cache):
    created, error = await facade.assets.create(
        {"name": "Laptop", "category": "Electronics", "serial": "ABC123", "status": "available"}
    )
    assert error is None
    assert created.id
    assert created.company_id == "c1"
    assert created.qr == created.id

    items, error = await facade.assets.get_all()
    assert error is None
    assert len(items) == 1
    assert items[0].name == "Laptop"
    assert items[0].id == created.id
    assert items[0].status == AssetStatus.available

    # 远端确认后才镜像
    cached = await cache.get_all("assets")
    assert [r["id"] for r in cached] == [created.id]


async def test_create_remote_failure_does_not_touch_cache(facade, gateway, cache):
    gateway.offline = True

    created, error = await facade.assets.create({"name": "Laptop", "category": "Electronics"})
    assert created is None
    assert isinstance(error, TransportError)
    assert cache.puts == 0


async def test_create_invalid_payload_never_reaches_remote(facade, gateway):
    created, error = await facade.assets.create({"name": "", "category": "Electronics"})
    assert created is None
    assert isinstance(error, ValidationError)
    assert error.errors
    assert gateway.calls == []


async def test_create_without_tenant_is_rejected(gateway, cache):
    facade = AccessFacade(gateway, cache)

    created, error = await facade.assets.create({"name": "Laptop", "category": "Electronics"})
    assert created is None
    assert isinstance(error, ValidationError)
    assert gateway.writes("Asset") == []


async def test_create_failure_is_audited(facade, gateway):
    gateway.failing_tables.add("Asset")

    _, error = await facade.assets.create({"name": "Laptop", "category": "Electronics"})
    assert isinstance(error, TransportError)

    await facade.audit.flush()
    assert _actions(gateway) == ["ERROR_ASSET_CREATE"]


async def test_update_stamps_and_mirrors(facade, gateway, cache):
    gateway.seed("Asset", _asset("A1", name="旧名"))

    updated, error = await facade.assets.update("A1", {"name": "新名"}, actor_id="u9")
    assert error is None
    assert updated.name == "新名"
    assert updated.updated_at.year > 2024

    cached = await cache.get_all("assets")
    assert cached[0]["name"] == "新名"

    await facade.audit.flush()
    log = gateway.tables["AuditLog"][0]
    assert log["action"] == "ASSET_UPDATED"
    assert log["userId"] == "u9"
    assert log["details"] == "Asset updated: 新名 - name"


async def test_update_empty_patch_is_rejected(facade, gateway):
    gateway.seed("Asset", _asset("A1"))

    updated, error = await facade.assets.update("A1", {})
    assert updated is None
    assert isinstance(error, ValidationError)


async def test_update_missing_row_is_not_found(facade):
    updated, error = await facade.assets.update("nope", {"name": "x"})
    assert updated is None
    assert isinstance(error, NotFoundError)


async def test_delete_prunes_cache(facade, gateway, cache):
    created, _ = await facade.assets.create({"name": "Laptop", "category": "Electronics"})

    _, error = await facade.assets.delete(created.id, label="Laptop")
    assert error is None

    await facade.audit.flush()
    assert gateway.tables["AuditLog"][-1]["details"] == "Asset deleted: Laptop"

    # 删完再离线，缓存里不能再冒出来
    gateway.offline = True
    items, error = await facade.assets.get_all()
    assert error is None
    assert items == []


async def test_audit_logs_are_read_only(facade):
    created, error = await facade.audit_logs.create({"action": "X"})
    assert created is None
    assert isinstance(error, ValidationError)


async def test_assignments_cannot_be_created_directly(facade, gateway):
    created, error = await facade.assignments.create({"assignedTo": "u1"})
    assert created is None
    assert isinstance(error, ValidationError)
    assert gateway.calls == []


async def test_users_and_companies(facade, gateway):
    company, error = await facade.companies.create({"name": "ACME", "slug": "acme"})
    assert error is None
    assert company.slug == "acme"

    user, error = await facade.users.create({"email": "a@b.co", "name": "Ann"})
    assert error is None
    assert user.company_id == "c1"
    assert user.role == "Worker"

    _, error = await facade.companies.create({"name": "Bad", "slug": "Not A Slug"})
    assert isinstance(error, ValidationError)


# ---- 借出 / 归还 ----

async def test_check_out_then_check_in(facade, gateway, cache):
    gateway.seed("Asset", _asset("A1", name="Laptop"))

    out, error = await facade.assets.check_out("A1", {"assignedTo": "u1"}, actor_id="u9")
    assert error is None
    assert out.is_open

    asset, _ = await facade.assets.get_by_id("A1")
    assert asset.status == AssetStatus.checked_out

    back, error = await facade.assets.check_in("A1", actor_id="u9")
    assert error is None
    assert back.id == out.id
    assert back.in_at is not None

    rows = gateway.tables["Assignment"]
    assert len(rows) == 1
    assert rows[0]["inAt"] is not None

    asset, _ = await facade.assets.get_by_id("A1")
    assert asset.status == AssetStatus.available

    cached = await cache.get_all("assignments")
    assert cached[0]["inAt"] is not None

    await facade.audit.flush()
    details = [r["details"] for r in gateway.tables["AuditLog"]]
    assert details == ["Asset checked out: Laptop to u1", "Asset checked in: Asset A1"]


async def test_check_in_closes_only_the_open_assignment(facade, gateway):
    gateway.seed("Asset", _asset("A1"))
    gateway.seed(
        "Assignment",
        _assignment("old", "A1", out_at="2024-01-01T00:00:00Z", in_at="2024-01-03T00:00:00Z"),
        _assignment("open", "A1", out_at="2024-02-01T00:00:00Z"),
    )

    back, error = await facade.assets.check_in("A1")
    assert error is None
    assert back.id == "open"

    rows = {r["id"]: r for r in gateway.tables["Assignment"]}
    assert rows["open"]["inAt"] is not None
    assert rows["old"]["inAt"] == "2024-01-03T00:00:00Z"
    assert rows["old"]["updatedAt"] == "2024-01-03T00:00:00Z"


async def test_check_out_twice_is_conflict(facade, gateway):
    gateway.seed("Asset", _asset("A1"))
    await facade.assets.check_out("A1", {"assignedTo": "u1"})

    again, error = await facade.assets.check_out("A1", {"assignedTo": "u2"})
    assert again is None
    assert isinstance(error, ConflictError)
    assert len(gateway.tables["Assignment"]) == 1

    await facade.audit.flush()
    assert _actions(gateway)[-1] == "ERROR_ASSET_CHECKOUT"


async def test_check_out_unknown_asset(facade, gateway):
    out, error = await facade.assets.check_out("nope", {"assignedTo": "u1"})
    assert out is None
    assert isinstance(error, NotFoundError)
    assert gateway.writes("Assignment") == []


async def test_check_out_requires_assignee(facade, gateway):
    gateway.seed("Asset", _asset("A1"))

    out, error = await facade.assets.check_out("A1", {"assignedTo": ""})
    assert out is None
    assert isinstance(error, ValidationError)


async def test_check_out_remote_failure_is_audited_and_not_cached(facade, gateway, cache):
    gateway.seed("Asset", _asset("A1"))
    gateway.failing_tables.add("Assignment")

    out, error = await facade.assets.check_out("A1", {"assignedTo": "u1"})
    assert out is None
    assert isinstance(error, TransportError)
    assert await cache.get_all("assignments") == []

    await facade.audit.flush()
    log = gateway.tables["AuditLog"][-1]
    assert log["action"] == "ERROR_ASSET_CHECKOUT"
    assert log["details"].startswith("Error in ASSET_CHECKOUT: Failed to check out asset:")


async def test_check_out_unexpected_exception_is_internal_error(facade, gateway):
    gateway.seed("Asset", _asset("A1"))
    gateway.raising_tables.add("Assignment")

    out, error = await facade.assets.check_out("A1", {"assignedTo": "u1"})
    assert out is None
    assert isinstance(error, InternalError)

    await facade.audit.flush()
    assert _actions(gateway) == ["ERROR_ASSET_CHECKOUT"]


async def test_check_in_without_open_assignment(facade, gateway):
    gateway.seed("Asset", _asset("A1"))

    back, error = await facade.assets.check_in("A1")
    assert back is None
    assert isinstance(error, NotFoundError)

    await facade.audit.flush()
    assert _actions(gateway) == ["ERROR_ASSET_CHECKIN"]


async def test_audit_write_failure_does_not_change_result(facade, gateway):
    gateway.seed("Asset", _asset("A1"))
    gateway.raising_tables.add("AuditLog")

    out, error = await facade.assets.check_out("A1", {"assignedTo": "u1"})
    assert error is None
    assert out.assigned_to == "u1"

    await facade.audit.flush()
    assert facade.audit.failed == 1


async def test_audit_raising_synchronously_is_contained(gateway, cache):
    class ExplodingAudit:
        def __getattr__(self, name):
            def boom(*args):
                raise RuntimeError("audit down")
            return boom

        async def close(self):
            pass

    facade = AccessFacade(gateway, cache, ExplodingAudit(), company_id="c1")
    gateway.seed("Asset", _asset("A1"))

    out, error = await facade.assets.check_out("A1", {"assignedTo": "u1"})
    assert error is None
    assert out.asset_id == "A1"


async def test_get_open_duplicates_are_counted(facade, gateway):
    gateway.seed(
        "Assignment",
        _assignment("a", "A1", out_at="2024-01-01T00:00:00Z"),
        _assignment("b", "A1", out_at="2024-02-01T00:00:00Z"),
    )

    current, error = await facade.assignments.get_open("A1")
    assert error is None
    assert current.id == "b"
    assert facade.duplicate_hits[("Assignment", "open")] == 1


async def test_get_for_asset_open_only(facade, gateway):
    gateway.seed(
        "Assignment",
        _assignment("old", "A1", out_at="2024-01-01T00:00:00Z", in_at="2024-01-02T00:00:00Z"),
        _assignment("open", "A1", out_at="2024-02-01T00:00:00Z"),
        _assignment("other", "A2", out_at="2024-02-01T00:00:00Z"),
    )

    items, error = await facade.assignments.get_for_asset("A1")
    assert error is None
    assert [a.id for a in items] == ["open", "old"]

    items, error = await facade.assignments.get_for_asset("A1", open_only=True)
    assert [a.id for a in items] == ["open"]


# ---- 检查 / 审计日志 ----

async def test_inspection_create_and_buckets(facade, gateway):
    created, error = await facade.inspections.create(
        {"assetId": "A1", "checklist": "外观", "result": "pass", "nextDue": "2000-01-01T00:00:00Z"}
    )
    assert error is None
    await facade.inspections.create({"assetId": "A1", "checklist": "电池", "result": "pass"})
    await facade.inspections.create(
        {"assetId": "A1", "checklist": "绝缘", "result": "pass", "nextDue": "2999-01-01T00:00:00Z"}
    )

    overdue, error = await facade.inspections.get_overdue()
    assert error is None
    assert [i.id for i in overdue] == [created.id]

    upcoming, _ = await facade.inspections.get_upcoming()
    assert [i.checklist for i in upcoming] == ["绝缘"]

    completed, _ = await facade.inspections.get_completed()
    assert [i.checklist for i in completed] == ["电池"]

    await facade.audit.flush()
    assert gateway.tables["AuditLog"][0]["details"] == "Inspection completed for Asset A1: pass"


async def test_audit_logs_get_recent_filters_and_limits(facade, gateway):
    gateway.seed(
        "AuditLog",
        {"id": "1", "action": "ASSET_CREATED", "userId": "u1", "assetId": "A1", "timestamp": "2024-01-01T00:00:00Z"},
        {"id": "2", "action": "ASSET_UPDATED", "userId": "u1", "assetId": "A1", "timestamp": "2024-01-02T00:00:00Z"},
        {"id": "3", "action": "ASSET_CREATED", "userId": "u2", "assetId": "A2", "timestamp": "2024-01-03T00:00:00Z"},
    )

    entries, error = await facade.audit_logs.get_recent(limit=2)
    assert error is None
    assert [e.id for e in entries] == ["3", "2"]

    entries, _ = await facade.audit_logs.get_recent(action="ASSET_CREATED", user_id="u1")
    assert [e.id for e in entries] == ["1"]


async def test_get_all_gateway_raising_falls_back_to_cache(facade, gateway, cache, monkeypatch):
    async def broken_select(*args, **kwargs):
        raise RuntimeError("socket closed")

    monkeypatch.setattr(gateway, "select", broken_select)
    await cache.put("assets", _asset("a1"))

    items, error = await facade.assets.get_all()
    assert error is None
    assert [a.id for a in items] == ["a1"]


async def test_get_by_id_gateway_raising_is_transport_error(facade, gateway, monkeypatch):
    async def broken_select(*args, **kwargs):
        raise RuntimeError("socket closed")

    monkeypatch.setattr(gateway, "select", broken_select)

    asset, error = await facade.assets.get_by_id("a1")
    assert asset is None
    assert isinstance(error, TransportError)


async def test_get_all_cache_driver_missing_returns_remote_error(gateway):
    facade = AccessFacade(gateway, LocalCacheStore("postgresql://nobody@localhost/none"), company_id="c1")
    gateway.offline = True

    items, error = await facade.assets.get_all()
    assert items == []
    assert isinstance(error, TransportError)
