import os
from collections import defaultdict

# 保险：就算 .env 不在也能跑（lifespan 里会按这些值构造真实 gateway，但不会发请求）
os.environ.setdefault("SUPABASE_URL", "https://demo.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("CACHE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from assettrack.db import LocalCacheStore
from assettrack.deps import get_facade
from assettrack.error import NotFoundError, Result, TransportError
from assettrack.main import app
from assettrack.services.access import AccessFacade
from assettrack.services.ledger import row_time


class FakeGateway:
    """内存版远端：按表存 dict 行，记录每次调用，可以整体或按表模拟故障。"""

    def __init__(self):
        self.tables = defaultdict(list)
        self.calls = []
        self.offline = False
        self.failing_tables = set()
        self.raising_tables = set()  # insert 直接抛异常

    def seed(self, table, *rows):
        for r in rows:
            self.tables[table].append(dict(r))

    def _failure(self, table):
        if self.offline or table in self.failing_tables:
            return Result(None, TransportError("offline", status=503))
        return None

    async def select(self, table, *, eq=None, order_by=None, descending=True, limit=None):
        self.calls.append(("select", table, eq, order_by, limit))
        failed = self._failure(table)
        if failed:
            return failed
        rows = [dict(r) for r in self.tables[table] if all(r.get(k) == v for k, v in (eq or {}).items())]
        if order_by:
            rows.sort(key=lambda r: row_time(r, order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return Result(rows, None)

    async def insert(self, table, row):
        self.calls.append(("insert", table, row))
        if table in self.raising_tables:
            raise RuntimeError(f"{table} insert exploded")
        failed = self._failure(table)
        if failed:
            return failed
        self.tables[table].append(dict(row))
        return Result(dict(row), None)

    async def update(self, table, row_id, patch):
        self.calls.append(("update", table, row_id, patch))
        failed = self._failure(table)
        if failed:
            return failed
        for r in self.tables[table]:
            if r.get("id") == row_id:
                r.update(patch)
                return Result(dict(r), None)
        return Result(None, NotFoundError(f"{table} 不存在：{row_id}"))

    async def delete(self, table, row_id):
        self.calls.append(("delete", table, row_id))
        failed = self._failure(table)
        if failed:
            return failed
        self.tables[table] = [r for r in self.tables[table] if r.get("id") != row_id]
        return Result(None, None)

    def writes(self, table):
        return [c for c in self.calls if c[0] in ("insert", "update", "delete") and c[1] == table]


class SpyCache(LocalCacheStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reads = 0
        self.puts = 0

    async def get_all(self, collection):
        self.reads += 1
        return await super().get_all(collection)

    async def put(self, collection, record):
        self.puts += 1
        await super().put(collection, record)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def cache():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = SpyCache(engine=engine)
    yield store
    store.dispose()


@pytest.fixture
def facade(gateway, cache):
    return AccessFacade(gateway, cache, company_id="c1")


@pytest.fixture
def client(facade):
    app.dependency_overrides[get_facade] = lambda: facade

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
