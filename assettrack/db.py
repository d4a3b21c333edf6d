import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from assettrack.error import CacheError
from assettrack.models import CachedRecord

logger = logging.getLogger(__name__)

COLLECTIONS = ("assets", "assignments", "inspections")


class LocalCacheStore:
    """本地兜底缓存：远端挂了才读它，远端写成功后顺手镜像一份。

    - 不是数据源，不做查询/排序，只有 put / get_all / discard
    - 引擎第一次用到时才创建，之后整个进程复用
    - 初始化失败会在第一次操作时以 CacheError 抛出，由 facade 吞掉
    """

    def __init__(self, url: str = "sqlite:///./assettrack_cache.db", engine: Optional[Engine] = None):
        self._url = url
        self._engine = engine
        self._owns_engine = engine is None  # 外部传进来的 engine 不替换、不丢弃
        self._ready = False
        self._lock = threading.Lock()

    def _get_engine(self) -> Engine:
        if self._ready:
            return self._engine
        with self._lock:
            if not self._ready:
                try:
                    if self._engine is None:
                        connect_args = {"check_same_thread": False} if self._url.startswith("sqlite") else {}
                        self._engine = create_engine(self._url, connect_args=connect_args)
                    SQLModel.metadata.create_all(self._engine, tables=[CachedRecord.__table__])
                except Exception as e:
                    # 驱动没装 / 路径不可写 / URL 写错，一律算缓存不可用
                    if self._owns_engine:
                        self._engine = None
                    raise CacheError(f"本地缓存初始化失败：{e}") from e
                self._ready = True
        return self._engine

    @contextmanager
    def _session(self):
        session = Session(self._get_engine())
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise CacheError(f"本地缓存读写失败：{e}") from e
        finally:
            session.close()

    @staticmethod
    def _check_collection(collection: str) -> None:
        if collection not in COLLECTIONS:
            raise CacheError(f"未知的缓存集合：{collection}")

    # ---- sync 实现，async 接口在线程里跑它们 ----

    def _put_sync(self, collection: str, record: dict) -> None:
        self._check_collection(collection)
        record_id = record.get("id")
        if not record_id:
            raise CacheError("缓存记录缺少 id")
        with self._session() as session:
            session.merge(CachedRecord(collection=collection, record_id=str(record_id), payload=dict(record)))
            session.commit()

    def _get_all_sync(self, collection: str) -> list[dict]:
        self._check_collection(collection)
        with self._session() as session:
            rows = session.exec(select(CachedRecord).where(CachedRecord.collection == collection)).all()
            return [dict(r.payload) for r in rows]

    def _discard_sync(self, collection: str, record_id: str) -> None:
        self._check_collection(collection)
        with self._session() as session:
            row = session.get(CachedRecord, (collection, record_id))
            if row is not None:
                session.delete(row)
                session.commit()

    async def put(self, collection: str, record: dict) -> None:
        await asyncio.to_thread(self._put_sync, collection, record)

    async def get_all(self, collection: str) -> list[dict]:
        return await asyncio.to_thread(self._get_all_sync, collection)

    async def discard(self, collection: str, record_id: str) -> None:
        await asyncio.to_thread(self._discard_sync, collection, record_id)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
