import logging
from typing import Any, Optional, Protocol

import httpx

from assettrack.config import Settings
from assettrack.error import NotFoundError, Result, TransportError

logger = logging.getLogger(__name__)


class RemoteGateway(Protocol):
    """远端行存储的最小接口，每个方法都返回 Result(data, error)，不抛异常。"""

    async def select(
        self,
        table: str,
        *,
        eq: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> Result: ...

    async def insert(self, table: str, row: dict) -> Result: ...

    async def update(self, table: str, row_id: str, patch: dict) -> Result: ...

    async def delete(self, table: str, row_id: str) -> Result: ...


def _filter_value(v: Any) -> str:
    # eq 里的 None 表示 "IS NULL"
    if v is None:
        return "is.null"
    if isinstance(v, bool):
        return f"is.{str(v).lower()}"
    return f"eq.{v}"


class PostgrestGateway:
    """托管后端（PostgREST 方言）的 httpx 实现。

    连接失败 / 非 2xx 一律变成 TransportError 放进 Result 里返回。
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "PostgrestGateway":
        url, key = settings.require_remote()  # 配置不对直接抛 ConfigurationError
        return cls(url, key, timeout=settings.request_timeout, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Result:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = await self._client.request(method, f"/{table}", params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("gateway %s %s unreachable: %s", method, table, e)
            return Result(None, TransportError(f"远端不可用：{e}"))

        if resp.status_code >= 400:
            message = resp.text
            try:
                body = resp.json()
                if isinstance(body, dict):
                    message = body.get("message") or body.get("error") or message
            except ValueError:
                pass
            logger.warning("gateway %s %s failed: status=%s %s", method, table, resp.status_code, message)
            return Result(None, TransportError(message or f"HTTP {resp.status_code}", status=resp.status_code))

        if resp.status_code == 204 or not resp.content:
            return Result(None, None)
        try:
            body = resp.json()
        except ValueError:
            # 200 但不是 JSON：多半是代理 / 登录页，按不可用处理
            logger.warning("gateway %s %s returned non-JSON body: %.80s", method, table, resp.text)
            return Result(None, TransportError("远端返回的不是 JSON", status=resp.status_code))
        return Result(body, None)

    async def select(self, table, *, eq=None, order_by=None, descending=True, limit=None) -> Result:
        params = {"select": "*"}
        for column, value in (eq or {}).items():
            params[column] = _filter_value(value)
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)

        res = await self._request("GET", table, params=params)
        if res.error is None and res.data is None:
            return Result([], None)
        return res

    async def insert(self, table, row) -> Result:
        res = await self._request("POST", table, json=row, prefer="return=representation")
        if res.error is not None:
            return res
        rows = res.data or []
        return Result(rows[0] if rows else None, None)

    async def update(self, table, row_id, patch) -> Result:
        res = await self._request(
            "PATCH", table, params={"id": f"eq.{row_id}"}, json=patch, prefer="return=representation"
        )
        if res.error is not None:
            return res
        rows = res.data or []
        if not rows:
            return Result(None, NotFoundError(f"{table} 不存在：{row_id}"))
        return Result(rows[0], None)

    async def delete(self, table, row_id) -> Result:
        res = await self._request("DELETE", table, params={"id": f"eq.{row_id}"}, prefer="return=minimal")
        return Result(None, res.error)
