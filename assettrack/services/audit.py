import asyncio
import logging
import uuid
from contextlib import suppress
from datetime import datetime, timezone
from typing import Optional

from assettrack.schemas import AuditLog, AuditLogView, LogLevel

logger = logging.getLogger(__name__)

AUDIT_TABLE = "AuditLog"

_ERROR_WORDS = ("error", "fail", "delete", "critical")
_WARN_WORDS = ("warn", "timeout", "retry", "overdue")


def get_log_level(action: str, details: Optional[str] = None) -> LogLevel:
    """按 action（和可选的 details 文本）给日志定级，只用于展示。"""
    text = f"{action} {details or ''}".lower()
    if any(w in text for w in _ERROR_WORDS):
        return LogLevel.ERROR
    if any(w in text for w in _WARN_WORDS):
        return LogLevel.WARN
    return LogLevel.INFO


def format_for_ui(entry: AuditLog) -> AuditLogView:
    message = f"{entry.action}: {entry.details}" if entry.details else entry.action
    return AuditLogView(
        id=entry.id,
        timestamp=entry.timestamp,
        level=get_log_level(entry.action),
        message=message,
        user=entry.user_id or "system",
        action=entry.action,
        asset_id=entry.asset_id,
        details=entry.details,
    )


class AuditTrail:
    """审计日志写入器。

    log() 只负责入队，立刻返回；真正写库的是同一个 loop 上的一个 worker 任务。
    写失败只记 logger，永远不往调用方抛。队列满了直接丢弃并告警。
    """

    def __init__(self, gateway, *, maxsize: int = 1000):
        self._gateway = gateway
        self._maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.dropped = 0
        self.failed = 0

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            if self._queue is not None and not self._queue.empty():
                logger.warning("audit queue rebound to a new loop, %d entries lost", self._queue.qsize())
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self._maxsize)
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(), name="audit-writer")

    def log(
        self,
        action: str,
        user_id: Optional[str] = None,
        asset_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        entry = {
            "id": str(uuid.uuid4()),
            "action": action,
            "userId": user_id,  # None = 系统事件
            "assetId": asset_id,
            "details": details,
            "timestamp": now,
            "createdAt": now,
            "updatedAt": now,
        }
        self._ensure_worker()
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("audit queue full, dropping %s (asset=%s)", action, asset_id)

    async def _run(self) -> None:
        queue = self._queue
        while True:
            entry = await queue.get()
            try:
                await self._write(entry)
            finally:
                queue.task_done()

    async def _write(self, entry: dict) -> None:
        try:
            res = await self._gateway.insert(AUDIT_TABLE, entry)
        except Exception:
            self.failed += 1
            logger.exception("audit write raised for %s", entry["action"])
            return
        if res.error is not None:
            self.failed += 1
            logger.error("audit write failed for %s: %s", entry["action"], res.error.message)

    async def flush(self) -> None:
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None

    # ---- 常用动作 ----

    def user_login(self, user_id: str, details: Optional[str] = None) -> None:
        self.log("USER_LOGIN", user_id, details=details or "User logged in")

    def user_logout(self, user_id: str, details: Optional[str] = None) -> None:
        self.log("USER_LOGOUT", user_id, details=details or "User logged out")

    def asset_created(self, user_id: Optional[str], asset_id: str, asset_name: str) -> None:
        self.log("ASSET_CREATED", user_id, asset_id, f"Asset created: {asset_name}")

    def asset_updated(
        self, user_id: Optional[str], asset_id: str, asset_name: str, changes: Optional[str] = None
    ) -> None:
        details = f"Asset updated: {asset_name} - {changes}" if changes else f"Asset updated: {asset_name}"
        self.log("ASSET_UPDATED", user_id, asset_id, details)

    def asset_deleted(self, user_id: Optional[str], asset_id: str, asset_name: str) -> None:
        self.log("ASSET_DELETED", user_id, asset_id, f"Asset deleted: {asset_name}")

    def asset_checked_out(
        self, user_id: Optional[str], asset_id: str, asset_name: str, assigned_to: Optional[str] = None
    ) -> None:
        details = (
            f"Asset checked out: {asset_name} to {assigned_to}"
            if assigned_to
            else f"Asset checked out: {asset_name}"
        )
        self.log("ASSET_CHECKED_OUT", user_id, asset_id, details)

    def asset_checked_in(self, user_id: Optional[str], asset_id: str, asset_name: str) -> None:
        self.log("ASSET_CHECKED_IN", user_id, asset_id, f"Asset checked in: {asset_name}")

    def qr_code_scanned(
        self, user_id: Optional[str], asset_id: Optional[str] = None, qr_data: Optional[str] = None
    ) -> None:
        if asset_id:
            details = f"QR code scanned for asset: {asset_id}"
        elif qr_data:
            details = f"QR code scanned: {qr_data}"
        else:
            details = "QR code scanned"
        self.log("QR_CODE_SCANNED", user_id, asset_id, details)

    def inspection_completed(
        self, user_id: Optional[str], asset_id: str, asset_name: str, result: Optional[str] = None
    ) -> None:
        details = (
            f"Inspection completed for {asset_name}: {result}"
            if result
            else f"Inspection completed for {asset_name}"
        )
        self.log("INSPECTION_COMPLETED", user_id, asset_id, details)

    def error(self, user_id: Optional[str], action: str, error: str, asset_id: Optional[str] = None) -> None:
        self.log(f"ERROR_{action}", user_id, asset_id, f"Error in {action}: {error}")

    def system_event(self, action: str, details: str, asset_id: Optional[str] = None) -> None:
        self.log(f"SYSTEM_{action}", None, asset_id, details)
