import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Callable, Optional

import numpy as np

from assettrack.services.qr import DecodeResult, decode_frame, extract_identifier

logger = logging.getLogger(__name__)

Decoder = Callable[[np.ndarray, int, int], Optional[DecodeResult]]


class ScanState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    SCANNING = "scanning"
    RESOLVING = "resolving"


def _frame_size(frame) -> tuple[int, int]:
    shape = getattr(frame, "shape", None)
    if not shape or len(shape) < 2:
        return 0, 0
    return int(shape[1]), int(shape[0])


class QRScanner:
    """扫码会话：Idle -> Acquiring -> Scanning -> Resolving -> Idle。

    - Scanning 里每个 tick 取一帧、拷进离屏缓冲、做一次识别；没识别到就等下一个 tick
    - 识别到一次就退出 Scanning，不会再处理第二帧；先释放摄像头再去查资产
    - 查到/查不到都回到 Idle，不自动重试；要再扫只能 rescan()
    """

    def __init__(
        self,
        assets,
        camera,
        *,
        decoder: Decoder = decode_frame,
        actor_id: Optional[str] = None,
        tick: float = 1 / 30,
        constraints: Optional[dict] = None,
    ):
        self._assets = assets
        self._camera = camera
        self._decoder = decoder
        self._tick = tick
        self._constraints = constraints
        self.actor_id = actor_id

        self.state = ScanState.IDLE
        self.asset = None
        self.error: Optional[str] = None
        self.payload: Optional[str] = None
        self.identifier: Optional[str] = None
        self.frames_sampled = 0

        self._stream = None
        self._task: Optional[asyncio.Task] = None

    def _set_state(self, state: ScanState) -> None:
        if state is not self.state:
            logger.debug("scanner %s -> %s", self.state.value, state.value)
            self.state = state

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.state is not ScanState.IDLE or self.active:
            return
        self._set_state(ScanState.ACQUIRING)
        try:
            self._stream = await self._camera.open(self._constraints)
        except Exception as e:
            logger.warning("camera open failed: %s", e)
            self.error = f"无法访问摄像头：{e}"
            self._set_state(ScanState.IDLE)
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="qr-scan")

    async def rescan(self) -> None:
        await self.stop()
        self.asset = None
        self.error = None
        self.payload = None
        self.identifier = None
        await self.start()

    async def stop(self) -> None:
        # 取消还没跑的取帧回调，避免摄像头释放后还在跑
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._release()
        self._set_state(ScanState.IDLE)

    async def wait(self):
        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await self._task
        return self.asset

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()

    def sample(self, frame) -> Optional[str]:
        """一次识别：拷贝当前帧到离屏缓冲再交给 decoder。"""
        width, height = _frame_size(frame)
        pixels = np.ascontiguousarray(frame).copy()
        self.frames_sampled += 1
        result = self._decoder(pixels, width, height)
        if result is None or not result.payload:
            return None
        return result.payload

    async def _run(self) -> None:
        try:
            payload = await self._scan_frames()
            self._release()
            await self._resolve(payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("scan session failed")
            self.error = f"扫码失败：{e}"
        finally:
            self._release()
            self._set_state(ScanState.IDLE)

    async def _scan_frames(self) -> str:
        while True:
            frame = await self._stream.read()
            width, height = _frame_size(frame)
            if width > 0 and height > 0:
                if self.state is ScanState.ACQUIRING:
                    self._set_state(ScanState.SCANNING)
                payload = self.sample(frame)
                if payload is not None:
                    return payload
            await asyncio.sleep(self._tick)

    async def _resolve(self, payload: str) -> None:
        self._set_state(ScanState.RESOLVING)
        self.payload = payload
        self.identifier = extract_identifier(payload)
        if not self.identifier:
            self.error = "二维码内容无法识别"
            return

        asset, error = await self._assets.get_by_code(self.identifier)
        if error is not None:
            self.error = error.message
            return
        self.asset = asset
        self._assets.record_scan(self.actor_id, asset, payload)
