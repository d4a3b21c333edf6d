import asyncio
import logging
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class CameraError(RuntimeError):
    pass


class OpenCVStream:
    def __init__(self, capture: "cv2.VideoCapture"):
        self._capture = capture
        self._stopped = False

    async def read(self) -> Optional[np.ndarray]:
        if self._stopped:
            return None
        ok, frame = await asyncio.to_thread(self._capture.read)
        return frame if ok else None

    def stop(self) -> None:
        if not self._stopped:
            self._stopped = True
            self._capture.release()


class OpenCVCamera:
    """本机摄像头。constraints 支持 width / height。"""

    def __init__(self, index: int = 0):
        self.index = index

    async def open(self, constraints: Optional[dict] = None) -> OpenCVStream:
        capture = await asyncio.to_thread(cv2.VideoCapture, self.index)
        if not capture.isOpened():
            capture.release()
            raise CameraError(f"无法打开摄像头 #{self.index}")

        constraints = constraints or {}
        if constraints.get("width"):
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints["width"])
        if constraints.get("height"):
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints["height"])
        logger.debug("camera #%s opened", self.index)
        return OpenCVStream(capture)
