"""二维码：生成、从画面解码、从扫到的内容里取资产标识。"""

from dataclasses import dataclass
from io import BytesIO
from typing import Optional
from urllib.parse import unquote, urlsplit

import cv2
import numpy as np
import qrcode


@dataclass(frozen=True)
class DecodeResult:
    payload: str


def extract_identifier(payload: Optional[str]) -> Optional[str]:
    """深链（http/https）取路径最后一段，其它情况原样当标识。

    https://qrcode.link/a/AST-42  -> AST-42
    AST-42                        -> AST-42
    """
    text = (payload or "").strip()
    if not text:
        return None

    parts = urlsplit(text)
    if parts.scheme.lower() in ("http", "https") and parts.netloc:
        segments = [s for s in parts.path.split("/") if s]
        if not segments:
            return None
        return unquote(segments[-1]).strip() or None
    return text


def build_deep_link(code: str, base: str = "https://qrcode.link/a") -> str:
    return f"{base.rstrip('/')}/{code}"


def generate_qr_png(data: str, box_size: int = 6, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    buffer = BytesIO()
    img = qr.make_image(fill_color="black", back_color="white")
    img.save(buffer, format="PNG")
    return buffer.getvalue()


_detector = None


def decode_frame(pixels: np.ndarray, width: int, height: int) -> Optional[DecodeResult]:
    """对一帧像素做一次二维码识别，没识别到返回 None。"""
    global _detector
    if width <= 0 or height <= 0:
        return None
    if _detector is None:
        _detector = cv2.QRCodeDetector()

    data, _points, _ = _detector.detectAndDecode(pixels)
    if not data:
        return None
    return DecodeResult(payload=data)
