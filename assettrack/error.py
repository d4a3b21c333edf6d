from typing import Any, NamedTuple, Optional

from fastapi import HTTPException


class AccessError(Exception):
    code = "ACCESS_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(AccessError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(AccessError):
    code = "NOT_FOUND"


class ConflictError(AccessError):
    code = "CONFLICT"


class TransportError(AccessError):
    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status  # None = 连不上


class CacheError(AccessError):
    # 只在缓存层内部流转，不会返回给调用方
    code = "CACHE_UNAVAILABLE"


class InternalError(AccessError):
    # 借出/归还过程中的意外异常，已记审计日志
    code = "INTERNAL_ERROR"


class ConfigurationError(RuntimeError):
    pass


class Result(NamedTuple):
    data: Any
    error: Optional[AccessError]

    @property
    def ok(self) -> bool:
        return self.error is None


_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    TransportError: 502,
}


def abort(status_code: int, code: str, message: str) -> None:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def auth_401(code: str, message: str) -> HTTPException:
    # ✅ 保留 WWW-Authenticate，符合 Bearer 规范
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def raise_for_error(error: Optional[AccessError]) -> None:
    # facade 的 Result.error -> 统一错误格式
    if error is None:
        return
    status = _STATUS.get(type(error), 500)
    abort(status, error.code, error.message)
