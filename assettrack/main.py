import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from assettrack.config import Settings, get_settings
from assettrack.db import LocalCacheStore
from assettrack.gateway import PostgrestGateway
from assettrack.routers import assets, assignments, inspections, logs, qr
from assettrack.services.access import AccessFacade
from assettrack.services.audit import AuditTrail

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def build_facade(settings: Settings) -> AccessFacade:
    # 组合根：gateway / cache / audit 都在这里显式构造，不用模块级单例
    gateway = PostgrestGateway.from_settings(settings)
    cache = LocalCacheStore(settings.cache_url)
    audit = AuditTrail(gateway, maxsize=settings.audit_queue_size)
    return AccessFacade(gateway, cache, audit, company_id=settings.company_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.facade = build_facade(get_settings())  # ✅ 启动阶段；配置不对直接起不来
    yield
    await app.state.facade.aclose()
    logger.info("服务已关闭")


app = FastAPI(title="AssetTrack", version=VERSION, lifespan=lifespan)

app.include_router(assets.router)
app.include_router(assignments.router)
app.include_router(inspections.router)
app.include_router(logs.router)
app.include_router(qr.router)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat(), "version": VERSION}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"code": "VALIDATION_ERROR", "message": "参数校验失败", "errors": jsonable_encoder(exc.errors())},
    )
