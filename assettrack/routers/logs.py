import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from assettrack.deps import get_facade
from assettrack.services.access import AccessFacade
from assettrack.services.audit import format_for_ui

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("")
async def recent_logs(
    limit: int = Query(5, ge=1, le=200),
    facade: AccessFacade = Depends(get_facade),
):
    entries, error = await facade.audit_logs.get_recent(limit=limit)
    if error is not None:
        logger.error("Error fetching recent logs: %s", error.message)
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to fetch audit logs"})

    data = [format_for_ui(e).model_dump(by_alias=True, mode="json") for e in entries]
    return {"success": True, "data": data}
