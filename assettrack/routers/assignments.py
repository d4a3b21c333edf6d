from fastapi import APIRouter, Depends, Query

from assettrack.deps import get_facade
from assettrack.error import raise_for_error
from assettrack.schemas import AssignmentListResponse
from assettrack.services.access import AccessFacade

router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.get("", response_model=AssignmentListResponse)
async def list_assignments(
    asset_id: str = Query(..., min_length=1, description="资产 ID"),
    open_only: bool = Query(False, description="只看未归还的"),
    facade: AccessFacade = Depends(get_facade),
):
    items, error = await facade.assignments.get_for_asset(asset_id, open_only=open_only)
    raise_for_error(error)
    return {"items": items, "total": len(items)}
