from typing import Optional

from fastapi import APIRouter, Depends, Query

from assettrack.deps import current_actor, get_facade
from assettrack.error import raise_for_error
from assettrack.schemas import Asset, AssetCreate, AssetListResponse, AssetUpdate, Assignment, AssignmentCreate
from assettrack.services.access import AccessFacade
from assettrack.services.schedule import inspection_status

router = APIRouter(prefix="/assets", tags=["assets"])


@router.get("", response_model=AssetListResponse)
async def list_assets(
        last: Optional[int] = Query(None, ge=1, le=200, description="只取最近更新的 N 条（可选）"),
        facade: AccessFacade = Depends(get_facade),
):
    # 远端挂了会自动读本地缓存，兜底成功不算错误
    if last is not None:
        items, error = await facade.assets.get_last_n(last)
    else:
        items, error = await facade.assets.get_all()
    raise_for_error(error)
    return {"items": items, "total": len(items)}


@router.post("", response_model=Asset)
async def create_asset(
        data: AssetCreate,
        facade: AccessFacade = Depends(get_facade),
        actor: Optional[str] = Depends(current_actor),
):
    asset, error = await facade.assets.create(data, actor_id=actor)
    raise_for_error(error)
    return asset


@router.get("/by-code/{code}", response_model=Asset)
async def get_asset_by_code(code: str, facade: AccessFacade = Depends(get_facade)):
    asset, error = await facade.assets.get_by_code(code)
    raise_for_error(error)
    return asset


@router.get("/{asset_id}", response_model=Asset)
async def get_asset(asset_id: str, facade: AccessFacade = Depends(get_facade)):
    asset, error = await facade.assets.get_by_id(asset_id)
    raise_for_error(error)
    return asset


@router.get("/{asset_id}/inspection-status")
async def get_inspection_status(asset_id: str, facade: AccessFacade = Depends(get_facade)):
    asset, error = await facade.assets.get_by_id(asset_id)
    raise_for_error(error)
    return {"assetId": asset.id, "inspectionDate": asset.inspection_date, "status": inspection_status(asset)}


@router.patch("/{asset_id}", response_model=Asset)
async def update_asset(
        asset_id: str,
        body: AssetUpdate,
        facade: AccessFacade = Depends(get_facade),
        actor: Optional[str] = Depends(current_actor),
):
    asset, error = await facade.assets.update(asset_id, body, actor_id=actor)
    raise_for_error(error)
    return asset


@router.delete("/{asset_id}")
async def delete_asset(
        asset_id: str,
        facade: AccessFacade = Depends(get_facade),
        actor: Optional[str] = Depends(current_actor),
):
    _, error = await facade.assets.delete(asset_id, actor_id=actor)
    raise_for_error(error)
    return {"ok": True}


@router.post("/{asset_id}/checkout", response_model=Assignment)
async def check_out_asset(
        asset_id: str,
        body: AssignmentCreate,
        facade: AccessFacade = Depends(get_facade),
        actor: Optional[str] = Depends(current_actor),
):
    assignment, error = await facade.assets.check_out(asset_id, body, actor_id=actor)
    raise_for_error(error)
    return assignment


@router.post("/{asset_id}/checkin", response_model=Assignment)
async def check_in_asset(
        asset_id: str,
        facade: AccessFacade = Depends(get_facade),
        actor: Optional[str] = Depends(current_actor),
):
    assignment, error = await facade.assets.check_in(asset_id, actor_id=actor)
    raise_for_error(error)
    return assignment
