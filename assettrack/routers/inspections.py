from typing import Optional

from fastapi import APIRouter, Depends, Query

from assettrack.deps import current_actor, get_facade
from assettrack.error import raise_for_error
from assettrack.schemas import Inspection, InspectionBuckets, InspectionCreate
from assettrack.services.access import AccessFacade

router = APIRouter(prefix="/inspections", tags=["inspections"])


@router.get("", response_model=list[Inspection])
async def list_inspections(
    asset_id: Optional[str] = Query(None, min_length=1, description="按资产过滤（可选）"),
    facade: AccessFacade = Depends(get_facade),
):
    if asset_id:
        items, error = await facade.inspections.get_by_asset(asset_id)
    else:
        items, error = await facade.inspections.get_all()
    raise_for_error(error)
    return items


@router.get("/buckets", response_model=InspectionBuckets)
async def inspection_buckets(facade: AccessFacade = Depends(get_facade)):
    grouped, error = await facade.inspections.buckets()
    raise_for_error(error)
    return grouped


@router.post("", response_model=Inspection)
async def create_inspection(
    data: InspectionCreate,
    facade: AccessFacade = Depends(get_facade),
    actor: Optional[str] = Depends(current_actor),
):
    inspection, error = await facade.inspections.create(data, actor_id=actor)
    raise_for_error(error)
    return inspection
