from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from assettrack.config import Settings, get_settings
from assettrack.deps import get_facade
from assettrack.error import raise_for_error
from assettrack.services.access import AccessFacade
from assettrack.services.qr import build_deep_link, generate_qr_png

router = APIRouter(prefix="/qr", tags=["qr"])


async def _asset_link(asset_id: str, facade: AccessFacade, settings: Settings) -> str:
    asset, error = await facade.assets.get_by_id(asset_id)
    raise_for_error(error)
    return build_deep_link(asset.qr or asset.id, settings.qr_link_base)


@router.get("/{asset_id}")
async def asset_qr_png(
    asset_id: str,
    facade: AccessFacade = Depends(get_facade),
    settings: Settings = Depends(get_settings),
):
    link = await _asset_link(asset_id, facade, settings)
    return Response(content=generate_qr_png(link), media_type="image/png")


@router.get("/{asset_id}/link")
async def asset_qr_link(
    asset_id: str,
    facade: AccessFacade = Depends(get_facade),
    settings: Settings = Depends(get_settings),
):
    link = await _asset_link(asset_id, facade, settings)
    return {"assetId": asset_id, "qrCode": link, "timestamp": datetime.now(timezone.utc).isoformat()}
