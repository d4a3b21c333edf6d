from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from assettrack.config import Settings, get_settings
from assettrack.error import auth_401
from assettrack.security import decode_access_token
from assettrack.services.access import AccessFacade

# ✅ auto_error=False：没带 token 就当系统/匿名操作，不直接 403
bearer_scheme = HTTPBearer(auto_error=False)


def get_facade(request: Request) -> AccessFacade:
    return request.app.state.facade


def current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    # 1) 没带 token：审计里记为 system
    if credentials is None:
        return None

    # 2) 没配 jwt secret：无法校验，也不信任 token 里的内容
    if not settings.supabase_jwt_secret:
        return None

    # 3) token 无效 / 过期
    try:
        return decode_access_token(credentials.credentials, settings.supabase_jwt_secret)
    except (JWTError, ValueError):
        raise auth_401("INVALID_TOKEN", "Token 无效或已过期，请重新登录")
