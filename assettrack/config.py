import re
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from assettrack.error import ConfigurationError

_PLACEHOLDER_URL = "https://your-project.supabase.co"
_PLACEHOLDER_KEY = "your-anon-key-here"

# 托管项目 或 本地 supabase 开发栈
_URL_RE = re.compile(
    r"^(https://[a-z0-9-]+\.supabase\.co|http://(localhost|127\.0\.0\.1):\d+)$"
)


class Settings(BaseSettings):
    # 声明 .env 里会出现的字段
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_jwt_secret: Optional[str] = None

    cache_url: str = "sqlite:///./assettrack_cache.db"
    company_id: Optional[str] = None
    qr_link_base: str = "https://qrcode.link/a"

    request_timeout: float = 10.0
    audit_queue_size: int = 1000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def require_remote(self) -> tuple[str, str]:
        """url/key 缺失或格式不对时直接报错，不发任何网络请求。"""
        url = (self.supabase_url or "").strip().rstrip("/")
        key = (self.supabase_anon_key or "").strip()

        if not url or url == _PLACEHOLDER_URL:
            raise ConfigurationError("SUPABASE_URL 未配置")
        if not key or key == _PLACEHOLDER_KEY:
            raise ConfigurationError("SUPABASE_ANON_KEY 未配置")
        if not _URL_RE.match(url):
            raise ConfigurationError(
                f"SUPABASE_URL 格式不对：{url}（例：https://your-project-id.supabase.co）"
            )
        return url, key


@lru_cache
def get_settings() -> Settings:
    return Settings()
