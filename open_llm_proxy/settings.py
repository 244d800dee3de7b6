from __future__ import annotations

import os
from functools import lru_cache

from dotenv import dotenv_values
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = ".env"


class Settings(BaseSettings):
    proxy_auth_key: str | None = None
    proxy_config_path: str = "proxy.yaml"
    proxy_eager_bootstrap: bool = False
    discovery_max_attempts: int = 5
    discovery_retry_base_delay_seconds: float = 1.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 300.0
    upstream_write_timeout_seconds: float = 60.0
    upstream_pool_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=ENV_FILE,
        extra="ignore",
    )

    @property
    def proxy_auth_is_configured(self) -> bool:
        return bool(self.proxy_auth_key and self.proxy_auth_key.strip())

    def provider_environ(self) -> dict[str, str]:
        """Variables that provider credentials are looked up in.

        Same sources and precedence as the settings themselves: the ``.env``
        file, overridden by the process environment.
        """
        env_file = self.model_config.get("env_file")
        from_file = dotenv_values(env_file) if isinstance(env_file, str) else {}
        merged = {key: value for key, value in from_file.items() if value is not None}
        merged.update(os.environ)
        return merged


@lru_cache
def get_settings() -> Settings:
    return Settings()
