from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    hf_keys: str = ""
    gemini_keys: str = ""
    huggingface_base_url: str = "https://api-inference.huggingface.co"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.5-pro"
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0
    credential_cooldown_seconds: float = 30.0
    proxy_audit_log_enabled: bool = True
    proxy_audit_log_path: str = "logs/proxy_events.jsonl"
    cors_allow_origins: str = "*"
    host: str = "0.0.0.0"
    port: int = 8787

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def hf_keys_list(self) -> list[str]:
        return _split_csv(self.hf_keys)

    @property
    def gemini_keys_list(self) -> list[str]:
        return _split_csv(self.gemini_keys)

    @property
    def cors_allow_origins_list(self) -> list[str]:
        return _split_csv(self.cors_allow_origins) or ["*"]

    def credential_pool(self, provider: str) -> list[str]:
        if provider == "huggingface":
            return self.hf_keys_list
        if provider == "gemini":
            return self.gemini_keys_list
        return []


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
