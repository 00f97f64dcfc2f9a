from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_MIB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8')

    app_name: str = 'vNAS'
    app_host: str = '0.0.0.0'
    app_port: int = Field(default=3000, ge=1, le=65535)
    storage_root: str = './storage'
    max_upload_bytes: int = Field(default=50 * _MIB, ge=1)
    preview_max_bytes: int = Field(default=5 * _MIB, ge=0)
    stream_chunk_bytes: int = Field(default=_MIB, ge=1024)
    log_level: str = 'info'
    cors_origins: str = ''
    advertise_enabled: bool = False
    advertise_name: str = 'MyNAS'
    advertise_description: str = 'Python NAS'
    advertise_token: str = ''
    ssdp_interval_sec: int = Field(default=30, ge=5, le=1800)


settings = Settings()
