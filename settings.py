from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)


class BackendSettings(BaseModel):
    base_url: str = Field(default="http://localhost:8080")
    documents_path: str = Field(default="/api/moe/documents")
    analysis_path: str = Field(default="/api/analysis")
    timeout_seconds: float = Field(default=30.0)
    upload_timeout_seconds: float = Field(default=120.0)
    # Analysis start runs the whole job server-side before answering.
    analysis_timeout_seconds: float = Field(default=600.0)


class RegulationSettings(BaseModel):
    default_regulation_id: Optional[str] = None
    regulation_version: str = Field(default="2025-09-AMC-GM")
    auto_detect: bool = Field(default=True)


class PollingSettings(BaseModel):
    status_interval_seconds: float = Field(default=5.0)
    readiness_interval_seconds: float = Field(default=10.0)
    readiness_max_attempts: Optional[int] = None
    max_wait_seconds: Optional[float] = None
    placeholder_ceiling: int = Field(default=90, ge=0, le=99)
    placeholder_step: int = Field(default=5, ge=1)
    placeholder_tick_seconds: float = Field(default=1.0)
    page_size: int = Field(default=20, ge=1)
    stream_interval_seconds: float = Field(default=1.0)


class UploadSettings(BaseModel):
    allowed_extensions: List[str] = Field(default_factory=lambda: [".pdf", ".docx"])
    max_file_size_mb: float = Field(default=50.0)


class SessionSettings(BaseModel):
    storage_dir: str = Field(default=".sessions")


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO")
    log_external_io: bool = Field(default=False)


class AppSettings(BaseSettings):
    server: ServerSettings = Field(default_factory=ServerSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    regulation: RegulationSettings = Field(default_factory=RegulationSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    upload: UploadSettings = Field(default_factory=UploadSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(env_prefix="COMPLIANCE_CLIENT_", env_nested_delimiter="__", extra="ignore")


@lru_cache()
def load_yaml_config(path: Path | None = None) -> dict:
    config_path = path or Path(__file__).resolve().parent / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found at {config_path}")
    with config_path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


@lru_cache()
def get_settings() -> AppSettings:
    yaml_data = load_yaml_config()
    return AppSettings(**yaml_data)


__all__ = [
    "ServerSettings",
    "BackendSettings",
    "RegulationSettings",
    "PollingSettings",
    "UploadSettings",
    "SessionSettings",
    "LoggingSettings",
    "AppSettings",
    "load_yaml_config",
    "get_settings",
]
