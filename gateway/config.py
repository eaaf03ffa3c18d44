from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Set

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    version: str = Field(default="1.0.0")


class AuthConfig(BaseModel):
    enabled: bool = Field(default=False)
    token: str = Field(default="")


class RateLimitConfig(BaseModel):
    enabled: bool = Field(default=True)
    window_ms: int = Field(default=60000, ge=1)
    max_requests: int = Field(default=100, ge=1)
    max_keys: int = Field(default=10000, ge=1)


class CorsConfig(BaseModel):
    allowed_origins: Set[str] = Field(default_factory=lambda: {"*"})
    methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])
    headers: List[str] = Field(default_factory=lambda: ["Content-Type", "Authorization"])


class WebSocketConfig(BaseModel):
    enabled: bool = Field(default=True)
    path: str = Field(default="/ws")
    heartbeat_interval_ms: int = Field(default=30000, ge=0)
    idle_timeout_ms: int = Field(default=300000, ge=1)
    sweep_interval_ms: int = Field(default=60000, ge=1)
    max_inflight: int = Field(default=8, ge=1)


class DispatchConfig(BaseModel):
    # 0 or None disables the bound
    default_timeout_ms: Optional[int] = Field(default=30000, ge=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    log_dir: Path = Field(default=Path("logs"))
    file_enabled: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"level must be one of: {sorted(valid_levels)}")
        return value


class GatewayConfig(BaseSettings):
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cors: CorsConfig = Field(default_factory=CorsConfig)
    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        else:
            target[k] = v
    return target


def load_config(config_path: Optional[Path] = None) -> GatewayConfig:
    """Build the gateway config: defaults < JSON file < environment/.env.

    Secrets (the bearer token) are only ever taken from the environment.
    """
    base_from_env = GatewayConfig()
    merged_data = base_from_env.model_dump()

    path = Path(config_path) if config_path else Path("config/gateway.json")
    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            file_data = json.load(f)
        _deep_merge(merged_data, file_data)
        # env overrides the file, so re-apply explicitly set env values
        _deep_merge(merged_data, base_from_env.model_dump(exclude_unset=True))

    merged_data.setdefault("auth", {})["token"] = base_from_env.auth.token
    return GatewayConfig(**merged_data)


@lru_cache(maxsize=1)
def get_config() -> GatewayConfig:
    return load_config()
