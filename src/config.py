"""
config.py

Runtime configuration for the dashboard API.

Every setting can be supplied through the environment (prefix ``DASHBOARD_``)
or a ``.env`` file next to the working directory.  Complex settings such as
the operator registry are given as JSON:

    DASHBOARD_OPERATORS='[{"email": "alice@example.com", "role": "admin", "token": "s3cret"}]'
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from model import OperatorRole


class OperatorSettings(BaseModel):
    """One entry of the operator registry."""
    email: str = Field(..., min_length=3)
    role: OperatorRole = OperatorRole.VIEWER
    token: str = Field(..., min_length=8)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DASHBOARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field(default="Site Analytics & Delivery Schedule Dashboard")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)
    log_level: str = Field(default="info")

    # Analytics
    ga_key_path: Optional[str] = Field(
        default=None,
        description="Service-account key file; application default credentials when unset",
    )
    analytics_timeout_seconds: float = Field(default=25.0, gt=0)
    analytics_max_workers: int = Field(default=6, ge=1)

    # Schedule
    strict_status_validation: bool = Field(
        default=True,
        description="Reject statuses outside the selected phase's vocabulary",
    )

    # Surface
    mcp_enabled: bool = Field(default=True)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    operators: List[OperatorSettings] = Field(default_factory=list)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"critical", "error", "warning", "info", "debug"}
        if v.lower() not in valid:
            raise ValueError(f"log_level must be one of: {sorted(valid)}")
        return v.lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()
