"""
Configuration management for gateway-ratelimit.

This module uses Pydantic's BaseSettings to manage configuration
through environment variables. It provides a centralized and typed
way to handle resolution settings.
"""
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Resolution settings.

    These settings are loaded from environment variables prefixed with GWRL_.
    """

    # Policy attachment limits
    MAX_TARGET_REFS: int = Field(default=16, ge=1)

    # How Route-level zones defined differently by policies on sibling Routes
    # under one Gateway are handled: "error" drops the group, "warn" keeps both
    SIBLING_ZONE_CONFLICTS: Literal["error", "warn"] = "error"

    # Status reporting
    CONTROLLER_NAME: str = "gateway-ratelimit.io/resolver"
    AFFECTED_CONDITION_TYPE: str = "RateLimitPolicyAffected"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["text", "json"] = "text"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_prefix="GWRL_",
    )


settings = Settings()
