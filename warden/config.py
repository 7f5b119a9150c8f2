from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)


class SessionStrategy(str, Enum):
    """Where session records live; chosen once at construction."""

    MEMORY = "memory"
    PERSISTENT = "persistent"


class TokenAlgorithm(str, Enum):
    """HMAC signing algorithms accepted for session tokens."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class MemoryStrategySettings(BaseModel):
    max_size_bytes: int = Field(1024 * 1024, alias="maxSizeBytes", gt=0)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class PersistentStrategySettings(BaseModel):
    use_cache: bool = Field(True, alias="useCache")
    cache_duration: str = Field("1h", alias="cacheDuration")
    cache_size_bytes: int = Field(1024 * 1024, alias="cacheSizeBytes", gt=0)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RoleDefinition(BaseModel):
    permissions: List[str] = Field(default_factory=list)
    inherits: List[str] = Field(default_factory=list)
    description: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class RBACSettings(BaseModel):
    enabled: bool = True
    roles: Dict[str, RoleDefinition] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class Settings(BaseModel):
    """Runtime settings for the session and access-control core.

    Field names follow Python style; the camelCase names used by JSON
    settings documents are accepted as aliases.
    """

    session_strategy: SessionStrategy = env_field(
        SessionStrategy.MEMORY, "SESSION_STRATEGY", alias="sessionStrategy"
    )
    memory: MemoryStrategySettings = Field(
        default_factory=MemoryStrategySettings,
        json_schema_extra={"env": "SESSION_MEMORY"},
    )
    persistent: PersistentStrategySettings = Field(
        default_factory=PersistentStrategySettings,
        json_schema_extra={"env": "SESSION_PERSISTENT"},
    )
    token_expiration: str = env_field(
        "24h", "TOKEN_EXPIRATION", alias="tokenExpiration"
    )
    token_secret: Optional[str] = env_field(
        None, "TOKEN_SECRET", alias="tokenSecret", validate_default=True
    )
    token_algorithm: TokenAlgorithm = env_field(
        TokenAlgorithm.HS256, "TOKEN_ALGORITHM", alias="tokenAlgorithm"
    )
    token_id_length: int = env_field(
        32,
        "TOKEN_ID_LENGTH",
        alias="tokenIdLength",
        gt=0,
        description="Bytes of randomness behind each session id",
    )
    rbac: RBACSettings = Field(
        default_factory=RBACSettings, json_schema_extra={"env": "RBAC_CONFIG"}
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/warden", "DATABASE_URL", alias="databaseUrl"
    )

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                raw = os.environ[env_name]
            elif env_name in env_file_values:
                raw = env_file_values[env_name]
            else:
                continue
            # Nested sections are passed as JSON objects
            if isinstance(raw, str) and raw.lstrip().startswith("{"):
                raw = json.loads(raw)
            merged[name] = raw
        return cls(**merged)

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        """Load a JSON settings document (camelCase or snake_case keys)."""

        data = json.loads(Path(path).read_text())
        return cls.model_validate(data)

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: Optional[str]) -> str:
        if value:
            return value
        logger.warning(
            "token_secret_generated",
            message="No token secret configured; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)
