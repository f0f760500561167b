"""Configuration surface for the issuance bridge."""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

SUPPORTED_DSN_PREFIXES = ("sqlite:///", "memory://")


class ReadRetrySettings(BaseModel):
    """Backoff for read-only network queries. Mutating calls are never retried."""
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=0.2, gt=0)
    max_delay: float = Field(default=5.0, gt=0)


class BridgeSettings(BaseSettings):
    """Main bridge configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Storage for tenant bridges (and their keys) and for the payment outbox
    registry_dsn: str = "sqlite:///./data/bridges.db"
    outbox_dsn: str = "sqlite:///./data/outbox.db"

    # Network
    installation_account_id: Optional[str] = None
    starting_balance: Decimal = Decimal("20")
    read_retry: ReadRetrySettings = Field(default_factory=ReadRetrySettings)

    # Address resolution
    federation_timeout_seconds: float = 10.0

    # Per (tenant, asset) serialization of vault adjustments
    vault_lock_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "BRIDGE_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("registry_dsn", "outbox_dsn")
    @classmethod
    def validate_dsn(cls, v: str) -> str:
        if not v.startswith(SUPPORTED_DSN_PREFIXES):
            raise ValueError(
                f"Unsupported DSN '{v}'. Use sqlite:///<path> or memory://"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def reject_memory_storage_in_prod(self) -> "BridgeSettings":
        """Key material and outbox events must survive restarts in production."""
        if self.environment == "prod":
            for name in ("registry_dsn", "outbox_dsn"):
                if getattr(self, name).startswith("memory://"):
                    raise ValueError(f"{name} must be durable in prod")
        return self


@lru_cache
def load_settings(env_file: str | None = None) -> BridgeSettings:
    """Load BridgeSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return BridgeSettings(_env_file=env_path)
