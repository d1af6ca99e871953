"""Configuration settings for the offline sync engine."""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from offsync.errors import ConfigurationError

# Key of the persisted OfflineManagerConfig overrides in the store's settings table
CONFIG_SETTINGS_KEY = "offline_manager_config"


def default_data_dir() -> Path:
    return Path.home() / ".offsync"


class OfflineManagerConfig(BaseSettings):
    """Engine settings loaded from the environment (``OFFSYNC_*``) or .env.

    Intervals and delays are in milliseconds, sizes in bytes.
    """

    model_config = SettingsConfigDict(
        env_prefix="OFFSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore unrelated env vars
    )

    enable_offline_mode: bool = True
    sync_interval_ms: int = Field(default=30_000, ge=1_000)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1_000, ge=0)  # Base of the exponential backoff
    max_retry_delay_ms: int = Field(default=300_000, ge=0)  # Backoff ceiling
    enable_background_sync: bool = True
    enable_conflict_resolution: bool = True
    default_conflict_strategy: str = "last_write_wins"
    conflict_strategies: Dict[str, str] = Field(default_factory=dict)  # entity_type -> strategy
    max_storage_size: int = Field(default=100 * 1024 * 1024, gt=0)
    offline_timeout_ms: int = Field(default=5_000, gt=0)  # Connectivity probe timeout
    sync_batch_size: int = Field(default=50, ge=1, le=1_000)
    priority_sync: List[str] = Field(default_factory=list)  # Entity types sent first
    enable_selective_sync: bool = False  # Background cycles only send priority_sync types
    enable_health_checks: bool = True
    health_check_interval_ms: int = Field(default=60_000, ge=1_000)
    failed_retention_days: int = Field(default=7, ge=1)

    # Remote origin
    remote_url: Optional[str] = None
    probe_url: Optional[str] = None  # Defaults to remote_url when unset
    auth_token: Optional[str] = None

    data_dir: Path = Field(default_factory=default_data_dir)

    @field_validator("default_conflict_strategy")
    @classmethod
    def _known_default_strategy(cls, value: str) -> str:
        from offsync.conflict import strategy_names

        if value not in strategy_names():
            raise ValueError(f"unknown conflict strategy: {value}")
        return value

    @field_validator("conflict_strategies")
    @classmethod
    def _known_strategies(cls, value: Dict[str, str]) -> Dict[str, str]:
        from offsync.conflict import strategy_names

        known = strategy_names()
        for entity_type, name in value.items():
            if name not in known:
                raise ValueError(f"unknown conflict strategy for {entity_type}: {name}")
        return value

    @model_validator(mode="after")
    def _ceiling_above_base(self) -> "OfflineManagerConfig":
        if self.max_retry_delay_ms < self.retry_delay_ms:
            raise ValueError("max_retry_delay_ms must be >= retry_delay_ms")
        return self

    @property
    def db_path(self) -> Path:
        return self.data_dir / "offsync.db"

    @property
    def effective_probe_url(self) -> Optional[str]:
        return self.probe_url or self.remote_url

    def merged(self, partial: Mapping[str, Any]) -> "OfflineManagerConfig":
        """Return a validated copy with ``partial`` applied.

        Raises:
            ConfigurationError: if a key is unknown or a value fails validation.
                The receiver is left untouched either way.
        """
        unknown = set(partial) - set(type(self).model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")
        values = self.model_dump()
        values.update(partial)
        try:
            return type(self).model_validate(values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def public_dict(self) -> Dict[str, Any]:
        """Settings safe to emit in events and print from the CLI."""
        return self.model_dump(mode="json", exclude={"auth_token"})


@lru_cache
def get_settings() -> OfflineManagerConfig:
    """Get cached settings instance."""
    return OfflineManagerConfig()
