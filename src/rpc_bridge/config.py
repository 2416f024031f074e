"""Configuration module for the stdio JSON-RPC bridge."""

from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import BridgeConfig, SlotSpec


def load_slots_file(path: Union[str, Path]) -> Dict[str, SlotSpec]:
    """Load a slot mapping from a YAML (or JSON) file.

    File format:
        coincap:
          command: node
          args: [index.js]
          cwd: /srv/coincap
          env: {COINCAP_API_KEY: "..."}

    Raises:
        ValueError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Cannot read slots file {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Slots file {path} must contain a mapping of slot keys")

    slots: Dict[str, SlotSpec] = {}
    for key, spec in raw.items():
        try:
            slots[str(key)] = SlotSpec.model_validate(spec)
        except ValidationError as e:
            raise ValueError(f"Invalid slot '{key}' in {path}: {e}") from e
    return slots


class BridgeSettings(BaseSettings):
    """Bridge service configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="BRIDGE_",
        extra="ignore",
    )

    # Server configuration
    host: Annotated[str, Field(default="127.0.0.1")]
    port: Annotated[int, Field(default=3000, ge=1, le=65535)]

    # Slots
    slots: Annotated[Dict[str, SlotSpec], Field(default_factory=dict)]
    slots_file: Annotated[Optional[str], Field(default=None)]
    autostart: Annotated[bool, Field(default=True)]

    # Requests and processes
    request_timeout: Annotated[float, Field(default=30.0, gt=0)]
    shutdown_timeout: Annotated[float, Field(default=5.0, gt=0)]
    max_buffer_bytes: Annotated[int, Field(default=10 * 1024 * 1024, gt=0)]

    # CORS configuration - secure defaults
    cors_origins: Annotated[
        Union[List[str], str],
        Field(default=["http://localhost:3000", "http://127.0.0.1:3000"]),
    ]
    cors_credentials: Annotated[bool, Field(default=False)]

    # Logging
    log_level: Annotated[
        str,
        Field(
            default="INFO",
            pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        ),
    ]
    log_file: Annotated[Optional[str], Field(default=None)]
    log_requests: Annotated[bool, Field(default=False)]
    log_responses: Annotated[bool, Field(default=False)]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_comma_separated(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse comma-separated string to list using pattern matching."""
        match v:
            case str() as s:
                return [item.strip() for item in s.split(",") if item.strip()]
            case list() as lst:
                return lst
            case _:
                return []

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def resolve_slots(self) -> Dict[str, SlotSpec]:
        """Slots from ``slots_file`` overlaid with inline ``slots``."""
        slots: Dict[str, SlotSpec] = {}
        if self.slots_file:
            slots.update(load_slots_file(self.slots_file))
        slots.update(self.slots)
        return slots

    def to_bridge_config(self) -> BridgeConfig:
        """Convert settings to the BridgeConfig consumed by the core."""
        return BridgeConfig(
            slots=self.resolve_slots(),
            request_timeout=self.request_timeout,
            max_buffer_bytes=self.max_buffer_bytes,
            shutdown_timeout=self.shutdown_timeout,
            autostart=self.autostart,
            log_requests=self.log_requests,
            log_responses=self.log_responses,
        )

    def get_runtime_info(self) -> Dict[str, Any]:
        """Get runtime configuration information."""
        return {
            "host": f"{self.host}:{self.port}",
            "slots": sorted(self.resolve_slots()),
            "request_timeout": self.request_timeout,
            "autostart": self.autostart,
        }


# Global settings instance with lazy initialization
_settings: Optional[BridgeSettings] = None


def get_settings() -> BridgeSettings:
    """Get or create settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = BridgeSettings()
    return _settings


def reload_settings() -> BridgeSettings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = BridgeSettings()
    return _settings
