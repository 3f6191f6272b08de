"""
config/settings.py — Disgordian Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - GatewayConfig rejects a shard index outside [0, shard_count)
  - GatewayConfig keeps large_threshold inside the 50..250 window the
    gateway accepts
  - validate_all() performs full startup validation and raises ConfigError
    with a clear, human-readable message listing every problem found
  - load_settings() respects DISGORDIAN_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_ENCODINGS  = {"json"}


def _default_properties() -> dict[str, str]:
    return {
        "$os": "linux",
        "$browser": "Disgordian",
        "$device": "Disgordian",
        "$referrer": "",
        "$referring_domain": "",
    }


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class GatewayConfig(BaseModel):
    api_base_url: str = "https://discord.com/api"
    version: int = 5
    encoding: str = "json"
    compress: bool = False
    large_threshold: int = 250
    shard: list[int] = Field(default_factory=lambda: [0, 1])
    properties: dict[str, str] = Field(default_factory=_default_properties)
    drain_timeout_seconds: float = 5.0
    max_message_size: int = 2**20

    @field_validator("version")
    @classmethod
    def _positive_version(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway.version must be >= 1")
        return v

    @field_validator("encoding")
    @classmethod
    def _known_encoding(cls, v: str) -> str:
        if v not in _VALID_ENCODINGS:
            raise ValueError(
                f"gateway.encoding '{v}' is not supported. "
                f"Supported: {sorted(_VALID_ENCODINGS)}"
            )
        return v

    @field_validator("large_threshold")
    @classmethod
    def _valid_threshold(cls, v: int) -> int:
        if not (50 <= v <= 250):
            raise ValueError("gateway.large_threshold must be between 50 and 250")
        return v

    @field_validator("shard")
    @classmethod
    def _valid_shard(cls, v: list[int]) -> list[int]:
        if len(v) != 2:
            raise ValueError("gateway.shard must be [shard_index, shard_count]")
        index, count = v
        if count < 1 or not (0 <= index < count):
            raise ValueError(
                f"gateway.shard index must be in [0, shard_count), got {v}"
            )
        return v

    @field_validator("drain_timeout_seconds")
    @classmethod
    def _non_negative_drain(cls, v: float) -> float:
        if v < 0:
            raise ValueError("gateway.drain_timeout_seconds must be >= 0")
        return v

    @property
    def query_suffix(self) -> str:
        return f"?v={self.version}&encoding={self.encoding}"


class CommandsConfig(BaseModel):
    prefix: str = "!"

    @field_validator("prefix")
    @classmethod
    def _non_empty_prefix(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("commands.prefix must not be empty")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Disgordian runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    bot_token: Optional[str] = Field(default=None, alias="DISCORD_BOT_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("bot_token", mode="before")
    @classmethod
    def _blank_token_is_none(cls, v: Any) -> Optional[str]:
        if v in (None, "", "null"):
            return None
        return str(v).strip()

    @field_validator("gateway", mode="before")
    @classmethod
    def _coerce_gateway(cls, v: Any) -> Any:
        return GatewayConfig(**v) if isinstance(v, dict) else v

    @field_validator("commands", mode="before")
    @classmethod
    def _coerce_commands(cls, v: Any) -> Any:
        return CommandsConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> Optional[bool]:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time;
        this catches what only matters once we are about to connect.
        """
        errors: list[str] = []

        # ── Credential ───────────────────────────────────────────────────────
        if not self.bot_token:
            errors.append(
                "DISCORD_BOT_TOKEN is not set. Add it to your .env file "
                "or pass --token."
            )

        # ── REST base URL ────────────────────────────────────────────────────
        base = self.gateway.api_base_url.strip()
        if not base:
            errors.append("gateway.api_base_url must not be empty.")
        elif not base.startswith(("http://", "https://")):
            errors.append(
                f"gateway.api_base_url '{base}' must start with http:// or https://"
            )

        # ── Identify properties ──────────────────────────────────────────────
        if "$os" not in self.gateway.properties:
            errors.append("gateway.properties must include '$os'.")

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nDisgordian startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"gateway", "commands", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. DISGORDIAN_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("DISGORDIAN_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> Settings:
    """
    Load settings by merging config.yaml with environment variables.

    Keyword overrides (e.g. DISCORD_BOT_TOKEN from --token) win over both.
    """
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    init_kwargs.update({k: v for k, v in overrides.items() if v is not None})

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading the default config
    on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{
                    k: v
                    for k, v in _load_yaml(_resolve_config_path(None)).items()
                    if k in _KNOWN_SECTIONS
                }
            )
    return _singleton
