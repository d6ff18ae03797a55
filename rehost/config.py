"""Migration run configuration using Pydantic Settings for env var support.

Values are resolved, highest precedence first, from explicit overrides (CLI
flags), an optional JSON config file, ``REHOST_*`` environment variables, and
the legacy variable names earlier migration scripts read
(``AIRTABLE_API_KEY``, ``IMGUR_CLIENT_ID`` ...).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rehost.errors import ConfigError
from rehost.lib.json import JSONDecodeError, loads
from rehost.paths import config_home, safe_path_component, state_home

CONFIG_ENV = "REHOST_CONFIG"
DEFAULT_CONFIG_NAME = "config.json"
DEFAULT_SOURCE_API_URL = "https://api.airtable.com/v0"
DEFAULT_FIELD_MAP = {"MainImage": "MainImageLink"}


def _aliases(name: str, *legacy: str) -> AliasChoices:
    return AliasChoices(f"REHOST_{name.upper()}", *legacy)


class MigrationSettings(BaseSettings):
    """Everything one migration run needs to know."""

    model_config = SettingsConfigDict(
        env_prefix="REHOST_",
        extra="ignore",
        populate_by_name=True,
    )

    # Tabular source
    source_api_key: SecretStr | None = Field(default=None, validation_alias=_aliases("source_api_key", "AIRTABLE_API_KEY"))
    source_base_id: str | None = Field(default=None, validation_alias=_aliases("source_base_id", "AIRTABLE_BASE_ID"))
    source_table: str = Field(
        default="Articles",
        validation_alias=_aliases("source_table", "AIRTABLE_TABLE_NAME", "AIRTABLE_ARTICLES_TABLE"),
    )
    source_api_url: str = DEFAULT_SOURCE_API_URL

    # Field mapping: attachment field -> output URL field
    field_map: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FIELD_MAP))
    title_field: str = "Name"

    # Image host
    image_host: Literal["imgbb", "imgur"] = "imgbb"
    image_host_key: SecretStr | None = Field(default=None, validation_alias=_aliases("image_host_key"))
    # Per-provider keys; the one matching image_host fills image_host_key when it is unset
    imgbb_api_key: SecretStr | None = Field(default=None, validation_alias=_aliases("imgbb_api_key", "IMGBB_API_KEY"))
    imgur_client_id: SecretStr | None = Field(
        default=None, validation_alias=_aliases("imgur_client_id", "IMGUR_CLIENT_ID")
    )

    # Quota and retry policy
    quota_budget: int = Field(default=10, ge=1)
    quota_window: float = Field(default=3600.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=60.0, ge=0)
    backoff_jitter: float = Field(default=5.0, ge=0)
    record_retries: int = Field(default=0, ge=0)
    listing_retries: int = Field(default=3, ge=0)
    listing_retry_delay: float = Field(default=5.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)

    # Throughput knobs
    max_batch_size: int | None = Field(default=None, ge=1)
    concurrency: int = Field(default=1, ge=1, le=10)
    record_delay: float = Field(default=0.0, ge=0)

    # Reporting and state
    error_report_limit: int = Field(default=10, ge=0)
    migration_name: str | None = None
    checkpoint_path: Path | None = None

    @field_validator("field_map")
    @classmethod
    def validate_field_map(cls, v: dict[str, str]) -> dict[str, str]:
        if not v:
            raise ValueError("field_map must map at least one attachment field to an output field")
        cleaned: dict[str, str] = {}
        for attachment_field, output_field in v.items():
            if not str(attachment_field).strip() or not str(output_field).strip():
                raise ValueError("field_map keys and values must be non-empty")
            cleaned[str(attachment_field).strip()] = str(output_field).strip()
        outputs = list(cleaned.values())
        if len(set(outputs)) != len(outputs):
            raise ValueError("field_map output fields must be distinct")
        overlap = set(outputs) & set(cleaned)
        if overlap:
            raise ValueError(f"field_map output fields overlap attachment fields: {', '.join(sorted(overlap))}")
        return cleaned

    @field_validator("checkpoint_path", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip():
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v

    @model_validator(mode="after")
    def select_host_key(self) -> MigrationSettings:
        if self.image_host_key is None:
            self.image_host_key = self.imgbb_api_key if self.image_host == "imgbb" else self.imgur_client_id
        return self

    @model_validator(mode="after")
    def derive_state_location(self) -> MigrationSettings:
        if not self.migration_name:
            parts = [f"{attachment}-{output}" for attachment, output in self.field_map.items()]
            self.migration_name = safe_path_component("_".join(parts), fallback="migration")
        if self.checkpoint_path is None:
            self.checkpoint_path = state_home() / f"{safe_path_component(self.migration_name)}.json"
        return self

    @property
    def roles(self) -> list[str]:
        return list(self.field_map)

    @property
    def seconds_per_upload(self) -> float:
        return self.quota_window / self.quota_budget

    def require_credentials(self, *, image_host: bool = True) -> None:
        """Raise ConfigError when the run cannot reach its collaborators."""
        missing: list[str] = []
        if self.source_api_key is None or not self.source_api_key.get_secret_value():
            missing.append("source_api_key (REHOST_SOURCE_API_KEY / AIRTABLE_API_KEY)")
        if not self.source_base_id:
            missing.append("source_base_id (REHOST_SOURCE_BASE_ID / AIRTABLE_BASE_ID)")
        if image_host and (self.image_host_key is None or not self.image_host_key.get_secret_value()):
            missing.append(
                "image_host_key (REHOST_IMAGE_HOST_KEY, or IMGBB_API_KEY / IMGUR_CLIENT_ID for the selected host)"
            )
        if missing:
            raise ConfigError("Missing required settings: " + "; ".join(missing))


def _config_path(explicit: Path | None = None) -> Path | None:
    if explicit:
        return explicit.expanduser()
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()
    default = config_home() / DEFAULT_CONFIG_NAME
    return default if default.exists() else None


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    try:
        data = loads(raw)
    except JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def load_settings(path: Path | None = None, **overrides: Any) -> MigrationSettings:
    """Build settings from config file, environment, and explicit overrides."""
    data: dict[str, Any] = {}
    config_path = _config_path(path)
    if config_path is not None:
        data.update(_read_config_file(config_path))
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return MigrationSettings(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "CONFIG_ENV",
    "DEFAULT_FIELD_MAP",
    "MigrationSettings",
    "load_settings",
]
