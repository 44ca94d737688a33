"""access_import.config

Service settings.

Resolution order (later wins):
  1. field defaults
  2. YAML file (top-level mapping, or the mapping under an `access_import:` key)
  3. ACCESS_IMPORT_<FIELD> environment variables

Usage:
    from pathlib import Path
    from access_import.config import load_settings

    settings = load_settings(Path("config/access_import.yml"))
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class SettingsError(ValueError):
    """Raised when a settings file or environment override is invalid."""


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = Field(3000, ge=1, le=65535)
    # PostgreSQL DSN; empty means the in-memory directory
    db_dsn: str = ""
    # Connection pool size when row_workers is 0 (unbounded rows)
    db_pool_size: int = Field(20, ge=1)
    upload_dir: Path = Path("uploads")
    keep_uploads: bool = False
    # Fixed pause before each row so progress is visible; 0 disables
    row_delay_seconds: float = Field(1.0, ge=0)
    max_rows: int = Field(10_000, ge=0)
    # Concurrent rows per file; 0 means unbounded
    row_workers: int = Field(32, ge=0)
    # Concurrent files per process
    unit_workers: int = Field(4, ge=1)
    serialize_rows: bool = True
    disposable_domains_path: Path | None = None
    dns_lifetime_seconds: float = Field(5.0, gt=0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_IMPORT_",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="forbid",
        frozen=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; the environment overrides them.
        return (env_settings, init_settings)

    def replace(self, **changes: Any) -> Settings:
        """Return a copy with non-None changes applied (CLI overrides)."""
        return self.model_copy(update={k: v for k, v in changes.items() if v is not None})

    def pool_size(self, units: int | None = None) -> int:
        """Connections needed for `units` concurrent files (default unit_workers)."""
        if self.row_workers == 0:
            return self.db_pool_size
        return self.row_workers * (units or self.unit_workers)


def load_settings(path: Path | None = None) -> Settings:
    data: Any = {}
    if path is not None:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if isinstance(data, dict) and "access_import" in data:
            data = data["access_import"] or {}
        if not isinstance(data, dict):
            raise SettingsError(f"{path}: YAML root must be a mapping.")

    try:
        return Settings(**data)
    except ValidationError as exc:
        source = str(path) if path is not None else "environment"
        raise SettingsError(f"Invalid settings ({source}): {exc}") from exc
