from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DOCKER_DATA_DIR = Path("/var/lib/consult-dispatch")


def _in_container() -> bool:
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _default_home_dir() -> Path:
    if _in_container():
        return DOCKER_DATA_DIR
    return Path.home() / ".consult-dispatch"


DEFAULT_HOME_DIR = _default_home_dir()
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "store.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONSULT_DISPATCH_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    access_log_enabled: bool = False

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    database_pool_size: int = Field(default=15, gt=0)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout_seconds: float = Field(default=30.0, gt=0)

    http_timeout_seconds: float = Field(default=60.0, gt=0)
    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_connector_limit_per_host: int = Field(default=20, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=30.0, gt=0)
    http_client_dns_cache_ttl_seconds: int = Field(default=300, ge=0)

    # Stored job messages are capped to the width of the text column in the store.
    message_max_length: int = Field(default=3900, gt=0)

    run_lock_ttl_seconds: float = Field(default=3600.0, gt=0)
    account_lock_ttl_seconds: float = Field(default=3600.0, gt=0)

    approval_service_urls: Annotated[list[str], NoDecode] = Field(default_factory=list)
    approval_service_timeout_seconds: float = Field(default=120.0, gt=0)
    approval_timeout_seconds: int = Field(default=90, gt=0)
    approval_max_attempts: int = Field(default=1, gt=0)

    # Per-provider overrides, keyed by provider name. Missing keys fall back to the profile defaults.
    poll_delay_seconds: Annotated[dict[str, float], NoDecode] = Field(default_factory=dict)
    job_delay_seconds: Annotated[dict[str, float], NoDecode] = Field(default_factory=dict)

    # provider -> "package.module:factory"; the factory is called without arguments and returns the adapter.
    provider_adapters: Annotated[dict[str, str], NoDecode] = Field(default_factory=dict)

    # 0 disables the automatic sweep of jobs stuck in "processing" before a run claims work.
    stale_processing_minutes: int = Field(default=0, ge=0)

    tenant_superuser_ids: Annotated[list[int], NoDecode] = Field(default_factory=list)
    tenant_user_accounts: Annotated[dict[int, list[int]], NoDecode] = Field(default_factory=dict)
    tenant_team_ids: Annotated[list[int], NoDecode] = Field(default_factory=list)
    tenant_team_accounts: Annotated[list[int], NoDecode] = Field(default_factory=list)
    tenant_reserved_accounts: Annotated[list[int], NoDecode] = Field(default_factory=list)

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("approval_service_urls", mode="before")
    @classmethod
    def _normalize_approval_service_urls(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            entries = [entry.strip() for entry in value.split(",")]
        elif isinstance(value, list):
            entries = [entry.strip() for entry in value if isinstance(entry, str)]
        else:
            raise TypeError("approval_service_urls must be a list or comma-separated string")
        unique: list[str] = []
        for entry in entries:
            if entry and entry not in unique:
                unique.append(entry)
        return unique

    @field_validator(
        "tenant_superuser_ids",
        "tenant_team_ids",
        "tenant_team_accounts",
        "tenant_reserved_accounts",
        mode="before",
    )
    @classmethod
    def _parse_id_list(cls, value: object) -> list[int]:
        if value is None:
            return []
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return []
            if raw.startswith("["):
                value = json.loads(raw)
            else:
                value = [entry for entry in raw.split(",") if entry.strip()]
        if isinstance(value, (list, tuple, set)):
            return [int(entry) for entry in value]
        raise TypeError("expected a list of ids or a comma-separated string")

    @field_validator("tenant_user_accounts", mode="before")
    @classmethod
    def _parse_user_accounts(cls, value: object) -> dict[int, list[int]]:
        if value is None:
            return {}
        if isinstance(value, str):
            raw = value.strip()
            value = json.loads(raw) if raw else {}
        if not isinstance(value, dict):
            raise TypeError("tenant_user_accounts must be a JSON object of user id -> account ids")
        parsed: dict[int, list[int]] = {}
        for user_id, accounts in value.items():
            if isinstance(accounts, (int, str)):
                accounts = [accounts]
            parsed[int(user_id)] = [int(account_id) for account_id in accounts]
        return parsed

    @field_validator("poll_delay_seconds", "job_delay_seconds", mode="before")
    @classmethod
    def _parse_provider_delays(cls, value: object) -> dict[str, float]:
        if value is None:
            return {}
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return {}
            if raw.startswith("{"):
                value = json.loads(raw)
            else:
                pairs = [entry.split("=", 1) for entry in raw.split(",") if "=" in entry]
                value = {name.strip(): seconds for name, seconds in pairs}
        if not isinstance(value, dict):
            raise TypeError("expected provider=seconds pairs or a JSON object")
        return {str(name).strip().lower(): max(0.0, float(seconds)) for name, seconds in value.items()}

    @field_validator("provider_adapters", mode="before")
    @classmethod
    def _parse_provider_adapters(cls, value: object) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return {}
            if raw.startswith("{"):
                value = json.loads(raw)
            else:
                pairs = [entry.split("=", 1) for entry in raw.split(",") if "=" in entry]
                value = {name: target for name, target in pairs}
        if not isinstance(value, dict):
            raise TypeError("expected provider=module:factory pairs or a JSON object")
        parsed: dict[str, str] = {}
        for name, target in value.items():
            target = str(target).strip()
            if ":" not in target:
                raise ValueError(f"adapter target must look like 'module:factory', got {target!r}")
            parsed[str(name).strip().lower()] = target
        return parsed


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
