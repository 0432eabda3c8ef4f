"""Configuration management for the deployment orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass(slots=True)
class Settings:
    """Application configuration loaded from environment variables."""

    environment_name: str
    stub_mode: bool
    database_path: Path
    request_timeout_seconds: float
    drain_grace_seconds: float
    drain_timeout_seconds: float
    routing_api_url: Optional[str]
    routing_upstream: str
    routing_api_token: Optional[str]
    metrics_api_url: Optional[str]
    install_command: Optional[str]
    install_timeout_seconds: float
    target_inventory_path: Optional[Path]
    log_level: str

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Create settings from environment variables (optionally loading a .env file)."""
        if env_file:
            load_dotenv(env_file, override=True)
        else:
            load_dotenv(override=False)

        environment_name = _determine_environment_name(os.environ.get("ENVIRONMENT_NAME", "dev"))
        stub_mode = _to_bool(os.environ.get("STUB_MODE", "false"))

        routing_api_url = os.environ.get("ROUTING_API_URL") or None
        install_command = os.environ.get("INSTALL_COMMAND") or None
        if not stub_mode and not (routing_api_url and install_command):
            raise ValueError(
                "ROUTING_API_URL and INSTALL_COMMAND must be set unless STUB_MODE is enabled"
            )

        database_path = _resolve_database_path(
            os.environ.get("DATABASE_PATH", "./data/deploy-orchestrator.db"),
            environment_name,
        )
        database_path.parent.mkdir(parents=True, exist_ok=True)

        inventory = os.environ.get("TARGET_INVENTORY_PATH")

        return cls(
            environment_name=environment_name,
            stub_mode=stub_mode,
            database_path=database_path,
            request_timeout_seconds=float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "600")),
            drain_grace_seconds=float(os.environ.get("DRAIN_GRACE_SECONDS", "15")),
            drain_timeout_seconds=float(os.environ.get("DRAIN_TIMEOUT_SECONDS", "60")),
            routing_api_url=routing_api_url,
            routing_upstream=os.environ.get("ROUTING_UPSTREAM", "default"),
            routing_api_token=os.environ.get("ROUTING_API_TOKEN"),
            metrics_api_url=os.environ.get("METRICS_API_URL") or None,
            install_command=install_command,
            install_timeout_seconds=float(os.environ.get("INSTALL_TIMEOUT_SECONDS", "300")),
            target_inventory_path=Path(inventory).expanduser() if inventory else None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings.from_env()


def _to_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _determine_environment_name(raw: str) -> str:
    name = raw.strip() or "dev"
    return name.replace(" ", "-").lower()


def _resolve_database_path(raw: str, environment_name: str) -> Path:
    input_path = Path(raw).expanduser()

    # Treat trailing slash or lack of suffix as a directory hint.
    is_directory_hint = raw.endswith("/") or input_path.suffix == ""

    if is_directory_hint:
        directory = input_path.resolve()
        directory.mkdir(parents=True, exist_ok=True)
        return (directory / f"deploy-orchestrator-{environment_name}.db").resolve()

    resolved = input_path.resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    if environment_name in resolved.stem.split("-"):
        return resolved
    return resolved.with_name(f"{resolved.stem}-{environment_name}{resolved.suffix}")
