"""
Configuration management for the contact form installer.

Provides declarative configuration loading from environment variables
and an optional ``.env`` file, plus YAML helpers shared by the
configuration generator.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class InstallerSettings(BaseSettings):
    """Settings for the installation service.

    Provides everything the installer needs to know about its host:
    - Service identity
    - Install root and session storage
    - Qualification thresholds
    - Database and network timeouts
    - Password hashing cost parameters
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTACT_SETUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service identity
    service_name: str = Field("contact-setup", description="Service name used for logging and health")
    service_version: str = Field("1.0.0", description="Service version")
    environment: str = Field("production", description="Environment written into generated artifacts")

    # Observability
    log_level: str = Field("INFO", description="Logging level")

    # Installation target
    install_root: Path = Field(default_factory=Path.cwd, description="Directory receiving artifacts and markers")
    site_url: str = Field("http://localhost", description="Public base URL of the contact form site")

    # Session storage
    redis_url: Optional[str] = Field(None, description="Redis URL; in-memory sessions when unset")
    session_ttl_seconds: int = Field(7200, description="Idle expiry of an installation session")
    session_cookie_name: str = Field("contact_setup_session", description="Cookie carrying the session token")

    # Qualification
    min_python_version: str = Field("3.10.0", description="Minimum supported runtime version")
    recommended_python_version: str = Field("3.12.0", description="Recommended runtime version")
    connectivity_url: str = Field(
        "https://raw.githubusercontent.com/GlowHost-Matt/contact-form-sales/main/AI-CONTEXT.md",
        description="Endpoint probed by the connectivity check",
    )
    connectivity_timeout_seconds: float = Field(15.0, description="Reachability probe timeout")
    connectivity_required: bool = Field(
        True,
        description="Treat probe failure as critical (update/download feature enabled)",
    )

    # Database
    database_connect_timeout_seconds: int = Field(10, description="Database connection timeout")
    default_database_host: str = Field("localhost", description="Host used when a request omits it")
    default_database_port: int = Field(3306, description="Port used when a request omits it")

    # Password hashing (argon2id)
    password_time_cost: int = Field(4, description="Argon2 iterations")
    password_memory_cost: int = Field(65536, description="Argon2 memory in KiB")
    password_parallelism: int = Field(3, description="Argon2 lanes")

    @property
    def admin_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/admin/"

    @property
    def contact_form_url(self) -> str:
        return f"{self.site_url.rstrip('/')}/"


@lru_cache(maxsize=1)
def get_settings() -> InstallerSettings:
    """Return the process-wide settings instance."""
    return InstallerSettings()


def dump_yaml(data: Dict[str, Any], header: Optional[str] = None) -> str:
    """Render a mapping as YAML, optionally preceded by a comment header.

    Args:
        data: Mapping to serialize
        header: Comment text; each line is prefixed with ``#``

    Returns:
        YAML document text
    """
    body = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    if not header:
        return body
    comment = "\n".join(f"# {line}".rstrip() for line in header.splitlines())
    return f"{comment}\n{body}"


def load_yaml(filepath: Path | str) -> Dict[str, Any]:
    """Load a YAML mapping from disk.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If the document is empty or not a mapping
    """
    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Empty or invalid YAML in {filepath}")

    return data
