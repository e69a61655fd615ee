"""Configuration management for the release updater."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from dotenv import dotenv_values
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from release_updater.errors import ConfigurationError

ADMIN_USERNAME_KEY = "DJANGO_SUPERUSER_USERNAME"
ADMIN_EMAIL_KEY = "DJANGO_SUPERUSER_EMAIL"
ADMIN_PASSWORD_KEY = "DJANGO_SUPERUSER_PASSWORD"


class Settings(BaseSettings):
    """Updater settings loaded from ``UPDATER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="UPDATER_",
        env_file="updater.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Release service
    github_repo: str = Field(
        default="McEazy2700/Slate-CBT", description="owner/name of the release repository"
    )
    github_token: SecretStr | None = Field(
        default=None, description="Optional token for authenticated API calls"
    )
    api_base_url: str = Field(default="https://api.github.com", description="GitHub API base URL")
    archive_suffix: str = Field(default=".tar.gz", description="Release asset name suffix")

    # Deployment tree
    project_root: Path = Field(default=Path("."), description="Deployment root directory")
    version_file: str = Field(default="VERSION.txt", description="Local version record")
    download_filename: str = Field(default="latest.tar.gz", description="Downloaded archive name")
    staging_dir_name: str = Field(
        default="temp_update_bundle", description="Staging directory name under the root"
    )
    preserve_dir_name: str = Field(
        default="migrations", description="Directory name preserved wherever it is found"
    )
    additional_preserve_paths: Annotated[
        list[str],
        Field(default_factory=list, description="Extra root-relative paths to preserve"),
    ]
    keep_entries: Annotated[
        list[str],
        Field(default_factory=list, description="Top-level names never cleared from the root"),
    ]
    lock_filename: str = Field(default=".update.lock", description="Run lock file name")

    # Post-update actions
    admin_config_path: Path = Field(
        default=Path("/etc/slatemd/cbt.conf"), description="Admin account credentials file"
    )
    compose_service: str = Field(default="web", description="Service running manage.py")

    # Timeouts (seconds)
    http_timeout: float = Field(default=30.0, description="Release API timeout")
    download_timeout: float = Field(default=300.0, description="Archive download timeout")
    compose_timeout: int = Field(default=1200, description="Compose command timeout")

    # Application
    require_root: bool = Field(default=True, description="Refuse to mutate unless run as root")
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def latest_release_url(self) -> str:
        """Get the latest-release endpoint for the configured repository."""
        return f"{self.api_base_url.rstrip('/')}/repos/{self.github_repo}/releases/latest"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@dataclass(frozen=True)
class AdminCredentials:
    """Administrative account reconciled after every update."""

    username: str
    email: str
    password: SecretStr


def load_admin_credentials(path: Path) -> AdminCredentials:
    """Read the admin account from a shell-style ``KEY="value"`` file.

    Raises:
        ConfigurationError: the file is missing or lacks one of the keys.
    """
    if not path.is_file():
        raise ConfigurationError(f"Admin config file not found at {path}")

    values = dotenv_values(path)
    missing = [
        key
        for key in (ADMIN_USERNAME_KEY, ADMIN_EMAIL_KEY, ADMIN_PASSWORD_KEY)
        if not values.get(key)
    ]
    if missing:
        raise ConfigurationError(f"Admin config {path} is missing: {', '.join(missing)}")

    return AdminCredentials(
        username=str(values[ADMIN_USERNAME_KEY]),
        email=str(values[ADMIN_EMAIL_KEY]),
        password=SecretStr(str(values[ADMIN_PASSWORD_KEY])),
    )
