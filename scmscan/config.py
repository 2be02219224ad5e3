"""Configuration management for the SCM scan engine."""

from pathlib import Path
from typing import cast

from pydantic import AnyHttpUrl, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScannerSettings(BaseSettings):
    """Scanner settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_prefix="SCMSCAN_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    github_api_url: AnyHttpUrl = Field(
        default=cast("AnyHttpUrl", "https://api.github.com"),
        description="Base URL for the GitHub REST API.",
    )
    gitlab_api_url: AnyHttpUrl = Field(
        default=cast("AnyHttpUrl", "https://gitlab.com"),
        description="GitLab host used when a repository URL does not carry one.",
    )
    bitbucket_cloud_api_url: AnyHttpUrl = Field(
        default=cast("AnyHttpUrl", "https://api.bitbucket.org/2.0"),
        description="Base URL for the Bitbucket Cloud REST API.",
    )
    azure_devops_api_url: AnyHttpUrl = Field(
        default=cast("AnyHttpUrl", "https://dev.azure.com"),
        description="Azure DevOps host used when a repository URL does not carry an organization.",
    )
    first_scan_from_months: int = Field(
        default=6,
        ge=1,
        description="How far back a first scan looks when no watermark or since date is given.",
    )
    max_merge_requests_per_scan: int = Field(
        default=5000,
        ge=1,
        description="Page size used when loading stored open merge requests.",
    )
    open_merge_request_max_pages: int = Field(
        default=10,
        ge=1,
        description="Upper bound on pages of stored open merge requests loaded per scan.",
    )
    refresh_default_lookback_months: int = Field(
        default=3,
        ge=0,
        description="Refresh window used when no stored open merge request has an updated timestamp.",
    )
    refresh_max_lookback_months: int = Field(
        default=6,
        ge=1,
        description="Maximum lookback of the open merge request refresh window.",
    )
    per_page: int = Field(
        default=100,
        ge=20,
        le=100,
        description="Number of items to request per platform API page.",
    )
    http_timeout: float = Field(default=60.0, gt=0, description="HTTP timeout in seconds.")
    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts made when a platform answers HTTP 429.",
    )
    rate_limit_enabled: bool = Field(default=True, description="Enable call budget tracking.")
    rate_limit_threshold: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Usage ratio at which further calls wait for the budget to reset.",
    )
    rate_limit_max_cooldown_hours: int = Field(
        default=24,
        ge=0,
        description="Longest cooldown the limiter is willing to sleep through.",
    )
    rate_limit_fail_on_excessive_cooldown: bool = Field(
        default=False,
        description="Fail instead of proceeding when the cooldown exceeds the maximum.",
    )
    rate_limit_reset_buffer_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Extra seconds slept after a platform reset time.",
    )
    max_concurrency: int = Field(
        default=5,
        ge=1,
        le=32,
        description="Maximum number of repositories scanned concurrently.",
    )
    store_dir: Path = Field(
        default=Path("data/store"),
        description="Directory holding the JSONL record store.",
    )
    clone_dir: Path = Field(
        default=Path("data/clones"),
        description="Working directory for repository clones.",
    )

    @model_validator(mode="after")
    def _check_refresh_window(self) -> "ScannerSettings":
        if self.refresh_default_lookback_months > self.refresh_max_lookback_months:
            msg = "SCMSCAN_REFRESH_DEFAULT_LOOKBACK_MONTHS must not exceed SCMSCAN_REFRESH_MAX_LOOKBACK_MONTHS"
            raise ValueError(msg)
        return self


def load_settings() -> ScannerSettings:
    """Load scanner settings from supported sources."""
    return ScannerSettings()
