"""
Application Configuration Module.

Manages application settings and environment variables using Pydantic for validation.
Provides centralized configuration management with type safety and validation.

Features:
- Environment variable loading and validation
- Secure credential management
- Batch and page size tuning for GitHub queries
- Repository list parsing
"""

from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from logger import LogManager


class Settings(BaseSettings):
    """
    Application configuration settings with validation.

    Manages and validates all application settings including:
    - Application identification
    - GitHub endpoints and authentication
    - Organization access control
    - Batch orchestration tuning
    - Logging settings
    - Cache persistence

    Attributes:
        app_name (str): Name of the application
        dev (bool): Debug mode flag
        log_dir (str): Directory for log files
        log_level (int): Logging level (default: info)
        github_api_url (str): GitHub REST API base URL
        github_graphql_url (str): GitHub GraphQL endpoint
        github_token (Optional[SecretStr]): Token used by the command line entry point
        allowed_org (str): Organization whose members may use the dashboard
        repositories (str): Comma-separated repositories ("owner/name" or URLs)
        batch_size (int): Repositories per combined query
        batch_delay_seconds (float): Pause between successive batches
        commits_per_repo (int): Commit history page size per repository
        prs_per_repo (int): Merged pull request page size per repository
        display_limit (int): Records kept per list for display
        rate_limit (int): Hourly GitHub API call budget
        request_timeout (float): HTTP timeout in seconds
        graphql_max_attempts (int): Attempts for transient combined query failures
        cache_file (Optional[str]): JSON file used to persist cached results
    """

    # Application settings
    app_name: str = Field(default="ReleaseRadar", description="Application name")
    dev: bool = Field(default=False, description="Debug mode")
    log_dir: str = Field(default="logs", description="Logging directory")
    log_level: int = Field(default=20, description="Logging level, default info")

    # GitHub configuration
    github_api_url: str = Field(
        default="https://api.github.com", description="GitHub REST API base URL"
    )
    github_graphql_url: str = Field(
        default="https://api.github.com/graphql", description="GitHub GraphQL URL"
    )
    github_token: Optional[SecretStr] = Field(
        default=None, description="GitHub token for the command line entry point"
    )
    allowed_org: str = Field(
        default="dronedeploy", description="Organization allowed to use the dashboard"
    )
    repositories: str = Field(
        default="", description="Comma-separated repositories to track"
    )

    # Batch orchestration
    batch_size: int = Field(default=10, ge=1, le=50)
    batch_delay_seconds: float = Field(default=0.1, ge=0.0)
    commits_per_repo: int = Field(default=30, ge=1, le=100)
    prs_per_repo: int = Field(default=30, ge=1, le=100)
    display_limit: int = Field(default=10, ge=1)

    # Rate and transport
    rate_limit: int = Field(default=5000, gt=0, description="Hourly API call budget")
    request_timeout: float = Field(default=30.0, gt=0.0)
    graphql_max_attempts: int = Field(default=3, ge=1)

    # Cache persistence
    cache_file: Optional[str] = Field(
        default=None, description="Optional JSON file for cached results"
    )

    @property
    def repository_names(self) -> List[str]:
        """
        Get list of repositories from configuration.

        Splits and cleans the comma-separated repositories string.

        Returns:
            List[str]: List of non-empty repository entries
        """
        return [repo.strip() for repo in self.repositories.split(",") if repo.strip()]

    @property
    def api_hosts(self) -> List[str]:
        """Hosts whose calls count against the GitHub rate budget."""
        hosts = {
            urlparse(self.github_api_url).hostname,
            urlparse(self.github_graphql_url).hostname,
        }
        return sorted(host for host in hosts if host)

    @field_validator("github_api_url", "github_graphql_url")
    def strip_trailing_slash(cls, v: str) -> str:
        """
        Normalize endpoint URLs.

        Args:
            v (str): URL to validate

        Returns:
            str: URL without trailing slash
        """
        return v.rstrip("/")

    # Configure env file loading
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields in .env file
    )


# Create global settings instance
settings = Settings()

# Initialize logging configuration
logger = LogManager(
    app_name=settings.app_name.lower(),
    log_dir=settings.log_dir,
    development=settings.dev,
    level=settings.log_level,
).logger
