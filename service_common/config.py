"""
Shared configuration management for services.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="SERVICE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Token issuer. The service only trusts tokens minted by this authority
    # and addressed to its own audience identifier.
    authority: str = Field(default="http://localhost:4444")
    audience: str = Field(default="http://localhost:4445")
    public_key_path: Optional[str] = Field(default=None)
    jwks_url: Optional[str] = Field(default=None)
    token_algorithms: List[str] = Field(default_factory=lambda: ["RS256"])

    # Database
    postgres_dsn: str = Field(default="postgresql://localhost:5432/service")
    db_min_connections: int = Field(default=2)
    db_max_connections: int = Field(default=25)
    db_max_idle_seconds: float = Field(default=900.0)
    repository_timeout: float = Field(default=3.0)

    # Shutdown
    shutdown_timeout: float = Field(default=5.0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
