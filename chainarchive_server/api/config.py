"""
Configuration for the Chain Archive HTTP API.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """HTTP API configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="API bind host")
    port: int = Field(default=5000, description="API bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )

    # Pagination defaults
    default_page_size: int = Field(default=100, description="Default products per page")
    max_page_size: int = Field(default=500, description="Maximum products per page")

    export_filename: str = Field(
        default="supplychain-archive-backup.json",
        description="Attachment name for /api/export",
    )

    model_config = {"env_prefix": "ARCHIVE_API_"}

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"
