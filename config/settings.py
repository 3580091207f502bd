"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream backend (FastAPI / Azure Functions)
    api_base_url: Optional[str] = None
    api_internal_secret: Optional[str] = None
    reportmate_passphrase: Optional[str] = None
    user_agent: str = "ReportMate-Frontend/1.0"

    # Optional direct database access for bulk module data
    database_url: Optional[str] = None

    # Authentication boundary
    # Session tokens are checked by an external verifier; this only
    # controls the development shortcut for requests from localhost.
    auth_bypass_localhost: bool = False

    # Fan-out defaults (per-endpoint policies may override)
    fanout_batch_size: int = 10
    fanout_item_timeout: float = 30.0
    fanout_batch_pause: float = 0.1

    # Max seconds a request waits on another request's in-flight refresh
    coalesce_timeout: float = 60.0

    # Number of events requested from the upstream events feed
    events_limit: int = 100

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
