import logging
import sys

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

from providerhub.utils.rename import RenameRule


def setup_logging():
    """Configure application logging."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# Initialize logging on import
setup_logging()

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Remote provider backend (platform/key/model CRUD)
    backend_url: str = "http://localhost:8080"
    backend_token: Optional[str] = None
    backend_api_prefix: str = "/api"

    # Timeout settings (seconds)
    backend_timeout: float = 10.0
    provider_timeout: float = 30.0

    # Retry direct model listing through the backend's /proxy endpoint
    use_proxy_fallback: bool = True

    # Batch defaults (overridable per request)
    auto_confirm: bool = False
    auto_rename: bool = False
    rename_rules: List[RenameRule] = Field(default_factory=list)

    # Finished jobs kept in memory; older ones are dropped when a new job is created
    max_finished_jobs: int = 50

    # Admin API authentication (routes are open when unset)
    admin_token: Optional[str] = None

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False


def warn_if_unprotected():
    """Log a warning when the admin API runs without a token."""
    if not settings.admin_token:
        logger.warning("=" * 60)
        logger.warning("ADMIN_TOKEN is not set: batch routes are unauthenticated.")
        logger.warning("Set ADMIN_TOKEN in your .env file to protect them.")
        logger.warning("=" * 60)


settings = Settings()
