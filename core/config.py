"""
core/config.py -- Centralized client configuration via pydantic-settings.

All environment variable reads for the directory client happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead, or accept a Settings instance from the composition root (client.py).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. api_base_url -> API_BASE_URL). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Normalizes the base URL and API prefix so the
      transport can join them without worrying about duplicate slashes.

Layer rule: core/ is the kernel. This module may not import from auth/, cache/,
directory/, or sync/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("bizdir.config")

_DEFAULT_STATE_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'bizdir_state.db'}"


class Settings(BaseSettings):
    """Client settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Remote API
    # ------------------------------------------------------------------

    api_base_url: str = "http://localhost:5000"
    # Every resource and auth route lives under this prefix on the server.
    api_prefix: str = "/api"
    request_timeout: float = 10.0

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    # Where a failed credential refresh sends the user.
    login_path: str = "/"

    # ------------------------------------------------------------------
    # Persisted client state
    # ------------------------------------------------------------------

    # Empty string disables on-disk persistence; blobs then live in memory.
    state_db_url: str = _DEFAULT_STATE_DB_URL

    # ------------------------------------------------------------------
    # Entity caches
    # ------------------------------------------------------------------

    inquiries_page_limit: int = 100

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def normalize_urls(self) -> "Settings":
        """Strip trailing slashes and make sure the prefix is rooted.

        "http://host:5000/" + "/api/" would otherwise produce "//" joins that
        some servers route differently.
        """
        self.api_base_url = self.api_base_url.rstrip("/")
        prefix = self.api_prefix.strip()
        if prefix and not prefix.startswith("/"):
            prefix = "/" + prefix
        self.api_prefix = prefix.rstrip("/")
        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be a positive number of seconds.")
        if self.inquiries_page_limit <= 0:
            raise ValueError("INQUIRIES_PAGE_LIMIT must be positive.")
        return self

    @property
    def api_root(self) -> str:
        """Base URL the transport sends every request against."""
        return f"{self.api_base_url}{self.api_prefix}"


@lru_cache
def get_settings() -> Settings:
    """Return the client Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and hand it to DirectoryClient.
    """
    return Settings()
