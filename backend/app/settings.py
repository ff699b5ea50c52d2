from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = REPO_ROOT / ".env"
DEFAULT_STATIC_DIR = Path(__file__).resolve().parent / "static"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore"
    )

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    DEBUG: bool = False
    STATIC_DIR: Path = DEFAULT_STATIC_DIR

    # Google Places Text Search
    GOOGLE_MAPS_API_KEY: str | None = None
    PLACES_TEXT_SEARCH_URL: str = "https://maps.googleapis.com/maps/api/place/textsearch/json"
    PLACES_TIMEOUT_SECONDS: float = 10.0
    PLACES_MAX_RESULTS: int = 5

    # Chat-completion endpoint used to structure the query. The base URL is used
    # as-is, no "/v1" is appended.
    LLM_API_BASE_URL: str | None = None
    LLM_API_KEY: str | None = None
    LLM_MODEL: str = "llama-3"
    LLM_TIMEOUT_SECONDS: float = 5.0

    # CORS allow origins (comma-separated, "*" for any)
    CORS_ALLOW_ORIGINS: str = "*"

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 100  # per window per client
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    PLACES_RATE_LIMIT_REQUESTS: int = 20
    PLACES_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Only trust X-Forwarded-For headers from these proxies (comma-separated IPs/CIDRs).
    # "*" trusts everyone; empty never trusts the header.
    TRUSTED_PROXIES: str = ""

    # Observability
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2

    @field_validator(
        "GOOGLE_MAPS_API_KEY", "LLM_API_BASE_URL", "LLM_API_KEY", "SENTRY_DSN", mode="before"
    )
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("LLM_MODEL", mode="before")
    @classmethod
    def _default_model(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return "llama-3"
        return value

    @property
    def llm_configured(self) -> bool:
        return bool(self.LLM_API_BASE_URL and self.LLM_API_KEY and self.LLM_MODEL)

    @property
    def places_configured(self) -> bool:
        return bool(self.GOOGLE_MAPS_API_KEY)

    @property
    def llm_base_url(self) -> str:
        return (self.LLM_API_BASE_URL or "").rstrip("/")

    @property
    def allow_origins(self) -> list[str]:
        s = (self.CORS_ALLOW_ORIGINS or "").strip()
        if s == "*":
            return ["*"]
        if s == "":
            return []
        return [part.strip() for part in s.split(",") if part.strip()]


settings = Settings()
