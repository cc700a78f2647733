from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_csv_list(v: Any, default: List[str]) -> List[str]:
    try:
        if v is None or v == "":
            return default.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return default.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or default.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or default.copy()
    except ValueError:
        return default.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="shadownews_repositories", alias="MONGODB_DB_NAME")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_csv_list(getattr(self, "cors_origins_raw", None), _DEFAULT_CORS)

    # CSV ingestion
    csv_max_rows: int = Field(default=10_000, alias="CSV_MAX_ROWS")
    csv_max_bytes: int = Field(default=10 * 1024 * 1024, alias="CSV_MAX_BYTES")
    csv_preview_rows: int = Field(default=10, alias="CSV_PREVIEW_ROWS")
    csv_sample_rows: int = Field(default=20, alias="CSV_SAMPLE_ROWS")

    # Validation
    validation_mx_check: bool = Field(default=False, alias="VALIDATION_MX_CHECK")
    mx_timeout_seconds: float = Field(default=3.0, alias="MX_TIMEOUT_SECONDS")
    disposable_domains_extra_raw: str = Field(
        default="",
        alias="DISPOSABLE_DOMAINS_EXTRA",
        description="Comma-separated or JSON list of extra disposable domains",
    )
    domain_reputation_file: str | None = Field(default=None, alias="DOMAIN_REPUTATION_FILE")

    @property
    def disposable_domains_extra(self) -> List[str]:
        return [d.lower() for d in _parse_csv_list(self.disposable_domains_extra_raw, [])]

    # Repositories
    default_quality_threshold: float = Field(default=0.0, ge=0.0, le=1.0, alias="DEFAULT_QUALITY_THRESHOLD")
    growth_window_days: int = Field(default=30, alias="GROWTH_WINDOW_DAYS")
    min_karma_to_create_repository: int = Field(default=0, alias="MIN_KARMA_TO_CREATE_REPOSITORY")


@lru_cache
def get_settings() -> Settings:
    return Settings()
