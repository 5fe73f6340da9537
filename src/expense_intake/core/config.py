from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    log_level: str = "INFO"
    cors_origins: str = "*"

    database_url: str = "sqlite:///./expense_intake.db"

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")
    signed_reference_ttl_seconds: int = 60 * 15

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "receipts"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    recognition_url: str = "http://localhost:54321/functions/v1/ai-extract-expense"
    recognition_api_key: str | None = None
    recognition_provider: str = "GEMINI"
    recognition_timeout_seconds: float = 60.0
    recognition_legacy_enabled: bool = False
    recognition_legacy_url: str = "http://localhost:54321/functions/v1/extract-receipt"

    default_currency: str = "EUR"

    # Dev bootstrap: seeds one account with a starter category set.
    init_account_name: str | None = None
    init_account_monthly_limit: int | None = None
    init_account_categories: str = "Transporte,Comidas,Alojamiento,Otros"


settings = Settings()
