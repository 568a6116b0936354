from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    gemini_api_key: str
    gemini_api_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.5-flash-lite"
    provider_timeout_seconds: float = 60.0
    file_poll_attempts: int = 10
    file_poll_interval_ms: int = 2000

    max_file_size_mb: int = 20
    max_pdf_pages: int = 50
    min_image_width: int = 800
    min_image_height: int = 600
    min_pdf_width: int = 500
    min_pdf_height: int = 500

    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_jitter_ms: int = 1000
    extraction_timeout_seconds: float | None = None

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
