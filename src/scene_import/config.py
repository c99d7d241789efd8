from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True, frozen=True,
    )

    # Database
    database_url: str = Field("sqlite:///./scene_imports.db", alias="DATABASE_URL")

    # File store
    storage_backend: Literal["local", "supabase"] = Field("local", alias="STORAGE_BACKEND")
    upload_dir: str = Field("/tmp/scene_imports", alias="UPLOAD_DIR")
    supabase_url: str | None = Field(None, alias="SUPABASE_URL")
    supabase_service_role_key: str | None = Field(None, alias="SUPABASE_SERVICE_ROLE_KEY")
    storage_bucket: str = Field("scene-imports", alias="STORAGE_BUCKET")

    # LLM
    ai_provider: Literal["openai", "google"] = Field("openai", alias="AI_PROVIDER")
    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    google_api_key: str | None = Field(None, alias="GOOGLE_API_KEY")
    vision_model: str = Field("gpt-4o-mini", alias="VISION_MODEL")              # batched page transcription
    structuring_model: str = Field("gpt-4o-mini", alias="STRUCTURING_MODEL")    # text -> ParsedScene
    structuring_temperature: float = Field(0.2, alias="STRUCTURING_TEMPERATURE")
    remote_ocr_timeout_ms: int = Field(45000, alias="REMOTE_OCR_TIMEOUT_MS")
    structuring_timeout_ms: int = Field(60000, alias="STRUCTURING_TIMEOUT_MS")

    # Extraction limits
    max_file_size_bytes: int = Field(10 * 1024 * 1024, alias="MAX_FILE_SIZE_BYTES")
    max_pages_per_document: int = Field(10, alias="MAX_PAGES_PER_DOCUMENT")
    pdf_ocr_scale: float = Field(1.5, alias="PDF_OCR_SCALE")
    tesseract_lang: str = Field("fra+eng", alias="TESSERACT_LANG")

    # Feature flags
    require_ai_consent: bool = Field(False, alias="REQUIRE_AI_CONSENT")
    allow_local_ocr_fallback: bool = Field(True, alias="ALLOW_LOCAL_OCR_FALLBACK")
    allow_heuristic_structuring: bool = Field(True, alias="ALLOW_HEURISTIC_STRUCTURING")
    soft_timeout_ms: int = Field(0, alias="IMPORT_SOFT_TIMEOUT_MS")            # 0 = disabled

    # Stale job sweep
    cron_secret: str | None = Field(None, alias="CRON_SECRET")
    sweep_interval_minutes: int = Field(0, alias="SWEEP_INTERVAL_MINUTES")     # 0 = no in-process scheduler
    sweep_stale_minutes: int = Field(10, alias="SWEEP_STALE_MINUTES", ge=1)
    sweep_batch_limit: int = Field(5, alias="SWEEP_BATCH_LIMIT", ge=1)

    # App
    app_host: str = Field("0.0.0.0", alias="APP_HOST")
    app_port: int = Field(8000, alias="APP_PORT")
    debug: bool = Field(False, alias="DEBUG")

    @property
    def remote_ai_configured(self) -> bool:
        if self.ai_provider == "google":
            return bool(self.google_api_key)
        return bool(self.openai_api_key)


settings = Settings()
