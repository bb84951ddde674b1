from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    # Loads keys from process env, and also from a local .env file for convenience.
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    log_level: str = "INFO"

    # Generation (OpenRouter speaks the OpenAI chat completions protocol)
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_image_model: str = "google/gemini-2.5-flash-image-preview"
    openrouter_referer: str | None = None
    openrouter_title: str | None = None
    generation_timeout_seconds: float = 55.0

    # Whole-request wall clock ceiling
    request_timeout_seconds: float = 60.0

    # Persistence: Vercel Blob when a token is set, else a local directory, else disabled.
    blob_read_write_token: str | None = None
    blob_api_url: str = "https://blob.vercel-storage.com"
    blob_local_dir: str | None = None
    blob_public_base_url: str = "/blobs"

    # Upload limits
    max_base_image_bytes: int = 12 * MIB
    max_mask_bytes: int = 6 * MIB
    max_insert_image_bytes: int = 8 * MIB
    max_image_side: int = 4096
    max_image_pixels: int = 4096 * 4096

    @property
    def persistence_backend(self) -> str:
        if self.blob_read_write_token:
            return "vercel"
        if self.blob_local_dir:
            return "local"
        return "disabled"


settings = Settings()
