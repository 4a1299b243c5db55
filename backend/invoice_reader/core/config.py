from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "InvoiceReader AI"
    debug: bool = False
    api_prefix: str = "/api/v1"

    # Completion backend (provider: anthropic | google)
    llm_provider: str = "anthropic"
    llm_model: str = ""  # auto-defaults per provider if empty
    llm_temperature: float = 0.1
    anthropic_api_key: str = ""
    google_ai_api_key: str = ""

    # Vertex AI - Anthropic Claude via Google Cloud
    vertex_project_id: str = ""
    vertex_location: str = "europe-west1"
    vertex_credentials_path: str = ""  # path to service-account JSON

    # Document pre-processing
    max_file_size_mb: int = 20
    preprocess_max_pages: int = 5
    preprocess_render_dpi: int = 200
    preprocess_image_max_side: int = 2000  # px, longest side sent to vision
    preprocess_jpeg_quality: int = 85

    # Orchestration thresholds (0-100 confidence scale)
    stage2_confidence_threshold: int = 85  # below -> specialized refinement
    stage3_confidence_threshold: int = 95  # below (+ missing critical) -> final verification
    merge_acceptance_threshold: int = 75  # above -> may overwrite consolidated values
    manual_validation_threshold: int = 95  # below -> caller flags for manual review
    fallback_confidence: int = 30
    origin_trust_threshold: int = 60  # classification below this -> origin treated as unknown

    # Retry policy for backend calls
    retry_backoff_seconds: float = 1.0
    retry_backoff_multiplier: float = 1.5

    # Whole-run timeout, enforced by the API caller
    run_timeout_seconds: float = 120.0

    # Metrics recorder
    history_limit: int = 100

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
