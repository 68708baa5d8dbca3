"""Configuration management for the score extraction engine."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (prefix ``PSYSCORE_``)."""

    # Layout reconstruction
    line_tolerance: float = 2.0
    tab_gap: float = 18.0
    space_gap: float = 6.0

    # OCR fallback
    ocr_language: str = "eng"
    ocr_dpi: int = 300
    ocr_min_chars: int = 20
    ocr_min_confidence: float = 0.3

    # Extraction
    min_table_rows: int = 2
    narrative_score_window: int = 160
    narrative_percentile_window: int = 80

    # Orchestration
    decode_timeout: float = 60.0
    concurrent_decode: bool = False

    # Rendering
    sentinel: str = "—"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "PSYSCORE_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
