"""
Configuration for the Case Court Service
========================================

Environment variables:
- LLM_MODE: none|gemini (default: gemini)
- GEMINI_API_KEY: API key for Gemini
- GEMINI_FLASH_MODEL: Default low-latency model (default: gemini-2.5-flash)
- GEMINI_PRO_MODEL: Multimodal / high-capability model (default: gemini-2.5-pro)
- GEMINI_FALLBACK_MODEL: Stable variant used after transient failures
- SECONDARY_PROVIDER_ENABLED: Try DeepSeek first for text-only requests
- DEEPSEEK_API_KEY / DEEPSEEK_MODEL: Secondary provider credentials
- LLM_MAX_ATTEMPTS: Attempts per backend for transient failures (default: 5)
- LLM_BACKOFF_BASE: Base backoff delay in seconds (default: 1.0)
- LLM_TIMEOUT: Hard wall-clock timeout per attempt in seconds (default: 120)
- POLL_INTERVAL: Session polling interval in seconds (default: 2.0)
- DATABASE_URL: read by db.session (default: sqlite:///./court.db)
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

from .schemas import LLMMode


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # LLM Configuration
    llm_mode: LLMMode = LLMMode.GEMINI

    # Gemini (primary provider)
    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_flash_model: str = "gemini-2.5-flash"
    gemini_pro_model: str = "gemini-2.5-pro"
    gemini_fallback_model: str = "gemini-2.0-flash"

    # DeepSeek (optional cheaper text-only provider, tried first)
    secondary_provider_enabled: bool = False
    deepseek_api_key: Optional[str] = None
    deepseek_model: str = "deepseek-chat"
    deepseek_base_url: str = "https://api.deepseek.com/v1"

    # Retry policy
    llm_max_attempts: int = 5
    llm_backoff_base: float = 1.0
    llm_timeout: float = 120.0

    # Sync layer
    poll_interval: float = 2.0
    stale_read_window: float = 10.0

    # Case defaults
    default_category: str = "relationship dispute"
    share_code_length: int = 6

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_llm_config(self) -> List[str]:
        """Validate LLM configuration, return list of warnings"""
        warnings = []

        if self.llm_mode == LLMMode.GEMINI and not self.gemini_api_key:
            warnings.append("LLM_MODE=gemini but GEMINI_API_KEY not set")

        if self.secondary_provider_enabled and not self.deepseek_api_key:
            warnings.append("SECONDARY_PROVIDER_ENABLED=true but DEEPSEEK_API_KEY not set")

        if self.llm_max_attempts < 1:
            warnings.append("LLM_MAX_ATTEMPTS must be at least 1")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Convenience function
def get_llm_mode() -> LLMMode:
    """Get current LLM mode"""
    return get_settings().llm_mode
