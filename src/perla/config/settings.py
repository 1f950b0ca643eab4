"""Configuration settings for the Perla sales assistant."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["openai", "anthropic", "gemini", "ollama"]


class FlatSettings(BaseSettings):
    """Flat settings read from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider selection
    llm_provider: ProviderName = Field(default="openai", validation_alias="LLM_PROVIDER")
    llm_base_url: str | None = Field(default=None, validation_alias="LLM_BASE_URL")
    # Comma separated "provider" or "provider@base_url" entries, tried in order
    llm_fallback_endpoints: str = Field(default="", validation_alias="LLM_FALLBACK_ENDPOINTS")

    # LLM API keys (only the selected providers need one)
    openai_api_key: SecretStr | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: SecretStr | None = Field(
        default=None, validation_alias="ANTHROPIC_API_KEY"
    )
    google_api_key: SecretStr | None = Field(default=None, validation_alias="GOOGLE_API_KEY")

    # Model selections
    openai_model: str = Field(default="gpt-3.5-turbo", validation_alias="OPENAI_MODEL")
    claude_model: str = Field(default="claude-haiku-4-5", validation_alias="CLAUDE_MODEL")
    gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
    ollama_model: str = Field(default="qwen3:8b", validation_alias="OLLAMA_MODEL")
    ollama_base_url: str = Field(
        default="http://localhost:11434", validation_alias="OLLAMA_BASE_URL"
    )

    # LLM parameters
    llm_temperature: float = Field(default=0.7, validation_alias="LLM_TEMPERATURE")
    llm_max_tokens: int = Field(default=500, validation_alias="LLM_MAX_TOKENS")
    llm_max_attempts: int = Field(default=3, validation_alias="LLM_MAX_ATTEMPTS")
    llm_backoff_seconds: float = Field(default=0.5, validation_alias="LLM_BACKOFF_SECONDS")
    llm_request_timeout: float = Field(default=30.0, validation_alias="LLM_REQUEST_TIMEOUT")

    # Session
    session_timeout: float = Field(default=30.0, validation_alias="SESSION_TIMEOUT")
    owner_id: str = Field(default="local", validation_alias="OWNER_ID")
    ledger_dir: Path = Field(default=Path(".perla"), validation_alias="LEDGER_DIR")

    # Transcription
    transcription_model: str = Field(default="whisper-1", validation_alias="TRANSCRIPTION_MODEL")
    transcription_language: str = Field(default="es", validation_alias="TRANSCRIPTION_LANGUAGE")

    # WebSocket
    ws_host: str = Field(default="127.0.0.1", validation_alias="WS_HOST")
    ws_port: int = Field(default=8765, validation_alias="WS_PORT")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )

    @field_validator("llm_max_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("LLM_MAX_ATTEMPTS must be at least 1")
        return value

    def fallback_endpoints(self) -> list[tuple[str, str | None]]:
        """Parse LLM_FALLBACK_ENDPOINTS into (provider, base_url) pairs."""
        endpoints: list[tuple[str, str | None]] = []
        for entry in self.llm_fallback_endpoints.split(","):
            entry = entry.strip()
            if not entry:
                continue
            provider, _, base_url = entry.partition("@")
            endpoints.append((provider.strip(), base_url.strip() or None))
        return endpoints


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
