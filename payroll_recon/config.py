"""Configuration management for the payroll reconciliation engine."""

import logging
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration
    llm_provider: Literal["gemini", "openai", "ollama"] = "gemini"
    gemini_api_keys: str = ""  # Comma-separated pool, rotated by KeyPool
    openai_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    openai_model: str = "gpt-4o-mini"
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    llm_timeout_seconds: float = 120.0

    # Embedding model
    embedding_model: str = "text-embedding-004"
    enable_embeddings: bool = True
    embedding_chunk_chars: int = 5000

    # Key pool
    max_key_failures: int = 5
    rate_limit_cooldown_seconds: float = 60.0

    # Extraction behaviour
    incomplete_month_threshold_days: int = 5
    line_merge_tolerance: float = 5.0
    bulk_max_retries: int = 3
    bulk_retry_delay_seconds: float = 4.0
    bulk_concurrency: int = 1  # 1 = sequential

    # Development mode
    dev_mode: bool = True

    # Data directory
    data_dir: Path = Path.home() / ".payroll_recon"

    # API settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def api_keys(self) -> list[str]:
        """Keys for the active provider, in rotation order."""
        if self.llm_provider == "gemini":
            return [key.strip() for key in self.gemini_api_keys.split(",") if key.strip()]
        if self.llm_provider == "openai" and self.openai_api_key:
            return [self.openai_api_key]
        return []

    @property
    def extraction_model(self) -> str:
        """Model name in litellm's provider/model form."""
        if self.llm_provider == "openai":
            return self.openai_model
        if self.llm_provider == "ollama":
            return f"ollama/{self.ollama_model}"
        return f"gemini/{self.gemini_model}"

    @property
    def embedding_model_name(self) -> str:
        if self.llm_provider == "openai":
            return "text-embedding-3-small"
        if self.llm_provider == "ollama":
            return f"ollama/{self.embedding_model}"
        return f"gemini/{self.embedding_model}"

    @property
    def api_base(self) -> str | None:
        """Get the API base URL for Ollama."""
        if self.llm_provider == "ollama":
            return self.ollama_host
        return None

    @property
    def db_path(self) -> Path:
        """Get the SQLite database path."""
        suffix = "dev" if self.dev_mode else "prod"
        return self.data_dir / f"payroll_recon_{suffix}.db"

    @property
    def uploads_path(self) -> Path:
        """Get the document storage directory path."""
        return self.data_dir / "documents"

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_path.mkdir(parents=True, exist_ok=True)

    def log_config(self) -> None:
        """Log current configuration with sensitive values redacted."""
        keys = self.api_keys
        logger.info("LLM Provider:        %s", self.llm_provider)
        logger.info("Extraction Model:    %s", self.extraction_model)
        logger.info("API Keys:            %s", f"{len(keys)} configured" if keys else "none")
        for index, key in enumerate(keys):
            logger.info("  key[%d]:           %s...%s", index, key[:4], key[-4:])
        logger.info("Embedding Model:     %s (enabled=%s)", self.embedding_model_name, self.enable_embeddings)
        logger.info(
            "Key Pool:            max_failures=%d cooldown=%ss",
            self.max_key_failures,
            self.rate_limit_cooldown_seconds,
        )
        logger.info("Incomplete Month:    >%d days before period end", self.incomplete_month_threshold_days)
        logger.info(
            "Bulk Retry:          %d attempts, %ss delay, concurrency %d",
            self.bulk_max_retries,
            self.bulk_retry_delay_seconds,
            self.bulk_concurrency,
        )
        logger.info("Data Directory:      %s", self.data_dir)
        logger.info("Database:            %s", self.db_path)
        logger.info("API Host:            %s:%s", self.api_host, self.api_port)


# Global settings instance
settings = Settings()
