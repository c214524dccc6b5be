"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Imagine backend.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        generation_api_base: Base URL of the external image generation service.
        generation_api_key: Bearer key for the generation service.
        generation_captcha_token: Captcha token forwarded on every service request.
        generation_timeout_seconds: Read timeout for a single streamed job.
        default_model: Model used when a request does not name one.
        allowed_models: Models a user may pick for a new generation.
        use_mock_generation: If True, use the scripted mock generation client.
        moderation_enabled: If True, prompts are checked before submission.
        metrics_enabled: If False, metric flushes are skipped entirely.
        metrics_flush_interval_seconds: Interval of the background flush loop.
        image_cost: Amount charged to the account per produced image.
        message_ttl_minutes: Age after which a settled message and its channel are evicted.
        message_cleanup_interval_minutes: Interval of the background message sweep.
        database_path: Path of the SQLite database file.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Generation service
    generation_api_base: str = "https://api.turingai.tech"
    generation_api_key: str = ""
    generation_captcha_token: str = ""
    generation_timeout_seconds: float = 600.0
    default_model: str = "5.1"
    allowed_models: list[str] = ["5.1", "5", "niji"]
    use_mock_generation: bool = False

    # Moderation
    moderation_enabled: bool = True

    # Metrics
    metrics_enabled: bool = True
    metrics_flush_interval_seconds: float = 300.0

    # Billing
    image_cost: float = 0.1

    # Message retention
    message_ttl_minutes: int = 60
    message_cleanup_interval_minutes: int = 5

    # Database Configuration
    database_path: str = "./data/imagine.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
