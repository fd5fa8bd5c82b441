"""
Courier Backend — Application Configuration
=============================================

What:  Centralized configuration management using Pydantic Settings.
Why:   Type-safe environment variable loading with validation on startup.
How:   Pydantic Settings reads from environment variables (or .env file),
       validates types/ranges, and provides a singleton `settings` object.
Who:   Imported by the application factory; middleware receives the values
       it needs through its constructor.
When:  Loaded once at module import time and never mutated afterwards.
"""

from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for development. Attributes are
    grouped by the pipeline stage that reads them.
    """

    # ── Routing ───────────────────────────────────────────────────────────
    # Business routes live under the versioned prefix; the liveness probe
    # stays unversioned so load balancers never need updating.
    api_prefix: str = Field(default="/v1")
    health_path: str = Field(default="/")

    # ── Origin Policy ─────────────────────────────────────────────────────
    # What: The single origin allowed to make credentialed cross-origin calls
    # Format: exact origin ("https://app.example.com") or a regex wrapped in
    #         slashes ("/^https:\/\/.*\.example\.com$/")
    frontend_url: str = Field(default="http://localhost:3000")

    # ── Body Decoding ─────────────────────────────────────────────────────
    # What: Route prefixes whose JSON bodies are kept as raw text
    # Format: Comma-separated prefixes (parsed by property below)
    text_body_routes: str = Field(default="/v1/callback/email")
    text_body_size_limit: int = Field(default=102_400, ge=1)

    # What: Business-level payload limit for transactional messages (bytes)
    # The transport ceiling is a multiple of this so that oversized payloads
    # reach business validation and get a descriptive error there.
    transactional_body_size_limit: int = Field(default=1_048_576, ge=1)
    body_size_limit_multiplier: int = Field(default=10, ge=1, le=100)
    form_parameter_limit: int = Field(default=1000, ge=1)

    @property
    def body_size_ceiling(self) -> int:
        """Maximum JSON/form body size accepted by the decoders."""
        return self.transactional_body_size_limit * self.body_size_limit_multiplier

    @property
    def text_body_routes_list(self) -> List[str]:
        """Splits comma-separated text route prefixes into a list."""
        return [route.strip() for route in self.text_body_routes.split(",") if route.strip()]

    # ── Security Headers ──────────────────────────────────────────────────
    # 366 days, above the one-year minimum for HSTS preload lists
    hsts_max_age: int = Field(default=31_622_400, ge=31_536_000)

    # ── Tracing & Fault Reporting ─────────────────────────────────────────
    # What: OTLP gRPC collector endpoint (e.g., "http://otel-collector:4317")
    # Empty disables span export; trace ids are still generated.
    trace_endpoint: str = Field(default="")
    trace_console_export: bool = Field(default=False)
    environment: str = Field(default="development")
    service_name: str = Field(default="courier-backend")

    # ── Server ────────────────────────────────────────────────────────────
    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=8000, ge=1024, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    # Valid: json (one object per line), text (human-readable)
    log_format: str = Field(default="json")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        lower = v.lower()
        if lower not in {"json", "text"}:
            raise ValueError(f"Invalid log_format '{v}'. Must be 'json' or 'text'")
        return lower

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v: str) -> str:
        """Normalizes the prefix to a leading slash and no trailing slash."""
        stripped = v.strip().strip("/")
        if not stripped:
            raise ValueError("api_prefix must not be empty")
        return f"/{stripped}"

    # ── Pydantic Settings Config ──────────────────────────────────────────
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


# Singleton instance, used by the module-level application in main.py
settings = Settings()
