"""Settings for the nutriai-gateway service.

All settings are loaded from environment variables with the ``AI_PROXY_``
prefix.  The upstream credential additionally honours the conventional
``OPENAI_API_KEY`` variable.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Gateway configuration.

    All fields can be overridden by environment variables prefixed with
    ``AI_PROXY_``.  For example, ``AI_PROXY_RATE_LIMIT_MAX=120`` raises the
    per-client request budget.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "nutriai-gateway"
    SERVICE_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    LOG_LEVEL: str = "INFO"

    # ── Upstream LLM API ────────────────────────────────────────────
    UPSTREAM_BASE_URL: str = "https://api.openai.com/v1"
    UPSTREAM_API_KEY: str = Field(
        default="",
        validation_alias=AliasChoices("AI_PROXY_UPSTREAM_API_KEY", "OPENAI_API_KEY", "UPSTREAM_API_KEY"),
    )
    MODEL: str = "gpt-4o-mini"  # Default chat model when the caller sends none
    DEFAULT_TEMPERATURE: float = 0.3
    DEFAULT_MAX_TOKENS: int = 2000
    TRANSCRIBE_MODEL: str = "whisper-1"
    TRANSCRIBE_LANGUAGE: str = "en"
    TIMEOUT_MS: int = 30000  # Per-request upstream timeout

    # ── Request limits ──────────────────────────────────────────────
    RATE_LIMIT_WINDOW_MS: int = 60000
    RATE_LIMIT_MAX: int = 60  # Requests per client per window
    MAX_BODY_BYTES: int = 200000
    MAX_AUDIO_BODY_BYTES: int = 10 * 1024 * 1024

    # ── Security ────────────────────────────────────────────────────
    AUTH_REQUIRED: bool = True
    AUTH_TOKEN: str = ""  # Shared bearer / X-API-Token secret
    ALLOWED_ORIGINS: str = ""  # Comma-separated list, or "*"

    # ── TLS ─────────────────────────────────────────────────────────
    TLS_ENABLED: bool = False
    TLS_CERT_PATH: str = ""
    TLS_KEY_PATH: str = ""

    # ── Resilience ──────────────────────────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 5  # Consecutive failures before OPEN
    CIRCUIT_BREAKER_RECOVERY_SECONDS: float = 60.0  # First cooldown before HALF_OPEN probe
    CIRCUIT_BREAKER_MAX_RECOVERY_SECONDS: float = 300.0  # Cap for repeated trips
    RETRY_MAX_RETRIES: int = 2
    RETRY_BASE_DELAY_MS: float = 1000.0
    RETRY_MAX_DELAY_MS: float = 30000.0
    RETRY_MULTIPLIER: float = 2.0
    RETRY_JITTER: bool = True

    # ── Audit ───────────────────────────────────────────────────────
    AUDIT_LOG_PATH: str = ""  # Empty disables the JSONL audit trail

    model_config = {
        "env_prefix": "AI_PROXY_",
        "populate_by_name": True,
    }

    @property
    def allowed_origins(self) -> list[str]:
        """Parse ``ALLOWED_ORIGINS`` into a list, dropping blanks."""
        return [entry.strip() for entry in self.ALLOWED_ORIGINS.split(",") if entry.strip()]

    @property
    def timeout_seconds(self) -> float:
        return self.TIMEOUT_MS / 1000


def get_ssl_config(settings: Settings) -> dict | None:
    """Build uvicorn SSL kwargs from Settings.

    Returns ``None`` when TLS is disabled (dev mode).
    Raises ``ValueError`` if paths are empty, or ``FileNotFoundError``
    if the referenced cert/key files do not exist on disk.
    """
    if not settings.TLS_ENABLED:
        return None

    if not settings.TLS_CERT_PATH or not settings.TLS_KEY_PATH:
        raise ValueError("TLS_CERT_PATH and TLS_KEY_PATH are required when TLS_ENABLED=true")

    cert_path = Path(settings.TLS_CERT_PATH)
    key_path = Path(settings.TLS_KEY_PATH)

    if not cert_path.exists():
        raise FileNotFoundError(f"TLS certificate not found: {cert_path}")
    if not key_path.exists():
        raise FileNotFoundError(f"TLS private key not found: {key_path}")

    return {
        "ssl_certfile": str(cert_path),
        "ssl_keyfile": str(key_path),
    }
