"""
CallRoute - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SEED_PATH = str(Path(__file__).parent / "data" / "routing_seed.json")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json_format: bool = False  # JSON logs for production, human-readable for dev

    # --- Telephony Providers ---
    # Adapter used when no number binding is known (e.g. fallback documents)
    telephony_provider: str = "twilio"  # "twilio" | "acs"
    # Base URL the telephony edge posts webhooks to (used in action/wait URLs)
    public_base_url: str = ""
    route_action_path: str = "/v1/voice/route"
    # Agent orchestrator media stream endpoint (L2)
    stream_base_url: str = "wss://orchestrator.example.com/stream"
    # Capability switches (accounts without media streaming degrade to L1)
    twilio_media_streams_enabled: bool = True
    acs_media_streaming_enabled: bool = True

    # --- Webhook Security ---
    validate_webhook_signatures: bool = False
    twilio_auth_token: str = ""
    acs_webhook_secret: str = ""

    # --- Intent Classification ---
    # "keyword" = deterministic hint matching (default, no external calls)
    # "http" = external classifier service at classifier_url
    classifier_backend: str = "keyword"
    classifier_url: str = ""
    classification_timeout_seconds: float = 2.0

    # --- Routing Configuration Source ---
    routing_seed_path: str = DEFAULT_SEED_PATH

    # --- Fallback (unregistered numbers, missing configuration) ---
    fallback_queue_name: str = "voicemail"
    fallback_wait_url: str = "/v1/voice/fallback-wait"
    fallback_hold_message: str = (
        "We are unable to take your call right now. Please stay on the line to leave a message."
    )

    # --- Hold (wait URL documents for queued callers) ---
    hold_message: str = "All of our team members are busy. Please stay on the line."
    hold_pause_seconds: int = 20

    # --- Audit ---
    enable_audit: bool = True
    audit_max_attempts: int = 3
    audit_backoff_base_seconds: float = 0.05
    audit_max_events: int = 10000  # Bounded in-memory audit buffer

    # --- Handoff ---
    handoff_transcript_max_chars: int = 500
    handoff_transcript_max_turns: int = 6

    # --- Call Sessions ---
    max_concurrent_calls: int = 500
    session_ttl_minutes: int = 120

    # --- Security ---
    allowed_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"

    @property
    def route_action_url(self) -> str:
        """Absolute (or relative when no public base URL) route webhook URL."""
        return f"{self.public_base_url.rstrip('/')}{self.route_action_path}"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()
