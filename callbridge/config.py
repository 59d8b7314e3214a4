"""Application configuration using Pydantic Settings.

All configuration is loaded from environment variables.
See .env.example for required variables.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ==========================================================================
    # Speech AI (Ultravox)
    # ==========================================================================
    ultravox_api_key: SecretStr = Field(description="Ultravox API key")
    ultravox_api_url: str = Field(
        default="https://api.ultravox.ai/api/calls",
        description="Endpoint used to create realtime speech sessions",
    )
    ultravox_voice: str = Field(default="Mark", description="Voice used by the agent")
    system_prompt: str = Field(
        default=(
            "You are a friendly phone assistant. Keep answers short and "
            "conversational, and ask the caller to repeat when audio is unclear."
        ),
        description="System prompt sent when a speech session is created",
    )
    ultravox_input_sample_rate: int = Field(
        default=8000,
        description="Sample rate of the audio forwarded to the speech session",
    )
    ultravox_output_sample_rate: int = Field(
        default=8000,
        description="Sample rate requested for agent audio",
    )
    speech_session_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound for creating and joining a speech session",
    )

    # ==========================================================================
    # Telephony (Twilio)
    # ==========================================================================
    twilio_account_sid: str | None = Field(default=None, description="Twilio Account SID")
    twilio_auth_token: SecretStr | None = Field(default=None, description="Twilio Auth Token")
    twilio_from_number: str | None = Field(
        default=None, description="E.164 caller ID used for outbound calls"
    )
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio callbacks (e.g. https://<ngrok>.ngrok-free.app)",
    )
    twiml_greeting: str = Field(
        default="This is a test call. Speak after the beep.",
        description="Text spoken once the media stream has been started",
    )
    twiml_pause_seconds: int = Field(
        default=60,
        ge=1,
        description="How long the call is held open while audio is streamed",
    )

    # ==========================================================================
    # Bridge
    # ==========================================================================
    observer_queue_size: int = Field(
        default=64,
        ge=1,
        description="Frames buffered per observer before it is disconnected",
    )
    finished_call_retention: int = Field(
        default=256,
        ge=0,
        description="Finished calls remembered so late webhooks are dropped",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # ==========================================================================
    # Derived Properties
    # ==========================================================================
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def twilio_configured(self) -> bool:
        """Check if outbound calling credentials are present."""
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Use dependency injection in FastAPI:
        settings: Settings = Depends(get_settings)
    """
    return Settings()  # type: ignore[call-arg]  # loads from env
