import os
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global configuration for the Confide backend.

    The timing values were tuned empirically against real browser
    interruptions and are kept configurable rather than hard-coded.
    """

    # Session clock
    tick_interval_seconds: float = 1.0
    max_duration_minutes: int = 15
    warning_offset_minutes: int = 1
    # Active time is written back every N clock seconds; 0 disables it.
    checkpoint_interval_seconds: int = 30
    completion_retry_seconds: float = 5.0

    # Activity monitor
    grace_period_seconds: float = 5.0
    visibility_grace_seconds: float | None = None
    network_grace_seconds: float | None = None
    page_lifecycle_grace_seconds: float | None = None
    inactivity_timeout_minutes: float = 15.0

    # Pause orchestrator
    pause_cooldown_seconds: float = 2.5
    managed_pause_timeout_seconds: float = 6.0
    persistence_timeout_seconds: float = 8.0
    navigation_fallback_delay_seconds: float = 1.0
    dashboard_path: str = "/dashboard"
    conversation_path: str = "/conversation"
    use_managed_pause: bool = True
    snapshot_on_resume: Literal["keep", "delete"] = "keep"

    # Completion rules
    min_user_messages_to_end: int = 5
    min_user_messages_for_insights: int = 5

    # Insight generation
    model_id: str = "gemini-2.5-flash"
    location: str = "us-central1"
    insight_timeout_seconds: float = 30.0
    generate_insights: bool = True
    project_id: str = Field(
        default_factory=lambda: (
            os.getenv("GOOGLE_CLOUD_PROJECT")
            or os.getenv("GCLOUD_PROJECT")
            or os.getenv("GOOGLE_CLOUD_PROJECT_ID")
            or ""
        )
    )
    firebase_web_config: str = ""

    model_config = SettingsConfigDict(env_prefix="CONFIDE_", extra="ignore")

    @field_validator("warning_offset_minutes")
    @classmethod
    def validate_warning_offset(cls, value: int) -> int:
        if value < 0:
            raise ValueError("The warning offset cannot be negative.")
        return value

    @field_validator(
        "grace_period_seconds",
        "pause_cooldown_seconds",
        "managed_pause_timeout_seconds",
        "persistence_timeout_seconds",
        "completion_retry_seconds",
    )
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timing values must be positive.")
        return value

    @property
    def max_duration_seconds(self) -> int:
        return self.max_duration_minutes * 60

    @property
    def warning_offset_seconds(self) -> int:
        return self.warning_offset_minutes * 60


settings = Settings()  # type: ignore[call-arg]
