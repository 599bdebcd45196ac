from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHATMEND_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Circuit breaker
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_s: float = 60.0
    circuit_breaker_window_s: float = 60.0

    # Provider calls
    provider_timeout_s: float = 30.0
    provider_max_retries: int = 2
    provider_max_workers: int = 8  # concurrent provider calls per process
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0

    # Checkpoints and recovery
    checkpoint_retention_days: int = 7
    checkpoint_interval_turns: int = 10
    max_recovery_attempts: int = 3
    recovery_context_ttl_s: float = 60.0
    stale_stable_after_hours: float = 6.0

    # Moderation
    auto_archive_violation_threshold: int = 5  # 0 disables auto-archive
    auto_archive_window_days: int = 7
    repeat_offender_threshold: int = 3
    repeat_offender_window_days: int = 7
    violation_summary_window_hours: int = 24

    # Turns
    max_tool_rounds: int = 5

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
