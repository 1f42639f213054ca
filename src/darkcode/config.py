"""Application settings via pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables with DARKCODE_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="DARKCODE_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Core ---
    log_level: str = "INFO"
    log_format: str = "json"

    # --- Table source ---
    sheet_base_url: str = "https://docs.google.com/spreadsheets/d"
    accounts_sheet_id: str = "1sEk4j9_3pscX28BQsEtirWphAFLtQ3A7HcKiYPyLbwA"
    assignments_sheet_id: str = "1u8riDUGmK4tW-h1zRLN6lXUQ5Iyvzb1rSMeO1yzr0Ew"
    audit_sheet_id: str = "1VgKLhfFtgy8wae3kVt6-qxcUGzhQCIbZWyg3mlNU05s"
    http_timeout_seconds: float = 10.0

    # --- Write endpoint ---
    action_endpoint_url: str = "https://script.google.com/macros/s/darkcode/exec"

    # --- Sync ---
    poll_interval_seconds: float = 10.0
    boot_deadline_seconds: float = 15.0

    # --- Login / lockout ---
    lockout_threshold: int = 3
    lockout_seconds: int = 30
    login_delay_seconds: float = 0.8

    # --- Device trust ---
    trust_window_days: int = 14
    trust_store_path: str = ".darkcode/local_store.json"
    trust_store_key: str = "darkcode_trust"

    def table_url(self, sheet_id: str) -> str:
        """CSV export URL for a sheet, without the cache-busting parameter."""
        return f"{self.sheet_base_url.rstrip('/')}/{sheet_id}/export?format=csv"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
