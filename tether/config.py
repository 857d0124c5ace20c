"""Configuration settings for tether."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


def get_tether_home() -> Path:
    """Default data directory (~/.tether)."""
    return Path.home() / ".tether"


class TetherSettings(BaseSettings):
    """Sync settings loaded from environment (TETHER_*) or a .env file."""

    # Supabase
    supabase_url: str | None = None
    supabase_key: str | None = None  # Publishable/anon key; RLS scopes rows per owner

    # Sign-in used by the CLI (host applications pass their own identity)
    email: str | None = None
    password: str | None = None
    owner_id: str | None = None  # Owner whose local store the CLI inspects offline

    # Remote table names
    records_table: str = "records"
    logs_table: str = "logs"
    settings_table: str = "settings"

    # Local storage
    data_dir: Path = get_tether_home()

    # Change channel
    poll_interval_seconds: float = 30.0

    # Network timeouts: quick probes/reads vs bulk uploads
    probe_timeout_seconds: float = 5.0
    upload_timeout_seconds: float = 30.0

    # Mutation queue: 0 disables debouncing
    upload_debounce_seconds: float = 0.0

    # Policy
    enforce_single_active_record: bool = True

    log_level: str = "WARNING"

    class Config:
        env_prefix = "TETHER_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    @property
    def db_path(self) -> Path:
        return self.data_dir / "local.db"


@lru_cache
def get_settings() -> TetherSettings:
    """Get cached settings instance."""
    return TetherSettings()
