from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = "sqlite:///./lettersync.db"
    log_level: str = "INFO"

    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Google service account shared by the Sheets mirror and the Drive store
    google_service_account_email: str = ""
    google_private_key: str = ""
    google_spreadsheet_id: str = ""
    google_sheet_name: str = "Letters"
    google_drive_folder_id: str = ""

    local_uploads_dir: str = "./uploads"

    sync_interval_ms: int = 30000
    sync_batch_size: int = 50
    sync_max_retries: int = 5
    sync_autostart: bool = False
    # Only one process per database may host the worker, maintenance jobs and remote writes
    sync_host: bool = True
    remote_timeout_seconds: float = 30.0

    file_migration_batch_size: int = 5
    file_migration_interval_minutes: int = 10  # 0 disables the job
    file_migration_max_attempts: int = 5

    change_retention_days: int = 30
    retention_purge_hour: int = 4

    @field_validator("google_private_key", mode="before")
    @classmethod
    def normalize_pem_newlines(cls, v: str) -> str:
        """Turn literal ``\\n`` sequences from shell exports into real newlines."""
        if isinstance(v, str) and "\\n" in v:
            v = v.replace("\\n", "\n")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
