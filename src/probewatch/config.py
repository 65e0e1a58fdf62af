"""Application configuration via environment variables and .env file."""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "PROBEWATCH_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/probewatch.db")
    storage_timeout: float = 5.0  # seconds to wait on a locked database

    # Logging
    log_level: str = "info"

    # Timeout sweeper
    sweeper_enabled: bool = True
    sweep_interval: int = 60  # seconds between overdue scans

    # State transitions (optimistic retry on conflicting writers)
    transition_max_attempts: int = 5
    transition_backoff: float = 0.05  # base delay, doubled per attempt

    # Event notifications
    webhook_url: str | None = None
    webhook_timeout: float = 10.0
    notify_queue_size: int = 1000

    # Report ingestion (optional shared key, omit to accept any)
    api_key: str | None = None

    # Authentication for the read API (optional, omit to disable)
    auth_username: str = "admin"
    auth_password: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("sweep_interval", "transition_max_attempts")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("webhook_url", "api_key", "auth_password", mode="before")
    @classmethod
    def blank_is_unset(cls, v: object) -> object:
        """Treat an empty env value as not configured."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
