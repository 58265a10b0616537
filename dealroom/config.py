"""Settings via pydantic-settings with DEALROOM_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app. DATABASE_URL, when
set, wins over the individual fields.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DEALROOM_", env_file=".env", extra="ignore")

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("dealroom", validation_alias="DB_USER")
    db_password: str = Field("dealroom_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("dealroom", validation_alias="DB_NAME")
    database_url: str = Field("", validation_alias="DATABASE_URL")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Negotiation
    max_milestones: int = 20

    # Expiry sweeper
    expiry_sweep_enabled: bool = True
    expiry_timeout_hours: int = 168
    expiry_sweep_limit: int = 100
    expiry_sweep_interval: float = 3600  # seconds between sweeps

    # Notifications
    notification_queue_size: int = 1000
    notify_webhook_url: str = ""
    notify_timeout: int = 10  # seconds

    @model_validator(mode="after")
    def _validate_expiry(self) -> "Settings":
        if not 1 <= self.expiry_timeout_hours <= 8760:
            raise ValueError("expiry_timeout_hours must be between 1 and 8760")
        if not 1 <= self.expiry_sweep_limit <= 500:
            raise ValueError("expiry_sweep_limit must be between 1 and 500")
        if self.max_milestones < 1:
            raise ValueError("max_milestones must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
