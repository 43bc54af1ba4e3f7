"""
Configuration for the EC2 reconciler.

Settings are read from ``EC2_RECONCILER_*`` environment variables (or a
``.env`` file) and validated at start-up.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ec2_reconciler.notifications import KEY_NAME_SEPARATOR


class ReconcilerSettings(BaseSettings):
    """Reconciler configuration settings"""

    model_config = SettingsConfigDict(
        env_prefix="EC2_RECONCILER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    region: str = Field(description="AWS region whose instances are reconciled")
    key_prefix: str = Field(
        description="Key-pair name prefix of this provisioner, e.g. 'ec2-manager:'"
    )
    db_url: str = Field(
        default="sqlite+aiosqlite:///ec2_reconciler.db",
        description="SQLAlchemy database URL of the state store",
    )
    queue_name: str = Field(default="ec2-events", description="Primary notification queue")
    dead_letter_queue_name: str = Field(
        default="ec2-events-dead", description="Queue receiving exhausted notifications"
    )
    max_number_of_messages: int = Field(default=10, ge=1, le=10)
    visibility_timeout: int | None = Field(default=None, ge=0, le=43200)
    wait_time_seconds: int = Field(default=20, ge=0, le=20)
    log_level: str = Field(default="INFO")

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        if not v.endswith(KEY_NAME_SEPARATOR) or len(v) < 2:
            raise ValueError(f"key_prefix must end with '{KEY_NAME_SEPARATOR}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def provisioner_id(self) -> str:
        return self.key_prefix[: -len(KEY_NAME_SEPARATOR)]
