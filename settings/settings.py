import logging

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

from mailsync.environment import EnvironmentName
from settings.log import LoggingSettings


class SyncSettings(BaseSettings):
    fetch_limit: int = Field(alias="SYNC_FETCH_LIMIT", default=100)
    inbox_fetch_limit: int = Field(alias="SYNC_INBOX_FETCH_LIMIT", default=200)
    poll_interval: int = Field(alias="SYNC_POLL_INTERVAL", default=60)
    poll_jitter_max: int = Field(alias="SYNC_POLL_JITTER", default=10)


class DraftSettings(BaseSettings):
    debounce_seconds: float = Field(alias="DRAFT_DEBOUNCE_SECONDS", default=2.0)


class WindowSettings(BaseSettings):
    item_extent: int = Field(alias="WINDOW_ITEM_EXTENT", default=88)
    buffer: int = Field(alias="WINDOW_BUFFER", default=5)


class IMAPSettings(BaseSettings):
    timeout: int = Field(alias="IMAP_TIMEOUT", default=300)
    connection_limit: int = Field(alias="IMAP_CONNECTION_LIMIT", default=10)


class SMTPSettings(BaseSettings):
    timeout: int = Field(alias="SMTP_TIMEOUT", default=30)


class AccountSettings(BaseSettings):
    email: str = Field(alias="ACCOUNT_EMAIL", default="")
    password: SecretStr = Field(alias="ACCOUNT_PASSWORD", default=SecretStr(""))
    imap_host: str = Field(alias="ACCOUNT_IMAP_HOST", default="")
    imap_port: int = Field(alias="ACCOUNT_IMAP_PORT", default=993)
    smtp_host: str = Field(alias="ACCOUNT_SMTP_HOST", default="")
    smtp_port: int = Field(alias="ACCOUNT_SMTP_PORT", default=465)


class StorageSettings(BaseSettings):
    blob_dir: str = Field(alias="STORAGE_BLOB_DIR", default=".mailsync")


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "allow"}

    environment: EnvironmentName = Field(alias="ENVIRONMENT", default=EnvironmentName.DEVELOPMENT)

    sync: SyncSettings = Field(default_factory=SyncSettings)
    drafts: DraftSettings = Field(default_factory=DraftSettings)
    window: WindowSettings = Field(default_factory=WindowSettings)
    imap: IMAPSettings = Field(default_factory=IMAPSettings)
    smtp: SMTPSettings = Field(default_factory=SMTPSettings)
    account: AccountSettings = Field(default_factory=AccountSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("environment", mode="before")
    def set_environment(cls, value: str, info: ValidationInfo) -> EnvironmentName:
        try:
            return EnvironmentName(value)
        except ValueError:
            logging.getLogger(__name__).warning(f"Invalid environment: {value}")
            return EnvironmentName.DEVELOPMENT
