from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "chatsync"
    VERSION: str = "0.1.0"

    # "memory" | "mongo"
    STORE_BACKEND: str = "memory"
    MONGODB_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGODB_DB: str = "chatsync"

    # empty disables the realtime bus
    REDIS_URL: str = ""

    MESSAGE_WINDOW: int = 50
    MAX_MESSAGE_SUBSCRIPTIONS: int = 100
    SUBSCRIPTION_MAX_RETRIES: int = 3
    SUBSCRIPTION_RETRY_DELAY_SECONDS: float = 0.5

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
