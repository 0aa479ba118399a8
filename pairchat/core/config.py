from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "pairchat"
    VERSION: str = "0.1.0"
    ENV: str = "development"
    PORT: int = 8000

    # MongoDB
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB: str = "pairchat"

    # Auth collaborator (tokens are issued elsewhere, only verified here)
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Optional Redis mirror of online status
    REDIS_URL: Optional[str] = None
    PRESENCE_TTL_SECONDS: int = 60

    # Label shown instead of the real identity in anonymous rooms
    ANONYMOUS_LABEL: str = "Stranger"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    CORS_ORIGINS: List[str] = ["http://localhost:5173"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
