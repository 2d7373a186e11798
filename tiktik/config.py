import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Storage configuration
    STORAGE_TYPE: str = os.getenv("STORAGE_TYPE", "memory")  # "redis" or "memory"
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")

    # MongoDB configuration for watch analytics
    MONGODB_URL: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    MONGODB_DATABASE: str = os.getenv("MONGODB_DATABASE", "tiktik_analytics")
    ANALYTICS_ENABLED: bool = (
        os.getenv("ANALYTICS_ENABLED", "true").lower() == "true"
    )

    # Identity provider (bearer JWTs)
    IDENTITY_SECRET: str = os.getenv("IDENTITY_SECRET", "")
    IDENTITY_ALGORITHM: str = os.getenv("IDENTITY_ALGORITHM", "HS256")
    IDENTITY_ISSUER: str = os.getenv("IDENTITY_ISSUER", "")
    IDENTITY_AUDIENCE: str = os.getenv("IDENTITY_AUDIENCE", "")

    # Object storage / signed upload URLs
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")
    STORAGE_PUBLIC_BASE_URL: str = os.getenv(
        "STORAGE_PUBLIC_BASE_URL", "https://storage.googleapis.com"
    )
    # Service account key used to sign URLs, application default credentials if empty
    STORAGE_CREDENTIALS_FILE: str = os.getenv("STORAGE_CREDENTIALS_FILE", "")
    UPLOAD_URL_TTL_SECONDS: int = int(os.getenv("UPLOAD_URL_TTL_SECONDS", "900"))

    # Live chat
    CHAT_HISTORY_LIMIT: int = int(os.getenv("CHAT_HISTORY_LIMIT", "100"))
    CHAT_MAX_LENGTH: int = int(os.getenv("CHAT_MAX_LENGTH", "200"))
    CHAT_DEFAULT_COOLDOWN_MS: int = int(os.getenv("CHAT_DEFAULT_COOLDOWN_MS", "2000"))
    DEFAULT_TIMEOUT_MS: int = int(os.getenv("DEFAULT_TIMEOUT_MS", "60000"))

    class Config:
        env_file = ".env"


settings = Settings()
