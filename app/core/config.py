from dotenv import load_dotenv
from pydantic_settings import BaseSettings

load_dotenv(override=True)

class Settings(BaseSettings):
    PROJECT_NAME: str = "Wallet Whisperer"
    # Application settings
    PORT: int = 8000
    HOST: str = "127.0.0.1"
    VERSION: str = "1.0.0"
    DOC_PASSWORD: str | None = None
    ADMIN_PASSWORD: str | None = None
    CORS_ORIGINS: str = "*"

    # SSL settings
    SSL_KEY: str | None = None
    SSL_CERT: str | None = None

    # SQLAlchemy database URL
    DATABASE_URL: str = "sqlite:///./wallet_whisperer.db"
    # Postgres schema holding the auth tables, none for sqlite
    AUTH_SCHEMA: str | None = None

    # Login configuration
    ENCODE_KEY: str | None = None
    ENCODE_ALGORITHM: str | None = "HS256"
    ACCESS_TOKEN_EXPIRE_SECONDS: int = 1800 # 30 minutes
    NONCE_EXPIRY_SECONDS: int = 300 # 5 minutes

    # Activity log settings
    ACTIVITY_BUFFER_SIZE: int = 10000
    ACTIVITY_RETRY_BASE_SECONDS: float = 1.0
    ACTIVITY_RETRY_MAX_SECONDS: float = 60.0
    ACTIVITY_FLUSH_INTERVAL_SECONDS: float = 5.0

    # Debug settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

# Instantiate the settings
settings = Settings()
