from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "Bug Tracker API"
    DEBUG: bool = False

    # Paths
    BASE_DIR: str = "."
    SQLITE_DB_PATH: str = "data/bugtracker.db"

    # Sessions
    SESSION_COOKIE_NAME: str = "session_token"
    SESSION_TTL_SECONDS: int = 3600  # 1 hour, matches the cookie maxAge
    SESSION_COOKIE_SECURE: bool = False

    # Password hashing
    BCRYPT_ROUNDS: int = 12

    # Listing defaults
    DEFAULT_BUG_PAGE_SIZE: int = 10

    # Infrastructure
    SEQ_URL: str | None = None
    SEQ_API_KEY: str | None = None

    model_config = SettingsConfigDict(env_file="secrets/.env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
