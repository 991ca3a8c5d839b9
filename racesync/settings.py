from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Security
    RACESYNC_SECRET_KEY: str = "dev-secret-change-me"
    RACESYNC_TOKEN_MAX_AGE_SECONDS: int = 24 * 60 * 60
    # Out-of-band PIN reset; unset disables the endpoint
    RACESYNC_SERVER_API_PIN: str | None = None

    # Database
    RACESYNC_DB_URL: str = "sqlite:///./racesync.db"

    # Limits
    RACESYNC_MAX_ENTRIES_PER_RACE: int = 10000
    RACESYNC_MAX_FAULTS_PER_RACE: int = 5000
    RACESYNC_MAX_PHOTO_CHARS: int = 500000
    RACESYNC_RACE_TTL_SECONDS: int = 24 * 60 * 60
    RACESYNC_MAX_ATOMIC_RETRIES: int = 5

    # Presence
    RACESYNC_DEVICE_STALE_MS: int = 30000
    RACESYNC_GATE_ASSIGNMENT_STALE_MS: int = 60000

    # CORS
    RACESYNC_CORS_ORIGIN: str = "*"

    # Logging
    RACESYNC_LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
