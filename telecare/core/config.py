# telecare/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore")

    APP_NAME: str = "Telecare"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    JWT_SECRET: str = Field(...)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # MySQL wins when DB_HOST is set, otherwise DATABASE_URL is used as-is
    DATABASE_URL: str = "sqlite+aiosqlite:///./telecare.db"
    DB_HOST: str | None = None
    DB_PORT: int = 3306
    DB_USER: str = "telecare"
    DB_PASSWORD: str = ""
    DB_NAME: str = "telecare"

    # --- scheduling ---
    SLOT_DURATION_MINUTES: int = Field(30, gt=0)
    CANCELLATION_CUTOFF_MINUTES: int = Field(0, ge=0)
    SESSION_GRACE_MINUTES: int = Field(15, ge=0)
    WORKDAY_START_HOUR: int = Field(9, ge=0, le=23)
    WORKDAY_END_HOUR: int = Field(17, ge=1, le=24)

    # --- subscriptions ---
    SUBSCRIPTION_SWEEP_INTERVAL_SECONDS: int = 0   # 0 = lazy expiry only
    PAYMENT_WEBHOOK_SECRET: str | None = None

    # --- video sessions ---
    VIDEO_PROVIDER: str = "static"                 # "zoom" | "static"
    VIDEO_PROVIDER_TIMEOUT_SECONDS: float = 10.0
    STATIC_MEETING_BASE_URL: str = "https://meet.telecare.local/rooms"
    ZOOM_ACCOUNT_ID: str | None = None
    ZOOM_CLIENT_ID: str | None = None
    ZOOM_CLIENT_SECRET: str | None = None
    ZOOM_HOST_USER: str = "me"
    ZOOM_TOKEN_URL: str = "https://zoom.us/oauth/token"
    ZOOM_API: str = "https://api.zoom.us/v2"

    # --- notifications ---
    NOTIFICATION_WEBHOOK_URL: str | None = None

    @property
    def async_database_url(self) -> str:
        if self.DB_HOST:
            return (f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD}"
                    f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4")
        return self.DATABASE_URL

settings = Settings()  # type: ignore[call-arg]
