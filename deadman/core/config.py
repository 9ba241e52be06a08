from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "postgresql://deadman:deadman@db:5432/deadman"
    APP_ENV: str = "development"
    SECRET_KEY: str = "changeme-secret-key"

    # Comma-separated allowed origins, or "*" to allow all.
    # Example: "https://myapp.com,https://api.myapp.com"
    CORS_ORIGINS: str = "*"

    # Shared secret for the /system admin routes.
    ADMIN_TOKEN: str = "changeme-admin-token"

    # HMAC key for activity record signatures. Rotating it invalidates
    # verification of every record signed before the rotation.
    ACTIVITY_HMAC_SECRET: str = "changeme-activity-secret"

    # Public URL embedded in check-in links sent to users.
    BASE_URL: str = "http://localhost:3000"
    CHECK_IN_TOKEN_TTL_HOURS: int = 7 * 24

    # Handover lifecycle
    DEFAULT_THRESHOLD_DAYS: int = 90
    GRACE_PERIOD_HOURS: int = 48
    SUCCESSOR_RESPONSE_DAYS: int = 14
    HANDOVER_REQUIRED_APPROVALS: int = 1

    # Inactivity scanner
    SCANNER_ENABLED: bool = True
    SCANNER_INTERVAL_SECONDS: int = 15 * 60
    SCANNER_BATCH_SIZE: int = 50
    SCANNER_BATCH_DELAY_SECONDS: float = 1.0

    # "console" for humans, "json" for log shippers
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    @property
    def cors_origins_list(self) -> list[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def is_test(self) -> bool:
        return self.APP_ENV == "test"


settings = Settings()
