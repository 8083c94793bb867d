from pydantic import field_validator
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # License Server Configuration
    LICENSE_API_URL: str = "http://localhost:4000/api/license"
    LICENSE_API_TIMEOUT: float = 8
    DEACTIVATE_API_TIMEOUT: float = 5

    # Installation Info
    SITE_URL: str = ""  # Base URL of this install, used as the site identifier
    INSTALLATION_NAME: str = "Pro Add-on"
    APP_VERSION: str = "1.0.0"

    # Database
    DATABASE_URL: str = "sqlite:///./license_client.db"

    # Validation Cadence
    CHECK_INTERVAL_HOURS: int = 12
    VALIDATION_CACHE_MINUTES: int = 10

    # Grace Period
    GRACE_PERIOD_HOURS: int = 48

    # License Keys
    LICENSE_KEY_PATTERN: str = r"^[A-Za-z0-9-]+$"
    ALLOW_DEVELOPMENT_KEYS: bool = False

    # Feature Flags
    ALLOW_UNLICENSED_CORE_FEATURES: bool = True

    LOG_LEVEL: str = "INFO"

    @field_validator("LICENSE_API_TIMEOUT", "DEACTIVATE_API_TIMEOUT")
    @classmethod
    def _bounded_timeout(cls, value: float) -> float:
        if not 0 < value < 10:
            raise ValueError("license API timeouts must be between 0 and 10 seconds")
        return value

    class Config:
        env_file = ".env"

settings = Settings()
