"""
Core configuration settings
"""
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        extra="ignore",
    )

    # App
    APP_NAME: str = "Scanner Bridge"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"

    # Server
    HOST: str = "0.0.0.0"
    WS_PORT: int = 8765

    # Comma separated list of exact origins or ``*`` wildcard patterns
    ALLOWED_ORIGINS: str = "http://localhost:*"

    # Scanning
    SCANS_DIR: str = str(BACKEND_DIR / "scans")
    SCANIMAGE_BINARY: str = "scanimage"
    DISCOVERY_TIMEOUT: float = 30.0
    SCAN_TIMEOUT: float = 300.0  # <= 0 disables the limit
    TERMINATE_GRACE: float = 5.0
    CLEANUP_DELAY: float = 5.0
    SIMULATION_STEP_DELAY: float = 0.2

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.strip().lower() == "production"

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


settings = Settings()
