from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Aegis Field Sync"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # On-device incident queue
    LOCAL_DATABASE_URL: str = "sqlite:///./aegis_local.db"

    # Remote document store (Firestore REST)
    FIRESTORE_BASE_URL: str = "https://firestore.googleapis.com/v1"
    FIRESTORE_PROJECT_ID: Optional[str] = None
    FIRESTORE_API_KEY: Optional[str] = None
    FIRESTORE_COLLECTION: str = "reports"
    REMOTE_TIMEOUT: int = 10
    REMOTE_MOCK_MODE: bool = True  # Keep uploads in memory when no Firestore project is configured

    # Webhook alerts for high-severity and SOS reports
    ALERT_WEBHOOK_URL: Optional[str] = None
    ALERT_USERNAME: str = "Aegis Field Alert"
    ALERT_TIMEOUT: int = 5

    # Sync engine
    SYNC_INTERVAL_SECONDS: float = 15.0
    PHOTO_MAX_DIMENSION: int = 600
    PHOTO_QUALITY: float = 0.5
    PHOTO_MAX_BYTES: int = 800_000  # Data URL length; Firestore caps documents at 1 MiB

    # Connectivity probing
    CONNECTIVITY_PROBE_URL: Optional[str] = "https://firestore.googleapis.com/"
    CONNECTIVITY_CHECK_SECONDS: float = 10.0
    CONNECTIVITY_PROBE_TIMEOUT: float = 3.0

    # Used when the device has no GPS fix (Colombo, Sri Lanka)
    FALLBACK_LATITUDE: float = 6.9271
    FALLBACK_LONGITUDE: float = 79.8612

    class Config:
        env_file = ".env"


settings = Settings()
