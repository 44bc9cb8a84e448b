from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PORT: int = 8000
    DATABASE_URL: str = ""
    FIREBASE_CREDENTIALS: str = "credentials.json"
    FIRESTORE_DATABASE_ID: str | None = None
    LOG_LEVEL: str = "INFO"

    # Primary route provider (Google Directions or a proxy in front of it)
    GOOGLE_MAPS_API_KEY: str | None = None
    DIRECTIONS_API_URL: str = "https://maps.googleapis.com/maps/api/directions/json"
    DIRECTIONS_REGION: str | None = None
    DIRECTIONS_LANGUAGE: str | None = None
    # Fallback route provider
    OSRM_BASE_URL: str = "https://router.project-osrm.org"
    ROUTE_TIMEOUT_SECONDS: float = 15.0
    ROUTE_MIN_COORDS: int = 4
    APPROX_SPEED_KMH: float = 25.0

    FARE_BASE: float = 0.8
    FARE_PER_KM: float = 0.39
    FARE_MIN: float = 1.25
    FARE_DECIMALS: int = 2

    PICKUP_ETA_FACTOR: float = 0.3
    PICKUP_ETA_MIN_MINUTES: int = 3

    LOCATION_MIN_WRITE_SECONDS: float = 1.2
    LOCATION_POLL_SECONDS: float = 5.0

    ADMIN_EMAILS: List[str] = []
    SECRETARY_EMAIL: str | None = None

    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

settings = Settings()
