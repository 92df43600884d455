"""
Core settings and environment variables for the Incident Trust Engine.
Uses pydantic-settings for type-safe environment variable loading.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Create a .env file in the root directory to configure these.
    """

    # Application
    APP_NAME: str = "Incident Trust Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # CORS - Frontend URLs allowed to access this API
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Firebase/Firestore
    FIREBASE_PROJECT_ID: Optional[str] = None
    FIREBASE_CREDENTIALS_PATH: Optional[str] = None  # Path to service account JSON

    # In-memory store for local development and tests (no Firebase credentials needed)
    USE_MOCK_DB: bool = False

    # Store call behaviour
    STORE_TIMEOUT_SECONDS: float = 5.0          # Applied to every store round trip
    READ_RETRY_DEADLINE_SECONDS: float = 10.0   # Total backoff budget for read-only calls
    MAX_CONDITIONAL_WRITE_ATTEMPTS: int = 5     # Transaction attempts before CONCURRENCY_CONFLICT

    # Trust scoring weights (heuristics, not a contract)
    SCORE_UPVOTE_POINTS: int = 5
    SCORE_UPVOTE_CAP: int = 50
    SCORE_MEDIA_POINTS: int = 5
    SCORE_MEDIA_CAP: int = 20
    SCORE_DESCRIPTION_TIERS: str = "100,500"   # Description lengths that each earn a bonus
    SCORE_DESCRIPTION_BONUS: int = 5
    SCORE_REGISTERED_REPORTER_BONUS: int = 10
    SCORE_AGE_GRACE_DAYS: int = 7
    SCORE_AGE_PENALTY_CAP: int = 20

    # Transitions into/out of these statuses trigger a score recomputation
    SCORE_AFFECTING_STATUSES: str = "verified,duplicate,false_report"

    # Guest quota
    GUEST_BASE_MAX_ACTIONS: int = 10
    GUEST_MAX_ACTIONS_CAP: int = 50
    GUEST_TTL_DAYS: int = 30

    # Incidents
    MAX_MEDIA_PER_INCIDENT: int = 20
    DUPLICATE_RADIUS_METERS: float = 100.0
    DEFAULT_SEARCH_RADIUS_METERS: float = 5000.0
    MAX_SEARCH_RADIUS_METERS: float = 50000.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"


# Global settings instance
settings = Settings()
