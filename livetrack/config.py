"""
Configuration for LiveTrack service
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional

# Speed adjustment factors by local hour (0-23), typical urban bus traffic
DEFAULT_HOUR_FACTORS: Dict[int, float] = {
    # Night
    0: 1.2, 1: 1.25, 2: 1.3, 3: 1.3, 4: 1.25, 5: 1.15,
    # Morning rush
    6: 0.85, 7: 0.65, 8: 0.55, 9: 0.7, 10: 0.85,
    # Midday
    11: 0.9, 12: 0.8, 13: 0.85, 14: 0.9,
    # Evening rush
    15: 0.75, 16: 0.6, 17: 0.5, 18: 0.55, 19: 0.7,
    # Evening
    20: 0.9, 21: 1.0, 22: 1.1, 23: 1.15,
}

# Day of week factors (0 = Monday ... 6 = Sunday, matching datetime.weekday())
DEFAULT_DAY_FACTORS: Dict[int, float] = {
    0: 0.85,
    1: 0.9,
    2: 0.9,
    3: 0.9,
    4: 0.8,
    5: 1.15,
    6: 1.3,
}


class Settings(BaseSettings):
    """Application settings"""

    # Service Configuration
    SERVICE_NAME: str = "livetrack"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["http://localhost:5173"]

    # AWS Configuration
    AWS_REGION: str = "us-east-1"

    # Location cache
    CACHE_BACKEND: str = "memory"  # memory, redis
    REDIS_URL: Optional[str] = None
    CACHE_TIMEOUT_SECONDS: float = 2.0
    CACHE_TTL_SECONDS: Optional[int] = None  # None keeps entries until overwritten

    # History storage (DynamoDB or in-process)
    HISTORY_BACKEND: str = "memory"  # memory, dynamodb
    HISTORY_TABLE_NAME: str = "livetrack-gps-history-dev"
    HISTORY_QUEUE_SIZE: int = 10000
    HISTORY_BATCH_SIZE: int = 25  # DynamoDB batch write limit
    HISTORY_TTL_DAYS: int = 30

    # Bus registry
    REGISTRY_BACKEND: str = "memory"  # memory, dynamodb
    DEVICE_TABLE_NAME: str = "livetrack-buses-dev"
    FLEET_FILE: Optional[str] = None

    # Auth
    JWT_SECRET: str = "livetrack-dev-access-secret-key-32chars!!"
    JWT_ALGORITHM: str = "HS256"

    # Liveness / ingest
    OFFLINE_THRESHOLD_SECONDS: int = 30
    INGEST_MIN_INTERVAL_SECONDS: float = 0.0
    REJECT_OUT_OF_ORDER_FIXES: bool = False
    LOW_ACCURACY_WARN_METERS: float = 10000.0

    # Realtime fan-out
    BROADCAST_TIMEOUT_SECONDS: float = 2.0
    MAX_MESSAGE_BYTES: int = 1_000_000
    JOIN_MIN_INTERVAL_SECONDS: float = 0.0

    # ETA heuristic
    DEFAULT_CRUISING_SPEED_KMH: float = 25.0
    MIN_SPEED_KMH: float = 10.0
    MIN_ETA_SECONDS: int = 30
    ROAD_FACTOR: float = 1.4
    TIMEZONE: str = "UTC"
    HOUR_FACTORS: Dict[int, float] = DEFAULT_HOUR_FACTORS
    DAY_FACTORS: Dict[int, float] = DEFAULT_DAY_FACTORS

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
