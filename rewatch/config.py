from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Persistence
    STATE_DIR: str = "/data/rewatch"
    DEVICE_ID_PATH: str = "/data/rewatch/device_id"
    PERSIST_ENABLED: bool = True
    PERSIST_RETRY_ATTEMPTS: int = 2

    # Sync cadence
    SYNC_INTERVAL_SECONDS: int = 600  # 10 min
    LISTENER_MIN_INTERVAL_SECONDS: int = 300  # 5 min between listener-triggered rounds
    SELF_WRITE_WINDOW_SECONDS: int = 20
    LISTENER_TRIGGER_DELAY_SECONDS: float = 1.5
    FULL_SYNC_EVERY_ROUNDS: int = 6

    # Tombstones and replicas
    TOMBSTONE_RETENTION_DAYS: int = 30
    STALE_THRESHOLD_DAYS: int = 29
    REPLICA_FORGET_DAYS: int = 90
    TOMBSTONE_SWEEP_INTERVAL_SECONDS: int = 86400  # 24h

    # Synchronized storage area
    SYNC_TRANSPORT: str = "memory"  # memory, http
    SYNC_BASE_URL: Optional[str] = None
    SYNC_TOKEN: Optional[str] = None
    SYNC_POLL_INTERVAL_SECONDS: int = 60
    SYNC_CHUNK_BYTES: int = 8000
    SYNC_MIN_CHUNK_BYTES: int = 1024
    SYNC_QUOTA_BYTES: int = 102400
    SYNC_QUOTA_BYTES_PER_ITEM: int = 8192

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
