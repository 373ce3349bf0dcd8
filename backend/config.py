from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    # "firestore" for real rooms, "memory" for a single-process table (dev / tests)
    store_backend: str = "firestore"
    # Stable identity for this client process; a uuid4 is generated when empty
    player_id: str = ""
    # CORS origins for the local UI; set ALLOWED_ORIGINS env var (comma-separated)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Host countdown resolution (one tick per second in play)
    timer_tick_seconds: float = 1.0
    # Anti-stuck guard: poll period and how long without a push counts as stale
    sync_guard_interval: float = 2.0
    sync_staleness_window: float = 3.0
    # Host-side night aggregation poll
    host_monitor_interval: float = 2.0
    presence_interval: float = 5.0
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
