from enum import Enum
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppRole(str, Enum):
    API = "api"
    WORKER = "worker"
    ALL = "all"


class AppConfig(BaseSettings):
    port: int = 8000
    log_level: str = "INFO"
    app_role: AppRole = AppRole.ALL

    # Remote broker service; when unset the queue file is used directly
    broker_url: Optional[str] = None
    queue_storage_filename: str = "queue"

    compute_enabled: bool = True
    compute_queue_name: str = "compute-queue"
    compute_timeout_ms: int = 5000
    compute_concurrency: int = 10
    # Fallback for changes made by other processes; in-process changes wake pollers at once
    compute_poll_interval_ms: int = 10
    compute_lease_timeout_sec: float = 60.0
    compute_max_attempts: int = 1
    compute_max_events: int = 1000
    # Finished jobs kept per queue; None keeps them all until compaction
    compute_remove_on_complete: Optional[int] = 100
    compute_remove_on_fail: Optional[int] = 50

    compute_auto_spawn: bool = False
    compute_min_workers: int = 3
    compute_max_workers: int = 8
    compute_worker_app: Optional[str] = None

    buffer_max_batch_size: int = 100
    buffer_flush_interval_ms: int = 5

    http_timeout_sec: float = 5.0
    http_retries: int = 2

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def worker_enabled(self) -> bool:
        return self.app_role in (AppRole.WORKER, AppRole.ALL)

    @property
    def listener_enabled(self) -> bool:
        return self.app_role in (AppRole.API, AppRole.ALL)


settings = AppConfig()
