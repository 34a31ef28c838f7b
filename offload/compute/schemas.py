import time
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class ComputeJob(BaseModel):
    """Payload of one offloaded call."""
    task_name: str
    args: List[Any] = Field(default_factory=list)
    kwargs: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class WorkerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    NOT_INITIALIZED = "not_initialized"


class ComputeStatus(BaseModel):
    worker_enabled: bool
    worker_status: WorkerStatus
    pending_jobs_count: int
    handlers_count: int
