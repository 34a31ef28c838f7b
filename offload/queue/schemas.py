from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel


class EnqueueRequest(BaseModel):
    queue: str
    payload: Dict[str, Any]
    job_id: Optional[str] = None


class ClaimRequest(BaseModel):
    queue: str
    worker_id: str
    lease_timeout_sec: float = 60.0


class CompleteRequest(BaseModel):
    job_id: str
    worker_id: str
    result: Any = None


class FailRequest(BaseModel):
    job_id: str
    worker_id: str
    reason: str
    error_type: Optional[str] = None
    max_attempts: int = 1


class HeartbeatRequest(BaseModel):
    job_id: str
    worker_id: str


class CompactRequest(BaseModel):
    archive_file: str = "archive.jsonl"


class QueueEvent(BaseModel):
    """Terminal outcome of a job, correlated by job_id."""
    seq: int
    queue: str
    type: Literal["completed", "failed"]
    job_id: str
    result: Any = None
    reason: Optional[str] = None
    error_type: Optional[str] = None
    ts: float
