from fastapi import APIRouter, HTTPException, Depends

from offload.queue.schemas import (
    EnqueueRequest,
    ClaimRequest,
    CompleteRequest,
    FailRequest,
    HeartbeatRequest,
    CompactRequest,
)
from offload.dependencies import get_queue_client
from offload.queue.service import QueueOperations

router = APIRouter(tags=["Queue"])

# These routes are `def` instead of `async def` because the queue client
# blocks on thread locks; FastAPI runs `def` routes in its threadpool.


@router.post("/enqueue")
def enqueue_job(req: EnqueueRequest, client: QueueOperations = Depends(get_queue_client)):
    try:
        job_id = client.enqueue(req.queue, req.payload, req.job_id)
        return {"status": "ok", "job_id": job_id}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/claim")
def claim_job(req: ClaimRequest, client: QueueOperations = Depends(get_queue_client)):
    try:
        job = client.claim(req.queue, req.worker_id, lease_timeout_sec=req.lease_timeout_sec)
        return {"status": "ok", "job": job}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


def _require(success: bool, action: str):
    if not success:
        raise HTTPException(status_code=400, detail=f"Could not {action} job. Invalid state or ownership.")
    return {"status": "ok"}


@router.post("/complete")
def complete_job(req: CompleteRequest, client: QueueOperations = Depends(get_queue_client)):
    try:
        return _require(client.complete(req.job_id, req.worker_id, req.result), "complete")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/fail")
def fail_job(req: FailRequest, client: QueueOperations = Depends(get_queue_client)):
    try:
        success = client.fail(req.job_id, req.worker_id, req.reason, req.error_type, max_attempts=req.max_attempts)
        return _require(success, "fail")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/heartbeat")
def heartbeat_job(req: HeartbeatRequest, client: QueueOperations = Depends(get_queue_client)):
    try:
        return _require(client.heartbeat(req.job_id, req.worker_id), "heartbeat")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/events")
def list_events(queue: str, after: int = 0, client: QueueOperations = Depends(get_queue_client)):
    return {"status": "ok", "events": client.events_since(queue, after)}


@router.get("/events/latest")
def latest_event(client: QueueOperations = Depends(get_queue_client)):
    return {"status": "ok", "latest_seq": client.latest_seq()}


@router.get("/queues/{queue}/health")
def queue_health(queue: str, client: QueueOperations = Depends(get_queue_client)):
    return {"status": "ok", "health": client.health(queue)}


@router.post("/compact")
def compact_queue(req: CompactRequest, client: QueueOperations = Depends(get_queue_client)):
    return {"status": "ok", "archived": client.compact(req.archive_file)}


@router.get("/metrics")
def get_metrics(client: QueueOperations = Depends(get_queue_client)):
    return {
        "status": "ok",
        "metrics": getattr(client, "metrics", {})
    }
