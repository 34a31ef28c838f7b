from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from offload.compute.schemas import ComputeStatus
from offload.compute.service import ComputeService
from offload.dependencies import get_compute_service

router = APIRouter(tags=["Compute"])


@router.get("/compute/status", response_model=ComputeStatus)
def compute_status(service: ComputeService = Depends(get_compute_service)):
    return service.get_status()


@router.get("/health")
def health(service: ComputeService = Depends(get_compute_service)):
    try:
        compute = {"status": "up", **service.get_status()}
    except Exception as e:
        compute = {"status": "down", "error": str(e)}

    try:
        queue = {"status": "up", **service.broker.health(service.queue_name)}
    except Exception as e:
        queue = {"status": "down", "error": str(e)}

    return {
        "status": "up" if queue["status"] == "up" else "down",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {"compute": compute, "queue": queue},
    }
