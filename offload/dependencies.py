from offload.queue.service import QueueOperations
from offload.compute.service import ComputeService

# Global references populated during app lifespan
_queue_client_instance: QueueOperations = None
_compute_service_instance: ComputeService = None


def get_queue_client() -> QueueOperations:
    """FastAPI Dependency for accessing the queue store."""
    if not _queue_client_instance:
        raise RuntimeError("Queue client is not initialized.")
    return _queue_client_instance


def set_queue_client(client: QueueOperations):
    global _queue_client_instance
    _queue_client_instance = client


def get_compute_service() -> ComputeService:
    """FastAPI Dependency for accessing the compute bridge."""
    if not _compute_service_instance:
        raise RuntimeError("Compute service is not initialized.")
    return _compute_service_instance


def set_compute_service(service: ComputeService):
    global _compute_service_instance
    _compute_service_instance = service
