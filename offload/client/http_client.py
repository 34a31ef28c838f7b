import time
import httpx
import logging
from typing import Any, List, Optional

from offload.exceptions import BrokerUnavailableError

logger = logging.getLogger(__name__)


class HttpQueueClient:
    """
    Queue client that talks to a broker service (`uvicorn offload.main:app`).
    Connection failures are retried with a short backoff, then surface as
    BrokerUnavailableError.
    """
    def __init__(self, base_url: str, timeout: float = 5.0, retries: int = 2,
                 http_client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.retries = retries
        self.http_client = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_config(cls, config) -> "HttpQueueClient":
        return cls(config.broker_url, timeout=config.http_timeout_sec, retries=config.http_retries)

    def _make_request(self, method: str, endpoint: str, json_data: dict = None, params: dict = None):
        url = f"{self.base_url}{endpoint}"
        for attempt in range(self.retries + 1):
            try:
                if method.upper() == "GET":
                    resp = self.http_client.get(url, params=params)
                else:
                    resp = self.http_client.post(url, json=json_data)
                resp.raise_for_status()
                return resp.json()
            except httpx.TransportError as e:
                if attempt >= self.retries:
                    raise BrokerUnavailableError(
                        f"Failed to communicate with broker at {self.base_url} after {attempt + 1} attempts: {e}"
                    ) from e
                delay = 0.05 * (2 ** attempt)
                logger.warning(f"Broker at {self.base_url} unreachable, retrying in {delay:.2f}s: {e}")
                time.sleep(delay)

    def _acknowledge(self, endpoint: str, json_data: dict) -> bool:
        try:
            self._make_request("POST", endpoint, json_data)
            return True
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 400:
                return False
            raise

    # --- Queue API ---
    def enqueue(self, queue_name: str, payload: dict, job_id: Optional[str] = None) -> str:
        resp = self._make_request("POST", "/enqueue", {"queue": queue_name, "payload": payload, "job_id": job_id})
        return resp["job_id"]

    def claim(self, queue_name: str, worker_id: str, lease_timeout_sec: float = 60.0) -> Optional[dict]:
        resp = self._make_request("POST", "/claim", {
            "queue": queue_name, "worker_id": worker_id, "lease_timeout_sec": lease_timeout_sec
        })
        return resp.get("job")

    def complete(self, job_id: str, worker_id: str, result: Any = None) -> bool:
        return self._acknowledge("/complete", {"job_id": job_id, "worker_id": worker_id, "result": result})

    def fail(self, job_id: str, worker_id: str, reason: str, error_type: Optional[str] = None,
             max_attempts: int = 1) -> bool:
        return self._acknowledge("/fail", {
            "job_id": job_id, "worker_id": worker_id, "reason": reason,
            "error_type": error_type, "max_attempts": max_attempts,
        })

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        return self._acknowledge("/heartbeat", {"job_id": job_id, "worker_id": worker_id})

    def events_since(self, queue_name: str, after_seq: int) -> List[dict]:
        resp = self._make_request("GET", "/events", params={"queue": queue_name, "after": after_seq})
        return resp["events"]

    def latest_seq(self) -> int:
        return self._make_request("GET", "/events/latest")["latest_seq"]

    def health(self, queue_name: str) -> dict:
        return self._make_request("GET", f"/queues/{queue_name}/health")["health"]

    def compact(self, archive_file: str = "archive.jsonl") -> int:
        return self._make_request("POST", "/compact", {"archive_file": archive_file})["archived"]

    def close(self):
        self.http_client.close()
