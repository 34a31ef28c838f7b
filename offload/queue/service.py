import time
import json
import logging
import threading
from typing import Any, Dict, List, Optional

from offload.queue.storage import LocalCASObject, ConflictError
from offload.queue.models import (
    DEFAULT_MAX_EVENTS,
    DEFAULT_REMOVE_ON_COMPLETE,
    DEFAULT_REMOVE_ON_FAIL,
    FINISHED_STATES,
    Intent,
    EnqueueIntent,
    ClaimIntent,
    CompleteIntent,
    FailIntent,
    HeartbeatIntent,
    ensure_queue_state,
    events_after,
    queue_health,
)

logger = logging.getLogger(__name__)


class QueueOperations:
    """
    Queue API shared by every client. Subclasses provide _apply(intent) for
    writes and _read() for a snapshot of the queue document.
    """
    max_events = DEFAULT_MAX_EVENTS
    remove_on_complete = DEFAULT_REMOVE_ON_COMPLETE
    remove_on_fail = DEFAULT_REMOVE_ON_FAIL

    def _apply(self, intent: Intent) -> Any:
        raise NotImplementedError

    def _read(self) -> dict:
        raise NotImplementedError

    def enqueue(self, queue_name: str, payload: dict, job_id: Optional[str] = None) -> str:
        return self._apply(EnqueueIntent(queue_name, payload, job_id))

    def claim(self, queue_name: str, worker_id: str, lease_timeout_sec: float = 60.0) -> Optional[dict]:
        return self._apply(ClaimIntent(queue_name, worker_id, lease_timeout_sec))

    def complete(self, job_id: str, worker_id: str, result: Any = None) -> bool:
        return self._apply(CompleteIntent(job_id, worker_id, result, max_events=self.max_events,
                                          keep_completed=self.remove_on_complete))

    def fail(self, job_id: str, worker_id: str, reason: str, error_type: Optional[str] = None,
             max_attempts: int = 1) -> bool:
        return self._apply(FailIntent(job_id, worker_id, reason, error_type,
                                      max_attempts=max_attempts, max_events=self.max_events,
                                      keep_failed=self.remove_on_fail))

    def heartbeat(self, job_id: str, worker_id: str) -> bool:
        return self._apply(HeartbeatIntent(job_id, worker_id))

    def events_since(self, queue_name: str, after_seq: int) -> List[dict]:
        return events_after(self._read(), queue_name, after_seq)

    def latest_seq(self) -> int:
        return self._read().get("event_seq", 0)

    def get_job(self, job_id: str) -> Optional[dict]:
        for job in self._read().get("jobs", []):
            if job["id"] == job_id:
                return job
        return None

    def health(self, queue_name: str) -> dict:
        return queue_health(self._read(), queue_name)


class QueueClient(QueueOperations):
    """Applies every intent directly to the shared queue file with its own CAS write."""

    def __init__(self, filename_base="queue", max_events: int = DEFAULT_MAX_EVENTS,
                 remove_on_complete: Optional[int] = DEFAULT_REMOVE_ON_COMPLETE,
                 remove_on_fail: Optional[int] = DEFAULT_REMOVE_ON_FAIL):
        self.cas = LocalCASObject(filename_base)
        self.max_events = max_events
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail

        try:
            self.cas.update_with_retry(ensure_queue_state)
        except ConflictError:
            pass  # another process initialised it

    def _apply(self, intent: Intent) -> Any:
        outcome = {}

        def apply_intent(data):
            outcome["value"] = intent.apply(ensure_queue_state(data))
            return data

        self.cas.update_with_retry(apply_intent)
        return outcome.get("value")

    def _read(self) -> dict:
        data, _ = self.cas.read()
        return ensure_queue_state(data)

    def compact(self, archive_file="archive.jsonl") -> int:
        """
        Removes completed/failed jobs from the queue file to keep it small.
        Appends them to an archive file.
        """
        archived_jobs = []

        def do_compact(data):
            ensure_queue_state(data)
            active = []
            archived_jobs.clear()

            for job in data["jobs"]:
                if job["state"] in FINISHED_STATES:
                    archived_jobs.append(job)
                else:
                    active.append(job)

            data["jobs"] = active
            return data

        self.cas.update_with_retry(do_compact)

        if archived_jobs:
            with open(archive_file, "a") as f:
                for job in archived_jobs:
                    f.write(json.dumps(job) + "\n")
            logger.info(f"Compacted {len(archived_jobs)} jobs to {archive_file}")
        return len(archived_jobs)


class BufferedQueueClient(QueueOperations):
    """
    Group-commit wrapper: callers on many threads submit intents which a
    background thread applies in batches, one CAS write per batch.
    """
    def __init__(self, queue_client: QueueClient, max_batch_size=100, flush_interval_ms=50):
        self.queue_client = queue_client
        self.max_events = queue_client.max_events
        self.remove_on_complete = queue_client.remove_on_complete
        self.remove_on_fail = queue_client.remove_on_fail
        self.max_batch_size = max_batch_size
        self.flush_interval_sec = flush_interval_ms / 1000.0

        # Buffer of {"intent", "event", "result"}
        self._buffer: List[Dict] = []
        self._lock = threading.Lock()

        self.metrics = {
            "total_flushes": 0,
            "total_intents": 0,
            "total_conflicts": 0,
        }

        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._flush_loop, name="queue-flusher", daemon=True)
        self._thread.start()

    def _apply(self, intent: Intent) -> Any:
        """Submits an intent to the buffer and blocks until its batch is written."""
        event = threading.Event()
        result_container = {}

        with self._lock:
            if self._stop_event.is_set():
                raise RuntimeError("Buffered queue client is shut down.")
            self._buffer.append({
                "intent": intent,
                "event": event,
                "result": result_container
            })

        event.wait()

        if "error" in result_container:
            raise result_container["error"]
        return result_container.get("value")

    def _read(self) -> dict:
        return self.queue_client._read()

    def compact(self, archive_file="archive.jsonl") -> int:
        return self.queue_client.compact(archive_file)

    def _flush_loop(self):
        while not self._stop_event.wait(self.flush_interval_sec):
            with self._lock:
                if not self._buffer:
                    continue
                batch = self._buffer[:self.max_batch_size]
                self._buffer = self._buffer[self.max_batch_size:]

            self._process_batch(batch)

    def _process_batch(self, batch: List[Dict]):
        """Runs the CAS loop to apply the whole batch of intents at once."""
        start_t = time.perf_counter()
        self.metrics["total_flushes"] += 1
        self.metrics["total_intents"] += len(batch)

        def apply_batch(data):
            ensure_queue_state(data)
            for item in batch:
                item["result"]["temp_value"] = item["intent"].apply(data)
            return data

        try:
            self.queue_client.cas.update_with_retry(apply_batch)
            for item in batch:
                item["result"]["value"] = item["result"].get("temp_value")
        except ConflictError as e:
            self.metrics["total_conflicts"] += 1
            for item in batch:
                item["result"]["error"] = e
        except Exception as e:
            for item in batch:
                item["result"]["error"] = e
        finally:
            elapsed_ms = (time.perf_counter() - start_t) * 1000
            logger.info(json.dumps({
                "event": "flush_batch",
                "batch_size": len(batch),
                "duration_ms": round(elapsed_ms, 2)
            }))

            for item in batch:
                item["event"].set()

    def shutdown(self):
        """Stops the background thread and flushes remaining intents."""
        if self._stop_event.is_set():
            return
        with self._lock:
            self._stop_event.set()
        self._thread.join()

        with self._lock:
            remaining, self._buffer = self._buffer, []
        while remaining:
            batch, remaining = remaining[:self.max_batch_size], remaining[self.max_batch_size:]
            self._process_batch(batch)
