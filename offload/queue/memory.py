from __future__ import annotations

import copy
import threading
from typing import Any, Optional

from offload.queue.models import (
    DEFAULT_MAX_EVENTS,
    DEFAULT_REMOVE_ON_COMPLETE,
    DEFAULT_REMOVE_ON_FAIL,
    FINISHED_STATES,
    Intent,
    ensure_queue_state,
)
from offload.queue.service import QueueOperations


class InMemoryQueueClient(QueueOperations):
    """
    Thread-safe in-process queue with the same semantics as the queue file.

    Nothing survives the process, so it only fits single-process deployments
    where callers and workers share one interpreter.
    """

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS,
                 remove_on_complete: Optional[int] = DEFAULT_REMOVE_ON_COMPLETE,
                 remove_on_fail: Optional[int] = DEFAULT_REMOVE_ON_FAIL) -> None:
        self.max_events = max_events
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self._data: dict = ensure_queue_state({})
        self._lock = threading.Lock()

    def _apply(self, intent: Intent) -> Any:
        with self._lock:
            return copy.deepcopy(intent.apply(self._data))

    def _read(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._data)

    def compact(self, archive_file: str | None = None) -> int:
        with self._lock:
            before = len(self._data["jobs"])
            self._data["jobs"] = [
                job for job in self._data["jobs"] if job["state"] not in FINISHED_STATES
            ]
            return before - len(self._data["jobs"])
