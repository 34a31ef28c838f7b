from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from offload.exceptions import ServiceClosedError


class PendingCall:
    """
    The waiting side of one offloaded call. Settles at most once; later
    fulfil/fail calls are ignored.
    """

    def __init__(self, job_id: str, task_name: str) -> None:
        self.job_id = job_id
        self.task_name = task_name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._value: Any = None
        self._error: Optional[BaseException] = None

    def fulfil(self, value: Any) -> bool:
        return self._settle(value, None)

    def fail(self, error: BaseException) -> bool:
        return self._settle(None, error)

    def _settle(self, value: Any, error: Optional[BaseException]) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._error = error
            self._event.set()
            return True

    @property
    def settled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def outcome(self) -> Any:
        if self._error is not None:
            raise self._error
        return self._value


class PendingCallTable:
    """
    In-flight calls keyed by job id. Whoever pops an entry owns settling it,
    which is how completion, failure, timeout and shutdown race safely.
    Once drained the table is closed and add() raises ServiceClosedError.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, PendingCall] = {}
        self._lock = threading.Lock()
        self._closed = False

    def add(self, call: PendingCall) -> None:
        with self._lock:
            if self._closed:
                raise ServiceClosedError(f"Cannot track job {call.job_id}: pending calls are closed")
            if call.job_id in self._calls:
                raise KeyError(f"Job {call.job_id} already has a pending call")
            self._calls[call.job_id] = call

    def pop(self, job_id: str) -> Optional[PendingCall]:
        with self._lock:
            return self._calls.pop(job_id, None)

    def drain(self) -> List[PendingCall]:
        with self._lock:
            self._closed = True
            calls = list(self._calls.values())
            self._calls.clear()
            return calls

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._calls
