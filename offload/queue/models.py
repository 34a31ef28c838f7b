import json
import time
import uuid

DEFAULT_MAX_EVENTS = 1000
DEFAULT_REMOVE_ON_COMPLETE = 100
DEFAULT_REMOVE_ON_FAIL = 50

FINISHED_STATES = ("completed", "failed")


def ensure_queue_state(data: dict) -> dict:
    """Fill in the top-level keys of a queue document."""
    data.setdefault("jobs", [])
    data.setdefault("events", [])
    data.setdefault("event_seq", 0)
    return data


def _snapshot(value):
    # Detaches the stored copy from the caller and rejects values json cannot encode
    return json.loads(json.dumps(value))


def _find_job(data: dict, job_id: str):
    for job in data.get("jobs", []):
        if job["id"] == job_id:
            return job
    return None


def _append_event(data: dict, job: dict, max_events: int) -> dict:
    data["event_seq"] = data.get("event_seq", 0) + 1
    event = {
        "seq": data["event_seq"],
        "queue": job["queue"],
        "type": job["state"],
        "job_id": job["id"],
        "result": job.get("result"),
        "reason": job.get("reason"),
        "error_type": job.get("error_type"),
        "ts": time.time(),
    }
    data["events"].append(event)
    if len(data["events"]) > max_events:
        data["events"] = data["events"][-max_events:]
    return event


def _trim_finished(data: dict, queue_name: str, state: str, keep) -> int:
    """Drops the oldest jobs of one finished state beyond `keep`. None keeps everything."""
    if keep is None:
        return 0
    finished = [job for job in data["jobs"] if job["queue"] == queue_name and job["state"] == state]
    excess = len(finished) - max(keep, 0)
    if excess <= 0:
        return 0

    finished.sort(key=lambda job: job.get("finished_ts") or 0)
    dropped = {job["id"] for job in finished[:excess]}
    data["jobs"] = [job for job in data["jobs"] if job["id"] not in dropped]
    return excess


class Intent:
    """A mutation of the queue document. apply() may be re-run on a fresh read after a CAS conflict."""

    def apply(self, data: dict):
        raise NotImplementedError


class EnqueueIntent(Intent):
    def __init__(self, queue_name: str, payload: dict, job_id: str = None):
        self.queue_name = queue_name
        self.payload = _snapshot(payload)
        self.job_id = job_id or uuid.uuid4().hex
        self.created_ts = time.time()

    def apply(self, data: dict):
        ensure_queue_state(data)
        if _find_job(data, self.job_id) is not None:
            return self.job_id

        data["jobs"].append({
            "id": self.job_id,
            "queue": self.queue_name,
            "state": "queued",
            "payload": self.payload,
            "claimed_by": None,
            "heartbeat_ts": None,
            "created_ts": self.created_ts,
            "attempt": 0,
            "result": None,
            "reason": None,
            "error_type": None,
            "finished_ts": None,
        })
        return self.job_id


class ClaimIntent(Intent):
    """Claims the oldest queued job, else the oldest job whose lease has expired."""

    def __init__(self, queue_name: str, worker_id: str, lease_timeout_sec: float = 60.0):
        self.queue_name = queue_name
        self.worker_id = worker_id
        self.lease_timeout_sec = lease_timeout_sec

    def apply(self, data: dict):
        now = time.time()
        jobs = [job for job in data.get("jobs", []) if job["queue"] == self.queue_name]

        for job in jobs:
            if job["state"] == "queued":
                return self._take(job, now)

        for job in jobs:
            if job["state"] == "in_progress":
                if job["heartbeat_ts"] and (now - job["heartbeat_ts"] > self.lease_timeout_sec):
                    return self._take(job, now)

        return None

    def _take(self, job: dict, now: float) -> dict:
        job["state"] = "in_progress"
        job["claimed_by"] = self.worker_id
        job["heartbeat_ts"] = now
        job["attempt"] += 1
        return dict(job)


class CompleteIntent(Intent):
    """Finishes a job and keeps only the newest `keep_completed` completed jobs of its queue."""

    def __init__(self, job_id: str, worker_id: str, result=None, max_events: int = DEFAULT_MAX_EVENTS,
                 keep_completed=DEFAULT_REMOVE_ON_COMPLETE):
        self.job_id = job_id
        self.worker_id = worker_id
        self.result = _snapshot(result)
        self.max_events = max_events
        self.keep_completed = keep_completed

    def apply(self, data: dict):
        ensure_queue_state(data)
        job = _find_job(data, self.job_id)
        if job is None or job["state"] != "in_progress" or job["claimed_by"] != self.worker_id:
            return False

        job["state"] = "completed"
        job["claimed_by"] = None
        job["result"] = self.result
        job["finished_ts"] = time.time()
        _append_event(data, job, self.max_events)
        _trim_finished(data, job["queue"], "completed", self.keep_completed)
        return True


class FailIntent(Intent):
    """
    Records a failed attempt. Below max_attempts the job goes back to queued
    silently; at max_attempts it becomes terminally failed and a failure event
    is emitted. Only the newest `keep_failed` failed jobs of the queue are kept.
    """

    def __init__(self, job_id: str, worker_id: str, reason: str, error_type: str = None,
                 max_attempts: int = 1, max_events: int = DEFAULT_MAX_EVENTS,
                 keep_failed=DEFAULT_REMOVE_ON_FAIL):
        self.job_id = job_id
        self.worker_id = worker_id
        self.reason = reason
        self.error_type = error_type
        self.max_attempts = max_attempts
        self.max_events = max_events
        self.keep_failed = keep_failed

    def apply(self, data: dict):
        ensure_queue_state(data)
        job = _find_job(data, self.job_id)
        if job is None or job["state"] != "in_progress" or job["claimed_by"] != self.worker_id:
            return False

        job["claimed_by"] = None
        job["heartbeat_ts"] = None
        if job["attempt"] < self.max_attempts:
            job["state"] = "queued"
            return True

        job["state"] = "failed"
        job["reason"] = self.reason
        job["error_type"] = self.error_type
        job["finished_ts"] = time.time()
        _append_event(data, job, self.max_events)
        _trim_finished(data, job["queue"], "failed", self.keep_failed)
        return True


class HeartbeatIntent(Intent):
    def __init__(self, job_id: str, worker_id: str):
        self.job_id = job_id
        self.worker_id = worker_id

    def apply(self, data: dict):
        job = _find_job(data, self.job_id)
        if job is None or job["state"] != "in_progress" or job["claimed_by"] != self.worker_id:
            return False
        job["heartbeat_ts"] = time.time()
        return True


def events_after(data: dict, queue_name: str, after_seq: int) -> list:
    return [
        dict(event) for event in data.get("events", [])
        if event["seq"] > after_seq and event["queue"] == queue_name
    ]


def queue_health(data: dict, queue_name: str) -> dict:
    counts = {"queued": 0, "in_progress": 0, "completed": 0, "failed": 0}
    for job in data.get("jobs", []):
        if job["queue"] == queue_name and job["state"] in counts:
            counts[job["state"]] += 1
    return {"queue_name": queue_name, **counts}
