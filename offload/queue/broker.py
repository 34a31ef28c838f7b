"""
Broker contract consumed by the compute bridge, and its implementation over
any queue client (queue file, buffered, in-memory or HTTP).

    broker = QueueBroker(QueueClient("queue"))
    broker.enqueue("compute-queue", {"task_name": "sum", "args": [2, 3]})
    broker.subscribe_events("compute-queue", on_event)
    broker.start_consumer("compute-queue", 10, handler)

Jobs are claimed by a single loop thread and executed on a bounded thread
pool. Enqueues and finished jobs going through the broker bump a
ChangeSignal, which wakes the claim loop and the event subscriptions right
away; changes made by other processes are picked up by polling.
"""
from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Protocol

from offload.queue.schemas import QueueEvent
from offload.queue.service import QueueOperations

logger = logging.getLogger(__name__)

EventCallback = Callable[[QueueEvent], None]
JobHandler = Callable[[Dict[str, Any]], Any]


class Broker(Protocol):
    def enqueue(self, queue_name: str, payload: Dict[str, Any], job_id: Optional[str] = None) -> str:
        ...

    def subscribe_events(self, queue_name: str, on_event: EventCallback) -> "EventSubscription":
        ...

    def start_consumer(self, queue_name: str, concurrency: int, handler: JobHandler) -> "QueueConsumer":
        ...

    def close(self) -> None:
        ...


class ChangeSignal:
    """A counter threads can block on until it moves past the value they last saw."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    def notify(self) -> None:
        with self._cond:
            self._count += 1
            self._cond.notify_all()

    def wait(self, seen: int, timeout: float) -> int:
        with self._cond:
            self._cond.wait_for(lambda: self._count != seen, timeout)
            return self._count


class EventSubscription:
    """Delivers completion/failure events that appear after the subscription started."""

    def __init__(self, client: QueueOperations, queue_name: str, on_event: EventCallback,
                 poll_interval_ms: int = 10, changes: Optional[ChangeSignal] = None) -> None:
        self.client = client
        self.queue_name = queue_name
        self.on_event = on_event
        self.poll_interval_sec = poll_interval_ms / 1000.0
        self.changes = changes or ChangeSignal()
        self._cursor: Optional[int] = None
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._poll_loop, name=f"events-{queue_name}", daemon=True)

    def start(self) -> "EventSubscription":
        try:
            self._cursor = self.client.latest_seq()
        except Exception as e:
            logger.warning(f"Event log of {self.queue_name} unreachable at subscribe, will retry: {e}")
        self._thread.start()
        return self

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            seen = self.changes.count
            try:
                if self._cursor is None:
                    self._cursor = self.client.latest_seq()
                events = self.client.events_since(self.queue_name, self._cursor)
            except Exception as e:
                logger.error(f"Polling events of {self.queue_name} failed: {e}")
                events = []

            for raw in events:
                self._cursor = max(self._cursor, raw["seq"])
                try:
                    self.on_event(QueueEvent(**raw))
                except Exception:
                    logger.exception(f"Event handler failed for job {raw.get('job_id')}")

            self.changes.wait(seen, self.poll_interval_sec)

    def close(self) -> None:
        self._stop_event.set()
        self.changes.notify()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()


class QueueConsumer:
    """
    Bounded-concurrency worker pool over one queue.

    The claim loop only claims while a slot is free, so at most `concurrency`
    jobs are in flight. A handler's return value completes the job; an
    exception fails it with the message as reason and the class name as
    error_type. In-flight jobs are heartbeated every third of the lease.
    """

    def __init__(self, client: QueueOperations, queue_name: str, handler: JobHandler,
                 concurrency: int = 10, poll_interval_ms: int = 10, lease_timeout_sec: float = 60.0,
                 max_attempts: int = 1, worker_id: Optional[str] = None,
                 changes: Optional[ChangeSignal] = None) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.queue_name = queue_name
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval_sec = poll_interval_ms / 1000.0
        self.lease_timeout_sec = lease_timeout_sec
        self.max_attempts = max_attempts
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.changes = changes or ChangeSignal()

        self.metrics = {"claimed": 0, "completed": 0, "failed": 0}

        self._slots = threading.BoundedSemaphore(concurrency)
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"{queue_name}-job")
        self._in_flight: set = set()
        self._in_flight_lock = threading.Lock()
        self._last_heartbeat = time.monotonic()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._claim_loop, name=f"consumer-{queue_name}", daemon=True)

    def start(self) -> "QueueConsumer":
        self._thread.start()
        logger.info({"event": "consumer_start", "queue": self.queue_name,
                     "worker_id": self.worker_id, "concurrency": self.concurrency})
        return self

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    @property
    def in_flight_count(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    def _claim_loop(self) -> None:
        while not self._stop_event.is_set():
            self._heartbeat_in_flight()

            if not self._slots.acquire(timeout=self.poll_interval_sec):
                continue

            seen = self.changes.count
            try:
                job = self.client.claim(self.queue_name, self.worker_id, self.lease_timeout_sec)
            except Exception as e:
                logger.error(f"Claim on {self.queue_name} failed: {e}")
                job = None

            if job is None:
                self._slots.release()
                self.changes.wait(seen, self.poll_interval_sec)
                continue

            with self._in_flight_lock:
                self.metrics["claimed"] += 1
                self._in_flight.add(job["id"])
            self._executor.submit(self._run, job)

    def _count(self, metric: str) -> None:
        with self._in_flight_lock:
            self.metrics[metric] += 1

    def _heartbeat_in_flight(self) -> None:
        now = time.monotonic()
        if now - self._last_heartbeat < self.lease_timeout_sec / 3:
            return
        self._last_heartbeat = now
        with self._in_flight_lock:
            job_ids = list(self._in_flight)
        for job_id in job_ids:
            try:
                self.client.heartbeat(job_id, self.worker_id)
            except Exception as e:
                logger.warning(f"Heartbeat for job {job_id} failed: {e}")

    def _run(self, job: dict) -> None:
        job_id = job["id"]
        try:
            try:
                result = self.handler(job["payload"])
            except Exception as exc:
                reason = str(exc) or type(exc).__name__
                logger.error(f"Job {job_id} on {self.queue_name} failed: {reason}")
                self._fail(job_id, reason, type(exc).__name__)
                return

            try:
                self.client.complete(job_id, self.worker_id, result)
                self._count("completed")
                self.changes.notify()
            except (TypeError, ValueError) as exc:
                reason = f"Result of job {job_id} is not serializable: {exc}"
                logger.error(reason)
                self._fail(job_id, reason, type(exc).__name__)
        except Exception as exc:
            # Outcome not recorded; the lease expires and the job is claimed again
            logger.error(f"Could not record outcome of job {job_id}: {exc}")
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(job_id)
            self._slots.release()

    def _fail(self, job_id: str, reason: str, error_type: str) -> None:
        self.client.fail(job_id, self.worker_id, reason, error_type, max_attempts=self.max_attempts)
        self._count("failed")
        self.changes.notify()

    def close(self) -> None:
        """Stops claiming and waits for in-flight jobs to finish."""
        self._stop_event.set()
        self.changes.notify()
        if self._thread.is_alive():
            self._thread.join()
        self._executor.shutdown(wait=True)


class QueueBroker:
    def __init__(self, client: QueueOperations, poll_interval_ms: int = 10,
                 lease_timeout_sec: float = 60.0, max_attempts: int = 1) -> None:
        self.client = client
        self.poll_interval_ms = poll_interval_ms
        self.lease_timeout_sec = lease_timeout_sec
        self.max_attempts = max_attempts
        self.changes = ChangeSignal()
        self._subscriptions: List[EventSubscription] = []
        self._consumers: List[QueueConsumer] = []
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, client: QueueOperations, config) -> "QueueBroker":
        return cls(
            client,
            poll_interval_ms=config.compute_poll_interval_ms,
            lease_timeout_sec=config.compute_lease_timeout_sec,
            max_attempts=config.compute_max_attempts,
        )

    def enqueue(self, queue_name: str, payload: Dict[str, Any], job_id: Optional[str] = None) -> str:
        job_id = self.client.enqueue(queue_name, payload, job_id)
        self.changes.notify()
        return job_id

    def subscribe_events(self, queue_name: str, on_event: EventCallback) -> EventSubscription:
        subscription = EventSubscription(self.client, queue_name, on_event, self.poll_interval_ms, self.changes)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription.start()

    def start_consumer(self, queue_name: str, concurrency: int, handler: JobHandler) -> QueueConsumer:
        consumer = QueueConsumer(
            self.client,
            queue_name,
            handler,
            concurrency=concurrency,
            poll_interval_ms=self.poll_interval_ms,
            lease_timeout_sec=self.lease_timeout_sec,
            max_attempts=self.max_attempts,
            changes=self.changes,
        )
        with self._lock:
            self._consumers.append(consumer)
        return consumer.start()

    def health(self, queue_name: str) -> dict:
        return self.client.health(queue_name)

    def close(self) -> None:
        with self._lock:
            consumers, self._consumers = self._consumers, []
            subscriptions, self._subscriptions = self._subscriptions, []
        for consumer in consumers:
            consumer.close()
        for subscription in subscriptions:
            subscription.close()
