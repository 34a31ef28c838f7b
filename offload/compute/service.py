"""
Transparent compute offload.

A method wrapped by ComputeService runs as a job on the compute queue: the
call is enqueued, a worker (possibly another process) executes the registered
handler, and the caller blocks until the completion/failure event for its job
arrives or its timeout expires. When the queue cannot be used the original
method runs locally instead.

    compute = ComputeService(broker, locator=locator, config=config)
    compute.register_handler("sum", HandlerDescriptor(Calculator, "sum"))
    compute.patch_method(calculator, "sum", "sum", timeout_ms=50)
    compute.start()
    calculator.sum(2, 3)  # -> 5, computed by a worker
"""
from __future__ import annotations

import functools
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional, Sequence

from pydantic import ValidationError

from offload.compute.locator import ServiceLocator
from offload.compute.pending import PendingCall, PendingCallTable
from offload.compute.registry import HandlerDescriptor, HandlerRegistry, token_name
from offload.compute.schemas import ComputeJob, ComputeStatus, WorkerStatus
from offload.config import AppConfig
from offload.exceptions import (
    ConfigurationError,
    OffloadTimeoutError,
    RemoteExecutionError,
    ServiceClosedError,
)
from offload.queue.broker import Broker
from offload.queue.schemas import QueueEvent

logger = logging.getLogger(__name__)


class OffloadedMethod:
    """
    Callable that runs `original` through the compute queue.

    `original` stays callable for the wrapper's whole life: it is the
    fallback path and what workers invoke when they resolve this method.
    """

    def __init__(self, service: "ComputeService", original: Callable[..., Any], task_name: str,
                 timeout_ms: Optional[float] = None, background: bool = False) -> None:
        self.service = service
        self.original = original
        self.task_name = task_name
        self.timeout_ms = timeout_ms
        self.background = background
        functools.update_wrapper(self, original)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.service.offload(
            self.task_name,
            args,
            kwargs,
            fallback=self.original,
            timeout_ms=self.timeout_ms,
            background=self.background,
        )

    def __repr__(self) -> str:
        return f"<OffloadedMethod {self.task_name} -> {getattr(self.original, '__qualname__', self.original)!r}>"


class ComputeService:
    def __init__(self, broker: Broker, locator: Optional[ServiceLocator] = None,
                 config: Optional[AppConfig] = None, queue_name: Optional[str] = None) -> None:
        self.config = config or AppConfig()
        self.broker = broker
        self.locator = locator or ServiceLocator()
        self.queue_name = queue_name or self.config.compute_queue_name

        self.registry = HandlerRegistry()
        self.pending = PendingCallTable()

        self._subscription = None
        self._consumer = None
        self._worker_status = WorkerStatus.NOT_INITIALIZED
        self._started = False
        self._closed = False
        self._lock = threading.Lock()

    @property
    def worker_enabled(self) -> bool:
        return self.config.worker_enabled

    def start(self) -> None:
        with self._lock:
            if self._started or self._closed:
                return
            self._started = True

            if self.config.listener_enabled:
                self._subscription = self.broker.subscribe_events(self.queue_name, self._on_event)

            if self.worker_enabled:
                self._consumer = self.broker.start_consumer(
                    self.queue_name, self.config.compute_concurrency, self.execute_job
                )
                self._worker_status = WorkerStatus.RUNNING

        logger.info({
            "event": "compute_start",
            "queue": self.queue_name,
            "role": self.config.app_role.value,
            "handlers": len(self.registry),
        })

    # -- registration ------------------------------------------------------

    def register_handler(self, task_name: str, descriptor: HandlerDescriptor) -> None:
        """Registers (or replaces) the handler that workers run for task_name."""
        self.registry.register(task_name, descriptor)
        logger.debug(f"Registered compute handler {task_name} -> "
                     f"{token_name(descriptor.service_token)}.{descriptor.method_name}")

    def offloaded(self, fn: Callable[..., Any], task_name: str, timeout_ms: Optional[float] = None,
                  background: bool = False) -> OffloadedMethod:
        if not callable(fn):
            raise ConfigurationError(f"Cannot offload non-callable {fn!r}")
        if isinstance(fn, OffloadedMethod):
            logger.warning(f"Re-wrapping offloaded method {fn.task_name} as {task_name}; "
                           f"the previous wrapper is replaced")
            fn = fn.original
        return OffloadedMethod(self, fn, task_name, timeout_ms=timeout_ms, background=background)

    def patch_method(self, instance: Any, method_name: str, task_name: str,
                     timeout_ms: Optional[float] = None, background: bool = False) -> OffloadedMethod:
        method = getattr(instance, method_name, None)
        if method is None or not callable(method):
            raise ConfigurationError(
                f"Method {method_name} not found or not callable on {type(instance).__name__}"
            )
        wrapper = self.offloaded(method, task_name, timeout_ms=timeout_ms, background=background)
        setattr(instance, method_name, wrapper)
        return wrapper

    # -- caller side -------------------------------------------------------

    def _offloading_available(self) -> bool:
        return (
            self.config.compute_enabled
            and self._started
            and not self._closed
            and self._subscription is not None
        )

    def offload(self, task_name: str, args: Sequence[Any], kwargs: Optional[Dict[str, Any]] = None,
                fallback: Optional[Callable[..., Any]] = None, timeout_ms: Optional[float] = None,
                background: bool = False) -> Any:
        kwargs = kwargs or {}
        if not self._offloading_available():
            if fallback is None:
                raise ConfigurationError(f"Offloading is unavailable and task '{task_name}' has no local fallback")
            return fallback(*args, **kwargs)

        job_id = uuid.uuid4().hex
        call = None
        if not background:
            call = PendingCall(job_id, task_name)
            try:
                self.pending.add(call)
            except ServiceClosedError:
                # close() drained the table after the availability check
                if fallback is None:
                    raise
                return fallback(*args, **kwargs)

        try:
            job = ComputeJob(task_name=task_name, args=list(args), kwargs=kwargs)
            self.broker.enqueue(self.queue_name, job.model_dump(), job_id=job_id)
        except Exception as e:
            self.pending.pop(job_id)
            if fallback is None:
                raise
            logger.warning(f"Offloading {task_name} failed, running locally: {e}")
            return fallback(*args, **kwargs)

        logger.debug(f"Offloaded {task_name} as job {job_id}")
        if background:
            return job_id

        return self._wait(call, timeout_ms if timeout_ms is not None else self.config.compute_timeout_ms)

    def _wait(self, call: PendingCall, timeout_ms: float) -> Any:
        if call.wait(timeout_ms / 1000.0):
            return call.outcome()

        if self.pending.pop(call.job_id) is None:
            # A completion removed the entry first; it is settling right now
            call.wait()
            return call.outcome()

        logger.warning(f"Offloaded job {call.job_id} ({call.task_name}) timed out after {timeout_ms}ms")
        call.fail(OffloadTimeoutError(call.task_name, timeout_ms))
        return call.outcome()

    def _on_event(self, event: QueueEvent) -> None:
        call = self.pending.pop(event.job_id)
        if call is None:
            logger.debug(f"Dropping {event.type} event for job {event.job_id} with no waiting caller")
            return

        if event.type == "completed":
            call.fulfil(event.result)
        else:
            logger.error(f"Offloaded job {event.job_id} ({call.task_name}) failed: {event.reason}")
            call.fail(RemoteExecutionError(event.reason or "Job failed", event.error_type, call.task_name))

    # -- worker side -------------------------------------------------------

    def execute_job(self, payload: Dict[str, Any]) -> Any:
        try:
            job = ComputeJob.model_validate(payload)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid compute job payload: {e}") from e

        descriptor = self.registry.get(job.task_name)
        if descriptor is None:
            raise ConfigurationError(f"Handler not found for task: {job.task_name}")

        instance = self.locator.resolve(descriptor.service_token)
        method = getattr(instance, descriptor.method_name, None)
        if isinstance(method, OffloadedMethod):
            method = method.original
        if method is None or not callable(method):
            raise ConfigurationError(
                f"Method {descriptor.method_name} not found or not executable on {type(instance).__name__}"
            )

        logger.debug(f"Executing compute job {job.task_name}")
        return method(*job.args, **job.kwargs)

    # -- status / lifecycle ------------------------------------------------

    def get_status(self) -> dict:
        return ComputeStatus(
            worker_enabled=self.worker_enabled,
            worker_status=self._worker_status,
            pending_jobs_count=len(self.pending),
            handlers_count=len(self.registry),
        ).model_dump()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            consumer, self._consumer = self._consumer, None
            subscription, self._subscription = self._subscription, None
            self._worker_status = WorkerStatus.STOPPED

        if consumer is not None:
            consumer.close()
        if subscription is not None:
            subscription.close()

        abandoned = self.pending.drain()
        for call in abandoned:
            call.fail(ServiceClosedError(f"Compute service closed while job {call.job_id} ({call.task_name}) was pending"))

        logger.info({"event": "compute_close", "queue": self.queue_name, "abandoned_calls": len(abandoned)})
