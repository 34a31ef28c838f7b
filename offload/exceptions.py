from typing import Optional


class OffloadError(Exception):
    status_code = 500


class ConfigurationError(OffloadError):
    """Setup or dispatch mismatch: bad registration, missing method, unknown task."""
    status_code = 400


class ServiceUnavailableError(OffloadError):
    status_code = 503


class OffloadTimeoutError(ServiceUnavailableError):
    def __init__(self, task_name: str, timeout_ms: float):
        self.task_name = task_name
        self.timeout_ms = timeout_ms
        super().__init__(f"Offloaded task '{task_name}' timed out after {timeout_ms}ms")


class RemoteExecutionError(ServiceUnavailableError):
    """The offloaded method raised on the worker. `reason` is the worker's error message."""

    def __init__(self, reason: str, error_type: Optional[str] = None, task_name: Optional[str] = None):
        self.reason = reason
        self.error_type = error_type
        self.task_name = task_name
        super().__init__(reason)


class ServiceClosedError(ServiceUnavailableError):
    pass


class BrokerUnavailableError(ServiceUnavailableError):
    pass
