from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from offload.exceptions import ConfigurationError


@dataclass(frozen=True)
class HandlerDescriptor:
    """What runs when a task is dequeued: `method_name` on the service behind `service_token`."""

    service_token: Any
    method_name: str


def token_name(token: Any) -> str:
    if isinstance(token, str):
        return token
    if isinstance(token, type) or (callable(token) and hasattr(token, "__name__")):
        return token.__name__
    return type(token).__name__


def handler_key(token: Any, method_name: str) -> str:
    return f"{token_name(token)}:{method_name}"


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, HandlerDescriptor] = {}
        self._lock = threading.Lock()

    def register(self, task_name: str, descriptor: HandlerDescriptor) -> None:
        if not task_name or not isinstance(task_name, str):
            raise ConfigurationError("Task name must be a non-empty string")
        if not descriptor.method_name:
            raise ConfigurationError(f"Handler for task '{task_name}' has no method name")
        with self._lock:
            self._handlers[task_name] = descriptor

    def get(self, task_name: str) -> Optional[HandlerDescriptor]:
        return self._handlers.get(task_name)

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, task_name: str) -> bool:
        return task_name in self._handlers
