from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List

from offload.compute.registry import token_name
from offload.exceptions import ConfigurationError


class ServiceLocator:
    """Resolves service tokens (classes or strings) to instances. Factories run once, on first resolve."""

    def __init__(self) -> None:
        self._instances: Dict[Any, Any] = {}
        self._factories: Dict[Any, Callable[[], Any]] = {}
        self._lock = threading.Lock()

    def register(self, token: Any, instance: Any) -> None:
        with self._lock:
            self._factories.pop(token, None)
            self._instances[token] = instance

    def register_factory(self, token: Any, factory: Callable[[], Any]) -> None:
        with self._lock:
            self._instances.pop(token, None)
            self._factories[token] = factory

    def resolve(self, token: Any) -> Any:
        with self._lock:
            if token in self._instances:
                return self._instances[token]
            factory = self._factories.get(token)
            if factory is None:
                raise ConfigurationError(f"No provider registered for {token_name(token)}")
            instance = factory()
            self._instances[token] = instance
            del self._factories[token]
            return instance

    def has(self, token: Any) -> bool:
        return token in self._instances or token in self._factories

    def tokens(self) -> List[Any]:
        with self._lock:
            return list(self._instances) + list(self._factories)
