from __future__ import annotations

import inspect
import logging
from typing import Any, List

from offload.compute.decorators import get_compute_options
from offload.compute.registry import HandlerDescriptor, handler_key
from offload.compute.service import ComputeService

logger = logging.getLogger(__name__)


class ComputeExplorer:
    """Finds @compute methods on located services, registers a handler for each and patches the instance."""

    def __init__(self, compute_service: ComputeService) -> None:
        self.compute_service = compute_service

    def explore(self) -> List[str]:
        locator = self.compute_service.locator
        task_names: List[str] = []
        for token in locator.tokens():
            instance = locator.resolve(token)
            task_names.extend(self._scan(token, instance))
        logger.info({"event": "compute_explore", "tasks": task_names})
        return task_names

    def _scan(self, token: Any, instance: Any) -> List[str]:
        found = []
        for method_name, member in inspect.getmembers(type(instance), callable):
            options = get_compute_options(member)
            if options is None:
                continue

            task_name = options.task_name or handler_key(token, method_name)
            self.compute_service.register_handler(task_name, HandlerDescriptor(token, method_name))
            self.compute_service.patch_method(
                instance,
                method_name,
                task_name,
                timeout_ms=options.timeout_ms,
                background=options.background,
            )
            found.append(task_name)
        return found
