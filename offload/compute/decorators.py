from dataclasses import dataclass
from typing import Optional

COMPUTE_OPTIONS_ATTR = "__compute_options__"


@dataclass(frozen=True)
class ComputeOptions:
    timeout_ms: Optional[float] = None
    background: bool = False
    task_name: Optional[str] = None


def compute(timeout_ms: Optional[float] = None, background: bool = False, task_name: Optional[str] = None):
    """
    Marks a service method for offloading. ComputeExplorer.explore() registers
    and patches every marked method of the services held by the locator.

        class ReportService:
            @compute(timeout_ms=10000)
            def build(self, report_id): ...
    """
    def decorator(fn):
        setattr(fn, COMPUTE_OPTIONS_ATTR, ComputeOptions(timeout_ms, background, task_name))
        return fn
    return decorator


def get_compute_options(fn) -> Optional[ComputeOptions]:
    return getattr(fn, COMPUTE_OPTIONS_ATTR, None)
