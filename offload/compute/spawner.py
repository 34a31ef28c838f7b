import os
import sys
import logging
import subprocess
from typing import List, Optional

from offload.config import AppConfig, AppRole

logger = logging.getLogger(__name__)


def worker_count(min_workers: int, max_workers: int) -> int:
    return min(max(min_workers, 1), max(max_workers, 1))


class WorkerSpawner:
    """
    Starts a fixed number of `python -m offload.worker` processes next to an
    API process and terminates them on close.
    """
    def __init__(self, config: AppConfig, terminate_timeout_sec: float = 1.0):
        self.config = config
        self.terminate_timeout_sec = terminate_timeout_sec
        self.processes: List[subprocess.Popen] = []

    def should_spawn(self) -> bool:
        return (
            self.config.compute_auto_spawn
            and self.config.app_role == AppRole.API
            and bool(self.config.compute_worker_app)
        )

    def _command(self) -> List[str]:
        return [
            sys.executable, "-m", "offload.worker",
            "--app", self.config.compute_worker_app,
            "--concurrency", str(self.config.compute_concurrency),
        ]

    def start(self) -> int:
        if not self.should_spawn():
            if self.config.compute_auto_spawn and not self.config.compute_worker_app:
                logger.warning("COMPUTE_AUTO_SPAWN is set but COMPUTE_WORKER_APP is empty; no workers spawned")
            return 0

        env = os.environ.copy()
        env["APP_ROLE"] = AppRole.WORKER.value

        count = worker_count(self.config.compute_min_workers, self.config.compute_max_workers)
        for _ in range(count):
            self.processes.append(subprocess.Popen(self._command(), env=env))
        logger.info({"event": "workers_spawned", "count": count, "pids": [p.pid for p in self.processes]})
        return count

    def alive(self) -> List[subprocess.Popen]:
        return [p for p in self.processes if p.poll() is None]

    def close(self, wait: Optional[float] = None):
        timeout = self.terminate_timeout_sec if wait is None else wait
        processes, self.processes = self.processes, []

        for p in processes:
            if p.poll() is None:
                p.terminate()
        for p in processes:
            try:
                p.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Worker process {p.pid} did not exit after SIGTERM, killing")
                p.kill()
                p.wait()
