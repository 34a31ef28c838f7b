import importlib
import logging
from typing import Callable, Optional

from offload.client.http_client import HttpQueueClient
from offload.compute.explorer import ComputeExplorer
from offload.compute.service import ComputeService
from offload.config import AppConfig
from offload.exceptions import ConfigurationError
from offload.queue.broker import QueueBroker
from offload.queue.service import QueueClient, BufferedQueueClient

logger = logging.getLogger(__name__)


def build_queue_client(config: AppConfig, buffered: bool = False):
    """HTTP client when a broker service is configured, else the queue file (optionally group-committed)."""
    if config.broker_url:
        return HttpQueueClient.from_config(config)

    client = QueueClient(
        config.queue_storage_filename,
        max_events=config.compute_max_events,
        remove_on_complete=config.compute_remove_on_complete,
        remove_on_fail=config.compute_remove_on_fail,
    )
    if buffered:
        return BufferedQueueClient(
            client,
            max_batch_size=config.buffer_max_batch_size,
            flush_interval_ms=config.buffer_flush_interval_ms,
        )
    return client


def load_setup(spec: str) -> Callable[[ComputeService], None]:
    """Imports 'package.module:function'. The function receives the ComputeService and registers services/handlers."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Worker app must look like 'package.module:function', got '{spec}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import worker app module '{module_name}': {e}") from e
    setup = getattr(module, attr, None)
    if not callable(setup):
        raise ConfigurationError(f"Worker app '{spec}' is not callable")
    return setup


def build_compute_service(config: AppConfig, queue_client, setup_spec: Optional[str] = None) -> ComputeService:
    """
    Wires broker + bridge, runs the application's setup function, then
    explores @compute methods. Registration errors abort start-up.
    """
    broker = QueueBroker.from_config(queue_client, config)
    compute = ComputeService(broker, config=config)

    if setup_spec:
        load_setup(setup_spec)(compute)
    ComputeExplorer(compute).explore()
    return compute
