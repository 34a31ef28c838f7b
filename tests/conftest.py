import random
import time

import pytest

from offload.compute.service import ComputeService
from offload.config import AppConfig
from offload.queue.broker import QueueBroker
from offload.queue.memory import InMemoryQueueClient


class Calculator:
    def __init__(self, delay=0.0, jitter=0.0):
        self.delay = delay
        self.jitter = jitter
        self.calls = []

    def sum(self, a, b):
        time.sleep(self.delay + random.uniform(0, self.jitter))
        self.calls.append((a, b))
        return a + b

    def describe(self, value):
        return type(value).__name__

    def boom(self):
        raise ValueError("division by zero")


def make_config(**overrides):
    values = {"compute_poll_interval_ms": 5, "compute_timeout_ms": 2000}
    values.update(overrides)
    return AppConfig(_env_file=None, **values)


def wait_for(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def queue_client():
    return InMemoryQueueClient()


@pytest.fixture
def broker(queue_client):
    broker = QueueBroker(queue_client, poll_interval_ms=5)
    yield broker
    broker.close()


@pytest.fixture
def compute_factory(broker):
    services = []

    def _make(**overrides):
        service = ComputeService(broker, config=make_config(**overrides))
        services.append(service)
        return service

    yield _make
    for service in services:
        service.close()
