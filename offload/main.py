import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from offload.bootstrap import build_compute_service, build_queue_client
from offload.compute.router import router as compute_router
from offload.compute.spawner import WorkerSpawner
from offload.config import AppConfig, settings
from offload.dependencies import set_compute_service, set_queue_client
from offload.queue.router import router as queue_router
from offload.queue.service import BufferedQueueClient

logger = logging.getLogger("broker")


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or settings
    serves_queue = not config.broker_url

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        queue_client = build_queue_client(config, buffered=True)
        compute = build_compute_service(config, queue_client, config.compute_worker_app)

        set_queue_client(queue_client)
        set_compute_service(compute)

        compute.start()
        spawner = WorkerSpawner(config)
        spawner.start()
        logger.info({"event": "broker_startup", "role": config.app_role.value,
                     "queue_file": config.queue_storage_filename if serves_queue else None,
                     "broker_url": config.broker_url})

        yield

        spawner.close()
        compute.close()
        compute.broker.close()
        if isinstance(queue_client, BufferedQueueClient):
            queue_client.shutdown()
        logger.info({"event": "broker_shutdown"})

    app = FastAPI(lifespan=lifespan, title="Compute Offload Broker")
    if serves_queue:
        app.include_router(queue_router)
    app.include_router(compute_router)
    return app


logging.basicConfig(level=settings.log_level, format='[%(process)d] %(message)s')
app = create_app()
