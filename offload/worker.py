"""
Worker-only process: consumes the compute queue and runs registered handlers.

    python -m offload.worker --app myproject.compute:setup --concurrency 10

`setup(compute)` registers the services and handlers this worker executes.
"""
import argparse
import logging
import signal
import threading

from offload.bootstrap import build_compute_service, build_queue_client
from offload.config import AppRole, settings

logger = logging.getLogger("worker")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Compute offload worker")
    parser.add_argument("--app", default=settings.compute_worker_app,
                        help="'package.module:function' that registers handlers")
    parser.add_argument("--concurrency", type=int, default=settings.compute_concurrency)
    args, _ = parser.parse_known_args(argv)

    logging.basicConfig(level=settings.log_level, format='[%(process)d] %(message)s')

    config = settings.model_copy(update={
        "app_role": AppRole.WORKER,
        "compute_concurrency": args.concurrency,
        "compute_worker_app": args.app,
    })

    queue_client = build_queue_client(config)
    compute = build_compute_service(config, queue_client, args.app)

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())

    compute.start()
    logger.info({"event": "worker_startup", "queue": compute.queue_name,
                 "concurrency": args.concurrency, "handlers": compute.get_status()["handlers_count"]})
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Stopping worker...")
    finally:
        compute.close()
        compute.broker.close()
        logger.info({"event": "worker_shutdown"})


if __name__ == "__main__":
    main()
