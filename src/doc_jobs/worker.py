"""Queue worker process: ``doc-jobs-worker {convert,merge,split}``.

Each process owns one consumption slot on one operation queue. Run more
processes (with distinct ``WORKER_ID`` values) to scale an operation.
"""
import argparse
import asyncio
import logging
import signal
from typing import Optional

from doc_jobs.config import Settings
from doc_jobs.pipeline import LocalJobStore, RedisQueueBroker, build_worker
from doc_jobs.pipeline.interfaces import QueueBroker
from doc_jobs.pipeline.models import Operation

logger = logging.getLogger(__name__)


async def serve(
    operation: Operation,
    settings: Settings,
    *,
    broker: Optional[QueueBroker] = None,
    stop: Optional[asyncio.Event] = None,
) -> None:
    store = LocalJobStore(str(settings.data_dir))
    if broker is None:
        broker = RedisQueueBroker.from_url(settings.redis_url, **settings.broker_options())
    worker = build_worker(operation, store)
    stop = stop or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform/thread
            pass

    logger.info("Worker %s listening for %s jobs", settings.worker_id, operation.value)
    try:
        await broker.consume(operation, worker.handle, stop=stop)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        await broker.close()
        logger.info("Worker %s stopped", settings.worker_id)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run a document job worker for one operation queue.")
    parser.add_argument("operation", choices=[op.value for op in Operation])
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(serve(Operation(args.operation), settings))


if __name__ == "__main__":
    main()
