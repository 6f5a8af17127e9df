"""Fulfillment worker: pulls Stripe event jobs from the queue and runs FulfillmentService.

Run as a separate process next to the API:

    python -m storefront.queue.worker
"""

import asyncio
import signal

import structlog

from storefront.queue.manager import FulfillmentQueue
from storefront.queue.schemas import FailureAction
from storefront.services.fulfillment_service import FulfillmentService

logger = structlog.get_logger(__name__)


async def process_next_job(queue: FulfillmentQueue, service: FulfillmentService) -> bool:
    """Pull the next due job and process it.

    Steps:
    1. Dequeue the oldest due job (takes a lease, counts one attempt)
    2. Run the fulfillment state machine for the job's event
    3. Success (any FulfillmentOutcome): ack, which deletes the job
    4. Exception: fail, which schedules a backoff retry or dead-letters

    Args:
        queue: Redis-backed fulfillment queue
        service: Fulfillment service bound to the order/inventory store

    Returns:
        True if a job was handled, False if nothing was due
    """
    job = await queue.dequeue()
    if job is None:
        return False

    structlog.contextvars.bind_contextvars(job_key=job.dedup_key, event_id=str(job.event_id), attempt=job.attempts)
    try:
        try:
            result = await service.process_event(job.event_id)
        except Exception as exc:
            action = await queue.fail(job, f"{type(exc).__name__}: {exc}")
            logger.error(
                "job_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                will_retry=action == FailureAction.RETRY,
                exc_info=True,
            )
            return True

        acked = await queue.ack(job)
        logger.info("job_completed", outcome=result.outcome.value, lease_lost=not acked)
        return True
    finally:
        structlog.contextvars.unbind_contextvars("job_key", "event_id", "attempt")


class FulfillmentWorker:
    """Long-running consumer loop.

    Usage:
        worker = FulfillmentWorker(queue, service)
        task = asyncio.create_task(worker.run())
        ...
        worker.stop()  # current job finishes, then run() returns
    """

    def __init__(
        self,
        queue: FulfillmentQueue,
        service: FulfillmentService,
        poll_interval: float = 1.0,
        name: str = "worker-0",
    ) -> None:
        self.queue = queue
        self.service = service
        self.poll_interval = poll_interval
        self.name = name
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        """Recover expired leases, drain due jobs, then sleep until the next poll."""
        log = logger.bind(worker=self.name)
        log.info("fulfillment_worker_started")

        while not self._stopping.is_set():
            try:
                await self.queue.requeue_expired()
                processed = await process_next_job(self.queue, self.service)
            except Exception as exc:
                # Redis unavailable: keep polling, the job (if any) is still leased
                log.warning("fulfillment_worker_poll_failed", error=str(exc), error_type=type(exc).__name__)
                processed = False

            if processed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

        log.info("fulfillment_worker_stopped")


async def main() -> None:
    """Worker process entry point: init stores, run N consumer loops until SIGTERM/SIGINT."""
    from storefront.core.config import get_settings
    from storefront.core.logging import configure_structlog

    settings = get_settings()
    configure_structlog(
        log_level="DEBUG" if settings.debug else "INFO",
        json_logs=not settings.debug,
        service="storefront-worker",
    )

    from storefront.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis

    await init_db()
    await init_redis()

    queue = FulfillmentQueue(
        get_redis(),
        max_attempts=settings.queue_max_attempts,
        backoff_base_seconds=settings.queue_backoff_base_seconds,
        lease_seconds=settings.queue_lease_seconds,
    )
    service = FulfillmentService(get_session_factory())
    workers = [
        FulfillmentWorker(queue, service, poll_interval=settings.worker_poll_interval, name=f"worker-{i}")
        for i in range(settings.worker_concurrency)
    ]

    def stop_all() -> None:
        logger.info("fulfillment_worker_shutdown_requested", workers=len(workers))
        for worker in workers:
            worker.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_all)

    try:
        await asyncio.gather(*(w.run() for w in workers))
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
