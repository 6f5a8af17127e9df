"""FulfillmentQueue: durable Redis job queue with dedup keys, backoff and dead-lettering."""

import uuid
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from storefront.metrics.cloudwatch import emit_business_event
from storefront.queue.schemas import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    FailureAction,
    JobState,
    QueueJob,
    backoff_delay,
)

logger = structlog.get_logger(__name__)


class FulfillmentQueue:
    """At-least-once job queue for Stripe event processing.

    Layout:
    - stripe:queue:job:{dedup_key}  hash with the job record
    - stripe:queue:pending          sorted set, score = time the job becomes due
    - stripe:queue:active           sorted set, score = lease deadline
    - stripe:queue:dead             sorted set, score = time the job was dead-lettered

    The dedup key (Stripe event id) is the job's identity: while a job record
    exists, enqueueing the same key again is a no-op. Records are deleted on
    success, so a replay after completion enqueues a fresh job and the worker's
    processed_at guard turns it into a no-op.

    Every move between sets runs in one MULTI/EXEC together with the record
    update, under WATCH of the job hash. Each move also writes the hash, so a
    competing move of the same job aborts with WatchError and the job is always
    in exactly one set.
    """

    JOB_KEY = "stripe:queue:job:{dedup_key}"
    PENDING_KEY = "stripe:queue:pending"
    ACTIVE_KEY = "stripe:queue:active"
    DEAD_KEY = "stripe:queue:dead"

    def __init__(
        self,
        redis: Redis,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self.redis = redis
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.lease_seconds = lease_seconds

    def _job_key(self, dedup_key: str) -> str:
        return self.JOB_KEY.format(dedup_key=dedup_key)

    def _new_record(self, event_id: uuid.UUID | str, dedup_key: str, now: datetime) -> dict[str, str | int]:
        return {
            "event_id": str(event_id),
            "dedup_key": dedup_key,
            "attempts": 0,
            "max_attempts": self.max_attempts,
            "state": JobState.PENDING.value,
            "enqueued_at": now.isoformat(),
            "last_error": "",
            "lease": "",
        }

    async def enqueue(self, event_id: uuid.UUID, dedup_key: str, now: datetime | None = None) -> bool:
        """Add a job for a stored event unless one with the same dedup key exists.

        The full record and its pending entry are written in one transaction.

        Args:
            event_id: Internal PaymentEvent id the worker will load
            dedup_key: Stripe event id
            now: Current time (for deterministic testing)

        Returns:
            True if a new job was created, False if the key was already queued.
        """
        now = now or datetime.now(UTC)
        job_key = self._job_key(dedup_key)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                exists = await pipe.exists(job_key)
                if not exists:
                    pipe.multi()
                    pipe.hset(job_key, mapping=self._new_record(event_id, dedup_key, now))
                    pipe.zadd(self.PENDING_KEY, {dedup_key: now.timestamp()})
                    await pipe.execute()
            except WatchError:
                exists = True  # a concurrent enqueue of the same key won

        if exists:
            await self._repair_orphan(event_id, dedup_key, now)
            logger.info("job_enqueue_deduplicated", dedup_key=dedup_key)
            return False

        logger.info("job_enqueued", dedup_key=dedup_key, event_id=str(event_id))
        return True

    async def _repair_orphan(self, event_id: uuid.UUID, dedup_key: str, now: datetime) -> None:
        """Complete and re-queue a job record that sits in no set.

        Such records predate atomic writes or were edited by hand. Missing
        fields are filled in so the job can be delivered.
        """
        job_key = self._job_key(dedup_key)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                for key in (self.PENDING_KEY, self.ACTIVE_KEY, self.DEAD_KEY):
                    if await pipe.zscore(key, dedup_key) is not None:
                        return
                record = await pipe.hgetall(job_key)
                if not record:
                    return  # completed in the meantime

                defaults = self._new_record(record.get("event_id") or event_id, dedup_key, now)
                missing = {field: value for field, value in defaults.items() if field not in record}
                pipe.multi()
                if missing:
                    pipe.hset(job_key, mapping=missing)
                pipe.hset(job_key, mapping={"state": JobState.PENDING.value, "lease": ""})
                pipe.zadd(self.PENDING_KEY, {dedup_key: now.timestamp()})
                await pipe.execute()
            except WatchError:
                return

        logger.warning("job_orphan_requeued", dedup_key=dedup_key, repaired_fields=sorted(missing))

    async def dequeue(self, now: datetime | None = None) -> QueueJob | None:
        """Claim the oldest due job and take a lease on it.

        The move from pending to active, the attempt count and the lease token
        are written in one transaction. Each claim counts as one delivery attempt.

        Returns:
            The claimed job, or None if nothing is due (or another worker won the claim).
        """
        now = now or datetime.now(UTC)

        due = await self.redis.zrangebyscore(self.PENDING_KEY, "-inf", now.timestamp(), start=0, num=1)
        if not due:
            return None

        dedup_key = due[0]
        job_key = self._job_key(dedup_key)
        lease_token = uuid.uuid4().hex

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                if await pipe.zscore(self.PENDING_KEY, dedup_key) is None:
                    return None
                record = await pipe.hgetall(job_key)

                pipe.multi()
                pipe.zrem(self.PENDING_KEY, dedup_key)
                if "event_id" not in record:
                    # Record vanished (manual cleanup); nothing left to deliver
                    await pipe.execute()
                    logger.error("job_record_missing", dedup_key=dedup_key)
                    return None

                defaults = self._new_record(record["event_id"], dedup_key, now)
                missing = {field: value for field, value in defaults.items() if field not in record}
                if missing:
                    pipe.hset(job_key, mapping=missing)
                pipe.zadd(self.ACTIVE_KEY, {dedup_key: now.timestamp() + self.lease_seconds})
                pipe.hincrby(job_key, "attempts", 1)
                pipe.hset(job_key, mapping={"state": JobState.ACTIVE.value, "lease": lease_token})
                await pipe.execute()
            except WatchError:
                return None

        return await self.get_job(dedup_key)

    async def ack(self, job: QueueJob) -> bool:
        """Job succeeded: drop it from the active set and delete its record.

        Returns:
            False if the lease was lost (expired and redelivered); the record
            then belongs to the new holder and is left alone.
        """
        job_key = self._job_key(job.dedup_key)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                if await pipe.hget(job_key, "lease") != job.lease_token:
                    logger.warning("job_lease_lost", dedup_key=job.dedup_key, action="ack")
                    return False
                pipe.multi()
                pipe.zrem(self.ACTIVE_KEY, job.dedup_key)
                pipe.delete(job_key)
                await pipe.execute()
            except WatchError:
                logger.warning("job_lease_lost", dedup_key=job.dedup_key, action="ack")
                return False
        return True

    async def fail(self, job: QueueJob, error: str, now: datetime | None = None) -> FailureAction:
        """Record a failed delivery and schedule a retry or dead-letter the job.

        Args:
            job: The job as returned by dequeue() (attempts already counts this delivery)
            error: Short description of the failure
            now: Current time (for deterministic testing)

        Returns:
            FailureAction.RETRY if redelivery was scheduled, FailureAction.DEAD_LETTER
            if attempts are exhausted, FailureAction.LEASE_LOST if another worker
            holds the job now.
        """
        now = now or datetime.now(UTC)
        job_key = self._job_key(job.dedup_key)
        exhausted = job.attempts >= job.max_attempts
        delay = backoff_delay(job.attempts, self.backoff_base_seconds)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                if await pipe.hget(job_key, "lease") != job.lease_token:
                    logger.warning("job_lease_lost", dedup_key=job.dedup_key, action="fail", error=error)
                    return FailureAction.LEASE_LOST

                pipe.multi()
                pipe.zrem(self.ACTIVE_KEY, job.dedup_key)
                if exhausted:
                    self._stage_dead_letter(pipe, job.dedup_key, error, now)
                else:
                    pipe.hset(
                        job_key,
                        mapping={"state": JobState.PENDING.value, "last_error": error[:500], "lease": ""},
                    )
                    pipe.zadd(self.PENDING_KEY, {job.dedup_key: now.timestamp() + delay})
                await pipe.execute()
            except WatchError:
                logger.warning("job_lease_lost", dedup_key=job.dedup_key, action="fail", error=error)
                return FailureAction.LEASE_LOST

        if exhausted:
            await self._report_dead_letter(job.dedup_key, error)
            return FailureAction.DEAD_LETTER

        logger.warning(
            "job_retry_scheduled",
            dedup_key=job.dedup_key,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            delay_seconds=delay,
            error=error,
        )
        return FailureAction.RETRY

    def _stage_dead_letter(self, pipe, dedup_key: str, error: str, now: datetime) -> None:
        pipe.hset(
            self._job_key(dedup_key),
            mapping={"state": JobState.DEAD.value, "last_error": error[:500], "lease": ""},
        )
        pipe.zadd(self.DEAD_KEY, {dedup_key: now.timestamp()})

    async def _report_dead_letter(self, dedup_key: str, error: str) -> None:
        logger.error("job_dead_lettered", dedup_key=dedup_key, error=error)
        await emit_business_event("fulfillment_dead_lettered")

    async def requeue_expired(self, now: datetime | None = None) -> int:
        """Return jobs whose lease expired (crashed worker) to the pending set.

        Jobs that already used their last attempt are dead-lettered instead.
        Requeueing clears the lease, so a late ack or fail from the old holder
        is rejected.

        Returns:
            Number of expired leases handled.
        """
        now = now or datetime.now(UTC)
        expired = await self.redis.zrangebyscore(self.ACTIVE_KEY, "-inf", now.timestamp())
        handled = 0

        for dedup_key in expired:
            job_key = self._job_key(dedup_key)
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key)
                    deadline = await pipe.zscore(self.ACTIVE_KEY, dedup_key)
                    if deadline is None or deadline > now.timestamp():
                        continue  # acked, failed or re-leased meanwhile
                    record = await pipe.hgetall(job_key)
                    attempts = int(record.get("attempts", 0))
                    exhausted = attempts >= int(record.get("max_attempts", self.max_attempts))

                    pipe.multi()
                    pipe.zrem(self.ACTIVE_KEY, dedup_key)
                    if record and exhausted:
                        self._stage_dead_letter(pipe, dedup_key, "lease expired", now)
                    elif record:
                        pipe.hset(job_key, mapping={"state": JobState.PENDING.value, "lease": ""})
                        pipe.zadd(self.PENDING_KEY, {dedup_key: now.timestamp()})
                    await pipe.execute()
                except WatchError:
                    continue  # another worker handled it

            handled += 1
            if not record:
                continue
            if exhausted:
                await self._report_dead_letter(dedup_key, "lease expired")
            else:
                logger.warning("job_lease_expired_requeued", dedup_key=dedup_key, attempts=attempts)

        return handled

    async def get_job(self, dedup_key: str) -> QueueJob | None:
        """Load a job record, or None if no job exists for this key."""
        data = await self.redis.hgetall(self._job_key(dedup_key))
        if not data or "event_id" not in data or "enqueued_at" not in data:
            return None
        return QueueJob(
            dedup_key=dedup_key,
            event_id=data["event_id"],
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", self.max_attempts)),
            state=data.get("state", JobState.PENDING.value),
            enqueued_at=data["enqueued_at"],
            last_error=data.get("last_error") or None,
            lease_token=data.get("lease") or None,
        )

    async def dead_letters(self) -> list[QueueJob]:
        """Return dead-lettered jobs, oldest first."""
        keys = await self.redis.zrange(self.DEAD_KEY, 0, -1)
        jobs = []
        for dedup_key in keys:
            job = await self.get_job(dedup_key)
            if job is not None:
                jobs.append(job)
        return jobs

    async def requeue_dead_letter(self, dedup_key: str, now: datetime | None = None) -> bool:
        """Give a dead-lettered job a fresh attempt budget and make it due now.

        Returns:
            True if the job was requeued, False if it was not dead-lettered.
        """
        now = now or datetime.now(UTC)
        job_key = self._job_key(dedup_key)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                if await pipe.zscore(self.DEAD_KEY, dedup_key) is None:
                    return False
                pipe.multi()
                pipe.zrem(self.DEAD_KEY, dedup_key)
                pipe.hset(job_key, mapping={"attempts": 0, "state": JobState.PENDING.value})
                pipe.zadd(self.PENDING_KEY, {dedup_key: now.timestamp()})
                await pipe.execute()
            except WatchError:
                return False

        logger.info("job_dead_letter_requeued", dedup_key=dedup_key)
        return True

    async def get_length(self) -> int:
        """Return the number of pending (queued or backing off) jobs."""
        return await self.redis.zcard(self.PENDING_KEY)
