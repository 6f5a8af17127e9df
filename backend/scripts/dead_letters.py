"""Inspect and requeue fulfillment jobs that exhausted their retries.

Usage:
    python scripts/dead_letters.py list
    python scripts/dead_letters.py requeue evt_1PQ...
    python scripts/dead_letters.py requeue-all
"""

import asyncio
import sys

from storefront.core.config import get_settings
from storefront.db.redis import close_redis, get_redis, init_redis
from storefront.queue.manager import FulfillmentQueue


async def main(argv: list[str]) -> int:
    if not argv or argv[0] not in ("list", "requeue", "requeue-all"):
        print(__doc__)
        return 2

    settings = get_settings()
    await init_redis()
    queue = FulfillmentQueue(get_redis(), max_attempts=settings.queue_max_attempts)

    try:
        command = argv[0]
        if command == "list":
            jobs = await queue.dead_letters()
            print(f"Found {len(jobs)} dead-lettered job(s):")
            for job in jobs:
                print(f"  {job.dedup_key} | event={job.event_id} | attempts={job.attempts} | error={job.last_error}")
        elif command == "requeue":
            if len(argv) < 2:
                print("requeue needs a Stripe event id")
                return 2
            ok = await queue.requeue_dead_letter(argv[1])
            print(f"Requeued {argv[1]}" if ok else f"{argv[1]} is not dead-lettered")
            if not ok:
                return 1
        else:
            jobs = await queue.dead_letters()
            for job in jobs:
                await queue.requeue_dead_letter(job.dedup_key)
            print(f"Requeued {len(jobs)} job(s).")
    finally:
        await close_redis()

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
