from __future__ import annotations

import asyncio

from pushrelay.workers.queue_worker import run_worker


async def _main() -> None:
    # Boot a dedicated process that owns the recurring queue and health triggers.
    await run_worker()


if __name__ == "__main__":
    asyncio.run(_main())
