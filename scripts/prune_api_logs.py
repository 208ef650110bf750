from __future__ import annotations

import argparse
import asyncio
import json

from pushrelay.core.config import get_settings
from pushrelay.persistence.db import build_engine, build_session_factory
from pushrelay.services.api_log import ApiLogService


async def _main(keep: int | None) -> None:
    # Keep the request log bounded; older rows carry no debugging value.
    settings = get_settings()
    engine = build_engine(settings)
    try:
        service = ApiLogService(
            build_session_factory(engine),
            max_entries=keep or settings.api_log_max_entries,
        )
        deleted = await service.prune()
    finally:
        await engine.dispose()
    print(json.dumps({"deleted": deleted}))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Prune PushRelay API request logs.")
    parser.add_argument("--keep", type=int, default=None, help="Number of newest rows to keep.")
    args = parser.parse_args()
    asyncio.run(_main(args.keep))
