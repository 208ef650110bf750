from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from pushrelay.core.config import HEALTH_CHECK_TRIGGER, PROCESS_QUEUE_TRIGGER, get_settings
from pushrelay.core.logging import configure_logging
from pushrelay.services.runtime import build_runtime


async def run_trigger(name: str) -> dict[str, Any]:
    # One-shot invocation for hosts that drive the triggers from OS cron.
    settings = get_settings()
    configure_logging(settings)
    # The heartbeat published by each firing is what lets health checks see OS cron at work.
    runtime = await build_runtime(settings, owns_triggers=False)
    try:
        outcome = await runtime.fire_trigger(name)
        if name == PROCESS_QUEUE_TRIGGER:
            return {"trigger": name, **outcome.to_dict()}
        return {"trigger": name, **outcome.model_dump(mode="json")}
    finally:
        await runtime.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one recurring trigger once and print the outcome.")
    parser.add_argument("trigger", choices=[PROCESS_QUEUE_TRIGGER, HEALTH_CHECK_TRIGGER])
    args = parser.parse_args()
    payload = asyncio.run(run_trigger(args.trigger))
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))
    if args.trigger == HEALTH_CHECK_TRIGGER and payload.get("overall_status") == "fail":
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
