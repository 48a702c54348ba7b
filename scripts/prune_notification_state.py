from __future__ import annotations

import asyncio

from staffnotify.core.logging import configure_logging
from staffnotify.persistence.db import dispose_engine
from staffnotify.services.notifications.bootstrap import build_orchestrator


async def prune() -> None:
    # Sweep expired dedup reservations, prune old terminal records and recover stale in-flight items.
    configure_logging()
    orchestrator = build_orchestrator()
    try:
        result = await orchestrator.run_maintenance()
    finally:
        await orchestrator.aclose()
        await dispose_engine()
    for key, value in result.items():
        print(f"{key}={value if value is not None else 'failed'}")


if __name__ == "__main__":
    asyncio.run(prune())
