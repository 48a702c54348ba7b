from __future__ import annotations

import asyncio
import logging
import signal

from staffnotify.core.logging import configure_logging
from staffnotify.services.notifications.bootstrap import build_orchestrator


logger = logging.getLogger(__name__)


async def _main() -> None:
    # Standalone delivery loop for deployments that submit through the API only.
    configure_logging()
    orchestrator = build_orchestrator()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await orchestrator.start()
    try:
        await stop.wait()
        logger.info("notification_worker_stopping")
    finally:
        await orchestrator.aclose()


if __name__ == "__main__":
    asyncio.run(_main())
