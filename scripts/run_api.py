from __future__ import annotations

import uvicorn

from staffnotify.apps.api.main import create_app
from staffnotify.core.config import get_settings


def main() -> None:
    # Serve the ingress and ops API; the engine loops run inside the app lifespan.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
