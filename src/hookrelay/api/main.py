"""hookrelay API service entry point.

Provides the application instance for ASGI servers (uvicorn) and a run()
function for the hookrelay-api console script.
"""

import logging

from hookrelay.api import create_app
from hookrelay.core.settings import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# What uvicorn references: hookrelay.api.main:app
app = create_app(settings)


def run() -> None:
    """Run the API server using uvicorn."""
    import uvicorn

    logger.info("Starting hookrelay API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "hookrelay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
