import logging
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI

from wamux.__version__ import __version__
from wamux.api import (
    current_service,
    public_router,
    router,
    set_service,
    wamux_error_handler,
)
from wamux.config import Settings, configure_logging
from wamux.errors import WamuxError
from wamux.service import RelayService
from wamux.utils import sanitize_error_message

logger = logging.getLogger(__name__)

# Check if OpenAPI docs should be disabled
DISABLE_OPENAPI_DOCS = os.getenv("DISABLE_OPENAPI_DOCS", "false").lower() == "true"

app = FastAPI(
    title="wamux",
    version=__version__,
    docs_url="/docs" if not DISABLE_OPENAPI_DOCS else None,
    redoc_url="/redoc" if not DISABLE_OPENAPI_DOCS else None,
    openapi_url="/openapi.json" if not DISABLE_OPENAPI_DOCS else None,
)
app.add_exception_handler(WamuxError, wamux_error_handler)
app.include_router(public_router)
app.include_router(router)


@app.on_event("startup")
async def startup_event():
    configure_logging()

    # A service injected before startup (tests, embedding) is used as-is.
    service: Optional[RelayService] = current_service()
    if service is None:
        settings = Settings.from_env()
        service = RelayService(settings)
        set_service(service)

    await service.start()
    if not service.settings.api_token:
        logger.warning("WAMUX_API_TOKEN is not set; management API is disabled")
    logger.info(f"wamux {__version__} started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    service = current_service()
    if service is None:
        return
    try:
        await service.stop()
    except Exception as e:
        sanitized_error = sanitize_error_message(e, "shutdown_event.RelayService")
        logger.error(f"Error stopping relay service: {sanitized_error}")


def main() -> None:
    """Console entry point."""
    configure_logging()
    settings = Settings.from_env()
    uvicorn.run("wamux.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
