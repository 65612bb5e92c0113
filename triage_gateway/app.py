"""FastAPI application for the Triage Gateway."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .app_state import get_state, load_handler
from .config import config

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("Triage Gateway starting on %s:%d", config.host, config.port)
    logger.info("Project directory: %s", config.project_dir)

    state = get_state()

    # The process handler is supplied by the agent-execution collaborator
    handler_ref = os.environ.get("TRIAGE_PROCESS_HANDLER")
    if handler_ref:
        try:
            state.scheduler.set_process_handler(load_handler(handler_ref))
        except (ImportError, AttributeError, TypeError, ValueError) as exc:
            logger.error("Failed to load process handler %s: %s", handler_ref, exc)
    else:
        logger.warning("TRIAGE_PROCESS_HANDLER not set; drain runs will be skipped")

    state.start()

    yield

    await state.shutdown()
    logger.info("Triage Gateway stopped")


app = FastAPI(
    title="Triage Gateway",
    description="Issue queue, scheduler and tool-use security gate",
    version=__version__,
    lifespan=lifespan,
)

from .routers.guard import router as guard_router
from .routers.health import router as health_router
from .routers.queue import router as queue_router

app.include_router(health_router)
app.include_router(queue_router)
app.include_router(guard_router)


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
