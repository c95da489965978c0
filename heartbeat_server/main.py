# heartbeat_server/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import dataflows  # noqa: F401  (registers the built-in flows)
from heartbeat_server.conf import HeartbeatSettings, load_settings
from heartbeat_server.db.engine import configure_engine, dispose_engine
from heartbeat_server.routers import flows, health, heartbeat
from heartbeat_server.services.timer import start_heartbeat_timer, stop_heartbeat_timer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


def create_app(settings: HeartbeatSettings | None = None) -> FastAPI:
    """Build the API app. Settings are loaded from the environment unless given."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown events."""
        # Startup
        configure_engine(settings.database_url)
        start_heartbeat_timer(settings)
        logger.info("Heartbeat server started (endpoint: POST %s)", settings.endpoint_path)

        yield

        # Shutdown
        stop_heartbeat_timer()
        dispose_engine()
        logger.info("Heartbeat server stopped")

    app = FastAPI(
        title="Heartbeat Flows API",
        description="Runs scheduled data flows when triggered by a heartbeat",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Register routers
    app.include_router(health.router, tags=["health"])
    app.include_router(heartbeat.build_router(settings.endpoint_path), tags=["heartbeat"])
    app.add_exception_handler(heartbeat.HeartbeatAccessError, heartbeat.heartbeat_access_error_handler)
    app.include_router(flows.router, prefix="/api/v1", tags=["flows"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
