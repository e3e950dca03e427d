import asyncio
import logging
import os
import signal
import sys
from contextlib import asynccontextmanager, suppress
from functools import partial

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from product_api.config import Settings
from product_api.database import ConnectionManager
from product_api.exceptions import (
    ConfigurationError,
    DatabaseUnavailableError,
    database_unavailable_handler,
)
from product_api.routers import health_check, products

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT)


def exit_process(app: FastAPI, exc: BaseException):
    logger.critical("Failed to connect to database: %s", exc)
    app.state.exit_code = 1
    # Let the ASGI server run the lifespan shutdown before the process ends.
    os.kill(os.getpid(), signal.SIGTERM)


def _connect_finished(app: FastAPI, task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        app.state.on_fatal(exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    manager = app.state.db_manager

    # The server keeps listening while the database comes up.
    task = asyncio.create_task(
        manager.connect(settings.connect_attempts, settings.connect_delay_ms)
    )
    task.add_done_callback(partial(_connect_finished, app))
    app.state.connect_task = task

    yield

    if not task.done():
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    await manager.close()

    # The ASGI server itself exits 0 on SIGTERM.
    if app.state.exit_code:
        os._exit(app.state.exit_code)


def create_app(settings=None, manager=None, on_fatal=None) -> FastAPI:
    settings = settings or Settings.from_env()
    if manager is None:
        manager = ConnectionManager(settings.require_mongo_uri(), db_name=settings.db_name)

    app = FastAPI(title="Product Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.db_manager = manager
    app.state.on_fatal = on_fatal or partial(exit_process, app)
    app.state.exit_code = 0

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DatabaseUnavailableError, database_unavailable_handler)

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception):
        logger.exception("Unexpected error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(health_check.router)
    app.include_router(products.router, prefix="/api/products")

    return app


async def serve(settings: Settings) -> int:
    failures = []
    server = None

    def stop_server(exc: BaseException):
        logger.critical("Failed to connect to database: %s", exc)
        failures.append(exc)
        server.should_exit = True

    app = create_app(settings, on_fatal=stop_server)
    config = uvicorn.Config(app, host="0.0.0.0", port=settings.port, log_config=None)
    server = uvicorn.Server(config)
    logger.info("Starting server on port %d", settings.port)
    await server.serve()
    return 1 if failures else 0


def run():
    try:
        settings = Settings.from_env()
        settings.require_mongo_uri()
    except ConfigurationError as e:
        configure_logging()
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    configure_logging(settings.log_level)
    sys.exit(asyncio.run(serve(settings)))


if __name__ == "__main__":
    run()
