from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from auth import router as auth_router
from core.config import Settings, load_settings
from core.context import RequestContext, get_request_context
from core.db import ConnectionManager
from core.logging import bind_logger, setup_logging, shutdown_logging
from core.middleware import TransactionMiddleware, install_error_handlers
from core.responses import envelope
from permissions import router as permissions_router

# Path prefix -> router. Add new feature routers here.
ROUTERS: dict[str, APIRouter] = {
    "/auth": auth_router.router,
    "/permissions": permissions_router.router,
}

system_router = APIRouter()


@system_router.get("/health")
async def health(ctx: RequestContext = Depends(get_request_context)) -> dict:
    alive = await ctx.connection.ping()
    return envelope("ok" if alive else "database unreachable", data={"database": alive})


@system_router.get("/")
async def root() -> dict:
    return envelope("rest-api boilerplate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    # Anything passed to create_app() is owned by the caller.
    owns_logger = getattr(state, "logger", None) is None
    owns_database = getattr(state, "database", None) is None

    settings: Settings = state.settings
    if owns_logger:
        state.logger = setup_logging(settings.log.directory, settings.log.level)
    if owns_database:
        state.database = await ConnectionManager.create(settings, state.logger)

    system = bind_logger(state.logger)
    system.info("API server is started.")
    system.debug("URL: %s | PORT: %s", settings.get("url", default=None) or settings.get("host"), settings.get("port"))
    try:
        yield
    finally:
        if owns_database:
            await state.database.close()
        system.info("API server is stopped.")
        if owns_logger:
            shutdown_logging(state.logger)


def create_app(
    settings: Settings | None = None,
    *,
    database: ConnectionManager | None = None,
    logger: logging.Logger | None = None,
) -> FastAPI:
    """
    Build the app. Without `settings` the config file is loaded here, so
    middleware that depends on it (CORS) is installed before serving:

        uvicorn main:create_app --factory
    """
    if settings is None:
        settings = load_settings()
    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.logger = logger

    app.add_middleware(TransactionMiddleware)
    if settings.config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.config.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    install_error_handlers(app)

    app.include_router(system_router, tags=["system"])
    for prefix, router in ROUTERS.items():
        app.include_router(router, prefix=prefix, tags=[prefix.strip("/")])
    return app


def run() -> None:
    import uvicorn

    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.config.host, port=settings.config.port, log_level="info")


if __name__ == "__main__":
    run()
