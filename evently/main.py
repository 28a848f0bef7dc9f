import logging

from fastapi import FastAPI

from evently.api.errors import register_exception_handlers
from evently.api.routes.booking_routes import router as booking_router
from evently.api.routes.notification_routes import router as notification_router
from evently.api.routes.ops_routes import router as ops_router
from evently.api.routes.payment_routes import router as payment_router
from evently.api.security import BearerTokenMiddleware
from evently.bootstrap import (
    ServiceContainer,
    build_container,
    create_schema,
    register_consumers,
    shutdown,
    start_relays,
)
from evently.infrastructure.config import Settings, configure_logging

logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None, start_workers: bool = True) -> FastAPI:
    """
    Builds the API process. With ``start_workers`` the in-process consumers
    and outbox relays run alongside the HTTP handlers.
    """
    if container is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        container = build_container(settings)

    app = FastAPI(title="Evently Saga Core")
    app.state.container = container

    app.include_router(ops_router)
    app.include_router(booking_router)
    app.include_router(payment_router)
    app.include_router(notification_router)
    register_exception_handlers(app)
    app.add_middleware(BearerTokenMiddleware, codec=container.codec)

    @app.on_event("startup")
    def on_startup() -> None:
        create_schema(container, wait=True)
        container.bus.connect()
        if start_workers:
            register_consumers(container)
            container.bus.start()
            start_relays(container)
        logger.info("Evently API started. workers=%s", start_workers)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        shutdown(container)
        logger.info("Evently API stopped")

    return app
