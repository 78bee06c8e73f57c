from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from tiersync.core.container import Services, build_services
from tiersync.core.settings import S, Settings
from tiersync.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from tiersync.routers.billing import router as billing_router
from tiersync.routers.misc import router as misc_router
from tiersync.routers.webhook import router as webhook_router

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Settings = S, services: Optional[Services] = None) -> FastAPI:
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services if services is not None else build_services(settings)
        logger.info("tiersync started (ordering_guard=%s)", settings.reconcile_ordering_guard)
        try:
            yield
        finally:
            if owned:
                app.state.services.close()

    app = FastAPI(title="tiersync", version="0.1.0", lifespan=lifespan)

    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(misc_router)
    app.include_router(webhook_router)
    app.include_router(billing_router)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("tiersync.main:app", host=S.host, port=S.port, log_level=S.log_level.lower())


if __name__ == "__main__":
    run()
