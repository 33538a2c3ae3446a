from contextlib import asynccontextmanager

from fastapi import FastAPI

from swapmarket.api.errors import install_error_handlers
from swapmarket.api.v1.router import router as v1_router
from swapmarket.core.config import settings
from swapmarket.core.db import engine
from swapmarket.core.telemetry import setup_telemetry
from swapmarket.wiring import Services, build_default_services


def create_app(services: Services | None = None, *, telemetry: bool | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_default_services()
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()

    app = FastAPI(title="Swap Market API", version="0.1.0", lifespan=lifespan)
    if services is not None:
        # available without running the lifespan (e.g. ASGITransport in tests)
        app.state.services = services

    if settings.telemetry_enabled if telemetry is None else telemetry:
        setup_telemetry(app, engine)
    install_error_handlers(app)
    app.include_router(v1_router)
    return app


app = create_app()
