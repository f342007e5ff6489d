import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.services.subscription_gateway.runtime import GatewayRuntime
from app.webapi.routes import subscription

logger = logging.getLogger(__name__)


def create_web_app(runtime: Optional[GatewayRuntime] = None) -> FastAPI:
    if runtime is None:
        from app.database.database import AsyncSessionLocal

        runtime = GatewayRuntime(AsyncSessionLocal)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(
        title="Subscription Gateway",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.gateway = runtime.gateway

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    app.include_router(subscription.router)
    return app
