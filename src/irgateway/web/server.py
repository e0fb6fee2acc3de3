from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from irgateway.app import App
from irgateway.config import Config
from irgateway.errors import UpstreamError, UserError
from irgateway.web.error_handlers import general_exception_handler, upstream_error_handler, user_error_handler
from irgateway.web.openapi import set_custom_openapi
from irgateway.web.routers import data_router


def create_fastapi_app(app_instance: App, config: Config) -> FastAPI:
    """Create and configure FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        """FastAPI application lifespan management."""
        app.state.app = app_instance
        app.state.config = config
        async with app_instance.lifespan():
            yield

    app = FastAPI(
        title="iRacing Data Gateway",
        lifespan=lifespan,
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    # Public, no API key
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "upstream_session": app_instance.get_session_state()}

    # Upstream-compatible paths, unversioned so existing data API clients can point here
    app.include_router(data_router)

    app.add_exception_handler(UserError, user_error_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    set_custom_openapi(app)

    return app
