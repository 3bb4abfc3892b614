from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import health
from .api import relay as relay_api
from .config import Settings, settings
from .core.execution.context import RelayContext, build_relay_context
from .logging_config import bind_service_context, setup_logging
from .middleware.logging_middleware import RequestLoggingMiddleware
from .middleware.rate_limit import RateLimiter, RateLimitMiddleware


def create_app(
    app_settings: Optional[Settings] = None,
    relay_context: Optional[RelayContext] = None,
) -> FastAPI:
    """Build the relay API; ``relay_context`` replaces the one built from settings."""
    app_settings = app_settings or (relay_context.settings if relay_context else settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(app_settings)
        context = relay_context or build_relay_context(app_settings)
        bind_service_context(relayer=context.ledger.relayer_address, ledger_backend=context.ledger.name)
        app.state.relay_context = context
        try:
            yield
        finally:
            await context.close()

    app = FastAPI(
        title="Gasless Relayer API",
        description="Relays user-signed meta-transactions to the verifier contract",
        version=health.SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if app_settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            rate_limiter=RateLimiter(
                limit=app_settings.rate_limit_requests,
                window_seconds=app_settings.rate_limit_window_seconds,
            ),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Outermost, so rejected and rate-limited requests are logged too
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message, "reason": "InvalidRequest"})

    app.include_router(health.router, tags=["Health"])
    app.include_router(relay_api.router, tags=["Relay"])

    @app.get("/")
    async def root():
        """Root endpoint with basic info"""
        return {
            "name": "Gasless Relayer API",
            "version": health.SERVICE_VERSION,
            "network": app_settings.network,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "relayer.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
