"""FastAPI application entry point."""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from synexa_gateway import __version__
from synexa_gateway.config import Settings, settings as default_settings
from synexa_gateway.correlation import RequestIdFilter, RequestIdMiddleware, ensure_request_id
from synexa_gateway.errors import ErrorKind, ProviderError, build_error
from synexa_gateway.ledger import AdmissionDenied
from synexa_gateway.routes_account import router as account_router
from synexa_gateway.routes_ai import router as ai_router
from synexa_gateway.routes_sync import router as sync_router
from synexa_gateway.services import Services, build_services

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure logging (default INFO; opt-in DEBUG via LOG_LEVEL)."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())
    if level == "DEBUG":
        logging.getLogger("synexa_gateway.llm").setLevel(logging.DEBUG)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application. ``services`` is built on startup when not given."""
    settings = settings or (services.settings if services else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        current: Services = app.state.services
        await current.facade.refresh_models()
        heartbeat = asyncio.create_task(current.broadcaster.run_heartbeat())
        try:
            yield
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                logger.debug("Sync heartbeat stopped")

    app = FastAPI(
        title="Synexa Gateway",
        description="Request admission and provider resilience for Synexa chat, image and video",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    # Do not use allow_credentials=True with wildcard origins
    origins = settings.cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=bool(settings.cors_allow_credentials) and "*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(AdmissionDenied)
    async def admission_denied_handler(request: Request, exc: AdmissionDenied):
        return JSONResponse(status_code=403, content=exc.to_response())

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError):
        return JSONResponse(status_code=exc.error.response_status, content=exc.error.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        request_id = getattr(request.state, "request_id", None) or ensure_request_id()
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        error = build_error(ErrorKind.BAD_REQUEST, request_id, f"Invalid request: {problems}")
        return JSONResponse(status_code=400, content=error.to_response())

    # Include routers
    app.include_router(ai_router)
    app.include_router(account_router)
    app.include_router(sync_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Synexa Gateway API",
            "version": __version__,
            "docs": "/docs"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/status")
    async def status(request: Request):
        """Provider configuration and sync stats. Never exposes credentials."""
        current: Services = request.app.state.services
        default = current.facade.default_resolution
        return {
            "status": "degraded" if current.facade.configuration_error else "ok",
            "provider": current.settings.ai_provider,
            "providerDisplayName": current.settings.provider_display_name,
            "isConfigured": not current.gateway.demo_mode,
            "allowDemoFallback": current.settings.allow_demo_fallback,
            "defaultChatModel": current.settings.ai_default_chat_model,
            "resolvedChatModel": default.resolved_model if default else None,
            "usedFallback": bool(default and default.used_fallback),
            "fallbackReason": default.fallback_reason if default else None,
            "configurationError": current.facade.configuration_error,
            "availableModelsKnown": current.gateway.available_models is not None,
            "runtime": current.settings.runtime_summary(),
            "sync": current.broadcaster.stats(),
        }

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "synexa_gateway.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=os.getenv("UVICORN_RELOAD", "0") == "1"
    )
