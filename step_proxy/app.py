"""FastAPI application factory for the Step chat proxy."""
from __future__ import annotations

import logging
from typing import Any, Optional

from aiohttp import ClientSession
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .chat import ChatService
from .config import ProxySettings
from .leases import LeaseStore
from .provider import StepClient
from .routes import router
from .uploads import AttachmentUploader

logger = logging.getLogger(__name__)


def _json_safe(obj: Any) -> Any:
    """Sanitize validation errors so bytes inputs stay JSON-serializable."""
    return jsonable_encoder(
        obj,
        exclude_none=True,
        custom_encoder={
            bytes: lambda b: b.decode("utf-8", errors="replace"),
        },
    )


def build_chat_service(session: ClientSession, settings: ProxySettings) -> ChatService:
    """Wire the provider client, lease store and uploader around one HTTP session."""

    client = StepClient(session, settings)
    leases = LeaseStore(client.register_device, ttl=settings.lease_ttl)
    uploader = AttachmentUploader(client, settings)
    return ChatService(client, leases, uploader, settings)


def create_app(
    settings: ProxySettings | None = None,
    chat_service: Optional[ChatService] = None,
) -> FastAPI:
    """Build the FastAPI app with configured routers and lifecycle hooks.

    ``chat_service`` replaces the service built at startup, which keeps the
    routes testable without a provider.
    """

    settings = settings or ProxySettings()

    app = FastAPI(
        title="Step Chat Proxy",
        description="OpenAI-compatible chat completions relayed to the Step chat web API.",
        version="0.1.0",
    )

    app.include_router(router)

    app.state.settings = settings
    app.state.http_client = None
    app.state.chat_service = chat_service

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log detailed validation errors for debugging 422 issues"""
        try:
            raw = await request.body()
            body_preview = raw.decode("utf-8", errors="replace")[:500]
        except Exception:
            body_preview = "<unable to read body>"

        detail = _json_safe(exc.errors())

        logger.error(
            "Validation Error [422] %s %s\nBody: %s\nErrors: %s",
            request.method,
            request.url.path,
            body_preview,
            detail,
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": detail},
            headers={"Access-Control-Allow-Origin": "*"},
        )

    @app.on_event("startup")
    async def on_startup() -> None:  # pragma: no cover - exercised at runtime
        if app.state.chat_service is not None:
            return
        app.state.http_client = ClientSession()
        app.state.chat_service = build_chat_service(app.state.http_client, settings)
        logger.info("✓ Provider client ready base_url=%s", settings.base_url)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:  # pragma: no cover - exercised at runtime
        service: Optional[ChatService] = app.state.chat_service
        if service is not None:
            await service.drain()
        client: Optional[ClientSession] = app.state.http_client
        if client and not client.closed:
            await client.close()

    return app
