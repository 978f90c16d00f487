"""Starlette application assembly and lifecycle."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from oauth_proxy.auth.manager import CredentialManager
from oauth_proxy.auth.registry import build_refresher
from oauth_proxy.auth.store import CredentialFile
from oauth_proxy.config import ProxyConfig
from oauth_proxy.presets import PRESET_NAME, PresetStore
from oauth_proxy.proxy.handler import ProxyHandler, error_response
from oauth_proxy.proxy.streaming import ObserverFactory, StreamRelay
from oauth_proxy.proxy.transform import RequestTransformer

logger = logging.getLogger(__name__)


def create_app(
    config: ProxyConfig,
    observer_factory: ObserverFactory | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Starlette:
    """Create and configure the Starlette proxy application.

    `transport` replaces the network transport of the shared HTTP client.
    """

    presets = PresetStore(config.presets_dir)
    transformer = RequestTransformer(presets, strip_ttl=config.strip_ttl)
    relay = StreamRelay(observer_factory)
    handler: ProxyHandler | None = None
    client: httpx.AsyncClient | None = None

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
        nonlocal handler, client
        client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(config.upstream_timeout, connect=config.credential_timeout),
        )
        credential_file = CredentialFile(config)
        if not await credential_file.exists():
            logger.warning(
                "No credential file at %s; requests need the %s header until one exists",
                credential_file.location,
                config.override_header,
            )
        refresher = build_refresher(config, credential_file, client)
        logger.info("Using %s refresh strategy", refresher.strategy.value)
        credentials = CredentialManager(
            credential_file,
            refresher,
            promote_override=config.promote_override_token,
        )
        handler = ProxyHandler(
            config=config,
            credentials=credentials,
            transformer=transformer,
            relay=relay,
            http_client=client,
        )
        app.state.credentials = credentials
        yield
        if client:
            await client.aclose()

    async def health(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            {"status": "ok", "server": "oauth-proxy", "timestamp": int(time.time() * 1000)}
        )

    async def messages(request: Request) -> Response:
        """Proxy a messages request, optionally with a preset from the path."""
        assert handler is not None, "App not initialized"
        preset_name = request.path_params.get("preset")
        if preset_name is not None and not PRESET_NAME.match(preset_name):
            return error_response("Not found", status_code=404)
        return await handler.handle(request, preset_name)

    async def http_error(request: Request, exc: HTTPException) -> Response:
        return error_response(exc.detail, status_code=exc.status_code)

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/v1/messages", messages, methods=["POST"]),
        Route("/v1/{preset}/messages", messages, methods=["POST"]),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                "Authorization",
                "X-Requested-With",
                config.override_header,
            ],
        )
    ]

    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={HTTPException: http_error},
        lifespan=lifespan,
    )

    return app
