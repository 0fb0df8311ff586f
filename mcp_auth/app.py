"""Starlette application factory for the auth server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from contextlib import asynccontextmanager

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import BaseRoute, Route

from mcp_auth.middleware import BearerMiddleware
from mcp_auth.models import AuthServerConfig
from mcp_auth.provider import OAuthProvider
from mcp_auth.routes import OAuthRouter

logger = logging.getLogger(__name__)


def create_router(config: AuthServerConfig, provider: OAuthProvider) -> OAuthRouter:
    return OAuthRouter(
        provider=provider,
        issuer_url=config.issuer_url,
        resource_url=config.resource,
        scopes_supported=list(config.scopes_supported),
        service_documentation=config.service_documentation,
        allow_dynamic_registration=config.allow_dynamic_registration,
    )


def create_app(
    config: AuthServerConfig,
    protected_routes: Sequence[BaseRoute] | None = None,
    required_scopes: list[str] | None = None,
    provider: OAuthProvider | None = None,
) -> Starlette:
    """Build the authorization server app.

    `protected_routes` are served behind BearerMiddleware; the OAuth
    endpoints and /health stay public. The provider is available to handlers
    as `request.app.state.provider`.
    """
    if provider is None:
        provider = OAuthProvider.from_config(config)
    router = create_router(config, provider)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        sweeper = None
        if config.sweep_interval > 0:
            sweeper = asyncio.create_task(provider.run_sweeper(config.sweep_interval))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse({"status": "healthy"})

    routes: list[BaseRoute] = [Route("/health", health_check, methods=["GET"])]
    routes.extend(router.get_routes())
    routes.extend(protected_routes or [])

    middleware = [
        Middleware(
            BearerMiddleware,
            provider=provider,
            exclude_paths=router.get_excluded_paths(),
            required_scopes=required_scopes,
            resource_metadata_url=router.get_resource_metadata_url(),
        )
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.provider = provider
    app.state.router = router
    logger.info(
        "Auth server ready: issuer=%s clients=%d",
        config.issuer_url,
        len(provider.clients),
    )
    return app
