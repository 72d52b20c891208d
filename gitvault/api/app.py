"""Application factory wiring the gitvault routers together."""

import logging
import time

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from gitvault.api.auth import PublicAccess, TokenIssuer, TokenVerifier, create_signin_router
from gitvault.api.routes import create_router
from gitvault.api.webhook import create_webhook_router
from gitvault.directory import RepositoryDirectory
from gitvault.models.server import ServerConfig

logger = logging.getLogger(__name__)

UNLOGGED_PATHS = frozenset({"/health"})


def create_app(directory: RepositoryDirectory, config: ServerConfig | None = None) -> FastAPI:
    """Build the FastAPI app serving ``directory``.

    The webhook, sign-in and public routes are only mounted when ``config``
    carries the token or keys they need.
    """
    config = config or ServerConfig()
    app = FastAPI(title="gitvault")
    app.state.directory = directory
    app.state.config = config

    @app.middleware("http")
    async def log_requests(request: Request, call_next) -> Response:
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)
        started = time.monotonic()
        response = await call_next(request)
        elapsed = (time.monotonic() - started) * 1000
        if response.status_code == 404 and "endpoint" not in request.scope:
            logger.warning(f"Unknown request {request.method} {request.url.path}")
        else:
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.1f}ms)"
            )
        return response

    @app.get("/health", response_class=PlainTextResponse, include_in_schema=False)
    def health() -> str:
        return "OK"

    app.include_router(create_router(directory, request_timeout=config.request_timeout))

    if config.github_push_token:
        app.include_router(
            create_webhook_router(
                directory, config.github_push_token, request_timeout=config.request_timeout
            )
        )
    else:
        logger.info("No push token set, skipping GitHub webhook")

    if config.signin_enabled:
        issuer = TokenIssuer.from_file(config.jwt_private_key)
        app.include_router(
            create_signin_router(issuer, config.jwt_signin_username, config.jwt_signin_password)
        )
    else:
        logger.info("Sign-in not fully configured, skipping token signing")

    if config.public_enabled:
        verifier = TokenVerifier.from_file(config.jwt_public_key)
        app.include_router(
            create_router(
                directory,
                prefix="/public",
                tags=["public"],
                dependencies=[Depends(PublicAccess(directory, verifier))],
                request_timeout=config.request_timeout,
                include_refresh=False,
            )
        )
    else:
        logger.info("No public key set, skipping public routes")

    return app
