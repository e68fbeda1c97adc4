"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from starlette.middleware.base import BaseHTTPMiddleware

from square_relay.core.dependencies import build_square_oauth, build_token_store, get_settings
from square_relay.core.errors import ConfigurationError, install_error_handlers
from square_relay.core.oauth import SquareOAuth
from square_relay.core.refresh import TokenRefresher, TokenRefreshMiddleware
from square_relay.core.settings import RelaySettings
from square_relay.plugins.square import create_square_router
from square_relay.stores.base import TokenStore

logger = logging.getLogger("api")


# Request tracing middleware
class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Request tracing middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Any:
        logger.info("Request: %s %s", request.method, request.url.path)
        response = await call_next(request)
        logger.info("Response status: %s", response.status_code)
        return response


def create_app(
    settings: Optional[RelaySettings] = None,
    store: Optional[TokenStore] = None,
    oauth: Optional[SquareOAuth] = None,
    check_store: bool = True,
) -> FastAPI:
    """
    Build the relay application.

    Collaborators not passed in are built from `settings`. Pass `store` and
    `oauth` to substitute fakes.

    Raises:
        ConfigurationError: If the configured token store lacks credentials.
    """
    if settings is None:
        settings = get_settings()
    if store is None:
        store = build_token_store(settings)
    oauth = oauth or build_square_oauth(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan for the FastAPI application."""
        if store is not None and check_store:
            await store.check_connection()
        yield

    app = FastAPI(
        title="Square OAuth Relay",
        description="Relays Square OAuth code exchanges and keeps tenant tokens fresh",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.token_store = store
    app.state.square_oauth = oauth

    install_error_handlers(app)

    if store is not None:
        refresher = TokenRefresher(
            store,
            oauth,
            single_flight=settings.refresh_single_flight,
            log_tokens=settings.log_tokens,
        )
        app.add_middleware(TokenRefreshMiddleware, refresher=refresher)

    # Add request tracing middleware
    app.add_middleware(RequestTracingMiddleware)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(create_square_router(oauth, settings, store), prefix="/api/square")

    if settings.static_dir:
        add_static_fallback(app, Path(settings.static_dir))

    return app


def add_static_fallback(app: FastAPI, static_dir: Path) -> None:
    """Serve a bundled frontend for every GET that no route matched."""
    root = static_dir.resolve()
    index = root / "index.html"

    @app.get("/{full_path:path}", include_in_schema=False)
    async def frontend(full_path: str) -> FileResponse:
        candidate = (root / full_path).resolve()
        if candidate.is_file() and candidate.is_relative_to(root):
            return FileResponse(candidate)
        if index.is_file():
            return FileResponse(index)
        raise HTTPException(status_code=404, detail="Not Found")


def run() -> None:
    """Start the relay on the configured port."""
    logging.basicConfig(level=logging.INFO)
    settings = get_settings()
    try:
        app = create_app(settings)
    except ConfigurationError as e:
        logger.error("%s", e)
        raise SystemExit(1) from e

    logger.info("Server is running on http://localhost:%s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
