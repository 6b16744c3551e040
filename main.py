"""
Credential Broker — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from api.middleware import register_middleware
from config.settings import config
from oauth.encryption import is_encryption_enabled
from oauth.flow import FlowSessionStore
from oauth.registry import StrategyRegistry
from oauth.routes import router as oauth_router
from utils.errors import BrokerError, ValidationError
from vault.cache import SecretCache
from vault.routes import router as vault_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "authlib", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Credential Broker",
        version="1.0.0",
        description="OAuth flows and team secret storage for third-party integrations.",
    )

    # Process-wide state
    app.state.secret_cache = SecretCache(ttl=config.vault_cache_ttl, maxsize=config.vault_cache_maxsize)
    app.state.flow_store = FlowSessionStore(
        ttl=config.flow_session_ttl, maxsize=config.flow_session_maxsize
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Signed cookie holding only an opaque session id
    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        max_age=config.session_max_age,
        same_site="lax",
        https_only=config.session_https_only,
    )

    register_middleware(app)

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # field locations only; submitted values are not echoed
        fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
        message = f"Invalid request: {', '.join(f for f in fields if f)}" if fields else None
        error = ValidationError(message)
        return JSONResponse(status_code=error.status_code, content={"error": error.message})

    # Routes
    app.include_router(oauth_router)
    app.include_router(vault_router)

    @app.on_event("startup")
    async def on_startup():
        logger.info("Registering protocol strategies…")
        registry = StrategyRegistry()
        registry.discover()
        logger.info("Provider overrides: %s", registry.list_overrides())
        logger.info("Token encryption at rest: %s", "on" if is_encryption_enabled() else "off")
        logger.info("Application ready to accept requests.")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
