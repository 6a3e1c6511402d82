import logging
import time
import uuid
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
from starlette.middleware.base import BaseHTTPMiddleware

from oauth_vault.core.config import Environment, Settings, settings, validate_platform_config
from oauth_vault.core.errors import (
    ConfigurationError,
    OAuthVaultError,
    RateLimitError,
    ReconnectRequired,
    ScopeError,
    StateError,
    TokenNotFound,
    UpstreamError,
    ValidationError,
)
from oauth_vault.core.logging import set_request_id, setup_logging
from oauth_vault.db.models import Base
from oauth_vault.routers import health, internal, oauth
from oauth_vault.services.crypto import TokenCipher
from oauth_vault.services.orchestrator import build_orchestrator

logger = logging.getLogger("oauth_vault")

# most specific first
_STATUS = (
    (RateLimitError, 429),
    (ConfigurationError, 500),
    (ValidationError, 400),
    (StateError, 400),
    (ScopeError, 403),
    (TokenNotFound, 404),
    (ReconnectRequired, 409),
    (UpstreamError, 503),
)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        client = request.client.host if request.client else "-"
        logging.getLogger("oauth_vault.request").info(
            f"{client} {request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path), "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response


class NoStoreMiddleware(BaseHTTPMiddleware):
    """OAuth responses carry state and authorization URLs; keep them out of caches and frames."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/oauth") or request.url.path.startswith("/internal"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
            response.headers["Pragma"] = "no-cache"
            response.headers["X-Content-Type-Options"] = "nosniff"
            response.headers["X-Frame-Options"] = "DENY"
            response.headers["Referrer-Policy"] = "no-referrer"
        return response


async def oauth_error_handler(request: Request, exc: OAuthVaultError) -> JSONResponse:
    status = next((code for cls, code in _STATUS if isinstance(exc, cls)), 500)
    headers = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after)
    if status >= 500:
        logger.error("oauth request failed", extra={"error_code": exc.code, "path": request.url.path})
    # only the stable code and the generic message leave the service
    return JSONResponse(
        status_code=status,
        content={"error": exc.code, "message": exc.public_message},
        headers=headers,
    )


def create_app(
    cfg: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the service. Raises EncryptionError on a missing or weak ENCRYPTION_KEY and
    ConfigurationError on half-configured platforms, so a bad deploy never serves a request.
    """
    cfg = cfg or settings
    if cfg.ENVIRONMENT is not Environment.TEST:
        setup_logging(cfg.LOG_DIR)
    cipher = TokenCipher.from_settings(cfg)

    problems = validate_platform_config(cfg)
    if problems:
        raise ConfigurationError("OAuth configuration errors: " + "; ".join(problems))

    if session_factory is None:
        from oauth_vault.db.session import SessionLocal, engine
        Base.metadata.create_all(bind=engine)
        session_factory = SessionLocal

    app = FastAPI(title="OAuth Vault", version="1.0")
    app.state.settings = cfg
    app.state.session_factory = session_factory
    app.state.orchestrator = build_orchestrator(cfg, session_factory, cipher, transport=transport)

    if cfg.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )
    app.add_middleware(NoStoreMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(OAuthVaultError, oauth_error_handler)

    app.include_router(health.router)
    app.include_router(oauth.router)
    app.include_router(internal.router)

    logger.info("oauth vault ready", extra={"environment": cfg.ENVIRONMENT.value, "key_version": cipher.key_version})
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("oauth_vault.main:create_app", factory=True, host="0.0.0.0", port=8000)
