"""FastAPI application entry point.

Startup sequence: load settings (fail fast without ANTHROPIC_API_KEY) ->
build model registry -> init LLM adapter -> create ledger (server mode) ->
wire middleware and routes.

Run with `halochat-api` or `uvicorn halochat.main:create_app --factory`.
"""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from halochat.api.routes import error_response, router
from halochat.core.chat_service import ChatService
from halochat.core.config import ConfigError, Settings
from halochat.core.costs import CostLedger
from halochat.core.llm_adapter import LLMAdapter
from halochat.core.model_registry import ModelRegistry
from halochat.core.rate_limit import RateLimiter

logger = structlog.get_logger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings: Settings = app.state.settings
    service: ChatService = app.state.chat_service
    logger.info(
        "startup.complete",
        port=settings.port,
        origins=settings.allowed_origins,
        model=service.registry.default.model_id,
        fallback=service.registry.fallback.model_id,
        balance_mode=settings.balance_mode,
        strict_errors=settings.strict_errors,
    )
    yield
    logger.info("shutdown.complete")


def create_app(settings: Settings | None = None, llm_adapter: LLMAdapter | None = None) -> FastAPI:
    """Build the app. State is owned by app.state and injected into handlers.

    Args:
        settings: Runtime settings. Read from the environment when omitted.
        llm_adapter: Upstream adapter override (tests).

    Raises:
        ConfigError: If settings come from an environment without a credential.
    """
    if settings is None:
        load_dotenv()
        settings = Settings.from_env()

    # Runs in every worker, including uvicorn --reload and --factory children
    configure_logging(settings.log_level)

    registry = ModelRegistry.from_settings(settings)
    adapter = llm_adapter or LLMAdapter(settings.anthropic_api_key, timeout=settings.llm_timeout)
    ledger = CostLedger(settings.starting_balance) if settings.balance_mode == "server" else None

    app = FastAPI(
        title="HaloChat API",
        description="Claude chat proxy with cost estimation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.chat_service = ChatService(settings, registry, adapter, ledger)
    app.state.rate_limiter = RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_s)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """Per-client-address throttling on /api/ routes."""
        if not request.url.path.startswith("/api/") or request.method == "OPTIONS":
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        if not request.app.state.rate_limiter.allow(client):
            return error_response(429, "Too many requests. Please wait.")
        return await call_next(request)

    @app.middleware("http")
    async def body_limit_middleware(request: Request, call_next):
        """Reject bodies whose declared length exceeds the ceiling.

        Chunked bodies carry no Content-Length; /api/chat counts the bytes it
        actually reads against the same ceiling.
        """
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > settings.max_body_bytes:
            logger.warning("request.too_large", path=request.url.path, length=int(length))
            return error_response(413, "Payload too large")
        return await call_next(request)

    @app.middleware("http")
    async def request_log_middleware(request: Request, call_next):
        logger.info("http.request", method=request.method, path=request.url.path)
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    # CORS: allow-list in production, any origin echoed in development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_origin_regex=".*" if settings.is_dev else None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


def main():
    parser = argparse.ArgumentParser(description="HaloChat API Server")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: $PORT)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default: $LOG_LEVEL)")
    args = parser.parse_args()

    load_dotenv()
    if args.log_level:
        # Inherited by reload workers, which rebuild the app from the environment
        os.environ["LOG_LEVEL"] = args.log_level
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logger.error("startup.config_invalid", error=str(e))
        sys.exit(1)

    uvicorn.run(
        "halochat.main:create_app",
        factory=True,
        host=args.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=(args.log_level or "info").lower(),
    )


if __name__ == "__main__":
    main()
