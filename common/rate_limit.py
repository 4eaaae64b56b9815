"""SlowAPI limiter shared by the services.

API clients are limited per remote address, the RFID kiosk scan endpoint per
scanner key.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

SCANNER_KEY_HEADER = "X-API-Key"

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.default_rate_limit],
    enabled=settings.rate_limiting_enabled,
)


def scanner_key(request: Request) -> str:
    key = request.headers.get(SCANNER_KEY_HEADER)
    return f"scanner:{key}" if key else get_remote_address(request)


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s %s (%s)", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}", "code": "RATE_LIMITED"},
    )


def apply_rate_limiter(app: FastAPI) -> None:
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
