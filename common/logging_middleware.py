"""Audit logging for the HTTP services and console output for the core."""
from __future__ import annotations

import logging
from pathlib import Path
from time import perf_counter

from fastapi import FastAPI, Request

from .config import get_settings
from .rate_limit import SCANNER_KEY_HEADER

settings = get_settings()
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _audit_logger(service_name: str) -> logging.Logger:
    logger = logging.getLogger(f"audit.{service_name}")
    if logger.handlers:
        return logger

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / f"{service_name}.log")
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s", datefmt=_DATE_FORMAT))
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    return logger


def caller_kind(request: Request) -> str:
    """Coarse caller label for the audit line; credentials themselves are never logged."""

    if request.headers.get(SCANNER_KEY_HEADER):
        return "kiosk"
    if request.headers.get("Authorization", "").lower().startswith("bearer "):
        return "user"
    return "anonymous"


def configure_core_logging(level: str | int | None = None) -> None:
    """Send the ``common.*`` loggers to the console once per process."""

    core_logger = logging.getLogger("common")
    if core_logger.handlers:
        return
    core_logger.setLevel(level or settings.log_level)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s", datefmt=_DATE_FORMAT))
    core_logger.addHandler(handler)


def add_audit_middleware(app: FastAPI, service_name: str) -> None:
    logger = _audit_logger(service_name)

    @app.middleware("http")
    async def audit_logger(request: Request, call_next):  # type: ignore[override]
        started = perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s | status=%s | caller=%s | client=%s | duration=%.2fms",
            request.method,
            request.url.path,
            response.status_code,
            caller_kind(request),
            request.client.host if request.client else "unknown",
            (perf_counter() - started) * 1000,
        )
        return response
