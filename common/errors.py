"""Domain error kinds and their HTTP mapping."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    code = "ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(AppError):
    """Bad input or references. Carries every violation found, not just the first."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, violations: Iterable[str] | str) -> None:
        if isinstance(violations, str):
            violations = [violations]
        self.violations: List[str] = list(violations)
        super().__init__("\n".join(self.violations))

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["violations"] = self.violations
        return payload


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message)


class AuthorizationError(AppError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message)


class InfrastructureError(AppError):
    status_code = 500
    code = "INFRASTRUCTURE_ERROR"

    def __init__(self, message: str = "Storage operation failed", original: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.original = original


def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
    if isinstance(exc, InfrastructureError):
        logger.error("Infrastructure failure: %s", exc.message, exc_info=exc.original)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def add_error_handlers(app: FastAPI) -> None:
    """Map domain errors raised by the core to JSON responses."""

    app.add_exception_handler(AppError, app_error_handler)
