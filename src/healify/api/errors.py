"""Mapping of healing errors to HTTP responses."""

import logging
from typing import Dict, Type
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.exceptions import (
    HealingError, HealingEventNotFound, InvalidTransition, PersistenceFailure,
    ProjectNotFound, RunNotActive, RunNotFound, UnsupportedSelectorSyntax,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 1

STATUS_CODES: Dict[Type[HealingError], int] = {
    RunNotFound: 404,
    ProjectNotFound: 404,
    HealingEventNotFound: 404,
    RunNotActive: 409,
    InvalidTransition: 409,
    UnsupportedSelectorSyntax: 422,
    PersistenceFailure: 503,
}


def status_code_for(error: HealingError) -> int:
    for error_type in type(error).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return 500


async def healing_error_handler(request: Request, exc: HealingError) -> JSONResponse:
    status_code = status_code_for(exc)
    headers = {}
    if exc.retryable:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")

    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message, "retryable": exc.retryable},
        headers=headers,
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": "VALIDATION_ERROR", "detail": str(exc)})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HealingError, healing_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
