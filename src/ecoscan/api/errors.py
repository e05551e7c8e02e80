"""Exception handler turning pipeline errors into JSON responses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse

from ecoscan.api.schemas import ErrorResponse
from ecoscan.errors import EcoScanError, Unauthorized

if TYPE_CHECKING:
    from fastapi import Request

logger = logging.getLogger(__name__)


async def ecoscan_error_handler(request: Request, exc: EcoScanError) -> JSONResponse:
    """Map an EcoScanError to its status code with a ``{detail, error}`` body."""
    log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        log_level, "%s %s -> %d %s: %s", request.method, request.url.path, exc.status_code, exc.code, exc.message
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=exc.message, error=exc.code).model_dump(),
        headers={"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None,
    )
