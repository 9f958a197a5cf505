"""Centralized error handler.

Consistent JSON error responses for the management API; internal details
are never sent to clients. Webhook routes handle their own errors and
always answer with TwiML.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from services.call_flows import FlowInUseError
from services.segments import ConcurrentUpdateError


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(Exception)
    async def global_error_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = request.headers.get("x-request-id", "no-id")
        logger.error("[{rid}] Unhandled error: {err}", rid=request_id, err=str(exc))
        return JSONResponse(
            status_code=500,
            content={"error": "An internal error occurred"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": str(exc)},
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": "Invalid call flow", "details": exc.errors(include_url=False, include_context=False)},
        )

    @app.exception_handler(LookupError)
    async def not_found_handler(request: Request, exc: LookupError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"error": str(exc) or "Not found"},
        )

    @app.exception_handler(FlowInUseError)
    async def flow_in_use_handler(request: Request, exc: FlowInUseError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"error": str(exc), "lineCount": exc.line_count},
        )

    @app.exception_handler(ConcurrentUpdateError)
    async def conflict_handler(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
        logger.warning("Concurrent update conflict: {err}", err=str(exc))
        return JSONResponse(
            status_code=409,
            content={"error": "The call changed while updating, try again"},
        )
