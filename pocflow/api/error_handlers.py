"""Error Handlers — global exception handlers for the workflow API.

Invariants:
    - PocFlowError → structured JSON with error code, message, severity
    - RequestValidationError → field-level error details, HTTP 400
    - Exception (catch-all) → never leaks internal details

Design Decisions:
    - Three-layer handler: domain (PocFlowError), validation (Pydantic), catch-all (Exception)
    - Dispatchers return outcomes instead of raising; these handlers cover
      what happens outside them (request parsing, registry failures)
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from pocflow.core.errors import PocFlowError, ErrorSeverity

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""
    _register_domain_error_handler(app)
    _register_validation_error_handler(app)
    _register_generic_error_handler(app)


def _register_domain_error_handler(app: FastAPI) -> None:

    @app.exception_handler(PocFlowError)
    async def pocflow_error_handler(request: Request, exc: PocFlowError):
        """Handle all orchestrator domain/infrastructure errors."""
        logger.error(
            f"PocFlowError: {exc.message}",
            extra={"error_code": exc.code, "session_id": exc.context.session_id},
        )
        return JSONResponse(
            status_code=exc.http_status, content=exc.to_response(),
        )


def _register_validation_error_handler(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ):
        """Handle Pydantic validation errors."""
        logger.warning(
            f"Validation error on {request.url.path}: {exc.errors()}",
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_build_validation_error_response(exc),
        )


def _register_generic_error_handler(app: FastAPI) -> None:

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        """Catch-all: never leaks internal details; points the UI at a session reload."""
        session_id = request.path_params.get("session_id")
        logger.error(
            f"Unhandled exception on {request.url.path}: {exc}",
            extra={"session_id": session_id},
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": (
                        "The workflow service failed to handle this request. "
                        "Use 'Check for updates' to reload the session."
                    ),
                    "category": "internal",
                    "severity": ErrorSeverity.CRITICAL.value,
                    "recoverable": True,
                    "context": {"session_id": session_id},
                },
            },
        )


def _build_validation_error_response(exc: RequestValidationError) -> dict:
    return {
        "error": {
            "code": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "category": "validation",
            "severity": ErrorSeverity.ERROR.value,
            "details": [
                {
                    "field": ".".join(str(loc) for loc in e["loc"]),
                    "message": e["msg"],
                    "type": e["type"],
                }
                for e in exc.errors()
            ],
        },
    }
