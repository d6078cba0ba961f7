"""Centralized error handling with structured JSON error responses.

Custom exception hierarchy with error codes, HTTP status mapping,
and troubleshooting hints. All PurgarrError subtypes are automatically
caught by Flask error handlers and returned as structured JSON.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

from flask import jsonify, g

logger = logging.getLogger(__name__)


# ─── Exception Hierarchy ─────────────────────────────────────────────────────


class PurgarrError(Exception):
    """Base exception for all Purgarr application errors.

    Attributes:
        code: Machine-readable error code (e.g. "FLOW_001")
        http_status: HTTP status code to return
        context: Additional context data for debugging
        troubleshooting: Human-readable hint for resolving the issue
    """

    code: str = "PURGARR_000"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        context: Optional[dict] = None,
        troubleshooting: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.context = context or {}
        self.troubleshooting = troubleshooting


class ValidationError(PurgarrError):
    """Malformed request payload or rule configuration."""

    code = "VAL_001"
    http_status = 400


class ConfigurationError(PurgarrError):
    """Configuration validation errors (e.g. no services configured)."""

    code = "CFG_001"
    http_status = 400


class NotFoundError(PurgarrError):
    """A local record (rule, request, media entry) does not exist."""

    code = "NF_001"
    http_status = 404


class WorkflowStateError(PurgarrError):
    """Illegal deletion workflow transition or overlapping run."""

    code = "FLOW_001"
    http_status = 409


class ExternalServiceError(PurgarrError):
    """An external service call failed after all retry attempts."""

    code = "EXT_001"
    http_status = 502

    def __init__(self, message: str, service: str = "", **kwargs: object) -> None:
        kwargs.setdefault("troubleshooting", "Check that the service is running and the URL/API key are correct.")
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.service = service
        if service:
            self.context.setdefault("service", service)


class ExternalNotFoundError(ExternalServiceError):
    """The upstream entity a local record refers to does not exist."""

    code = "EXT_404"
    http_status = 404


class DatabaseError(PurgarrError):
    """Database operation errors."""

    code = "DB_001"
    http_status = 500


# ─── Structured Error Response Builder ───────────────────────────────────────


def _build_error_response(error: PurgarrError) -> dict:
    """Build a structured JSON error response from a PurgarrError."""
    response: dict = {
        "error": str(error),
        "code": error.code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    request_id = getattr(g, "request_id", None)
    if request_id:
        response["request_id"] = request_id

    if error.context:
        response["context"] = error.context

    if error.troubleshooting:
        response["troubleshooting"] = error.troubleshooting

    return response


# ─── Flask Error Handler Registration ────────────────────────────────────────


def register_error_handlers(app: object) -> None:
    """Register global error handlers on a Flask app.

    Call this once during app setup to install:
    - PurgarrError handler (structured JSON)
    - Generic Exception handler (500 with logging)
    - before_request hook for request IDs
    """
    from flask import Flask
    flask_app: Flask = app  # type: ignore[assignment]

    @flask_app.before_request
    def _set_request_id() -> None:
        """Assign a unique request ID to every incoming request."""
        g.request_id = str(uuid.uuid4())[:8]

    @flask_app.errorhandler(PurgarrError)
    def _handle_purgarr_error(error: PurgarrError):  # type: ignore[return]
        """Return structured JSON for known application errors."""
        logger.warning(
            "[%s] %s: %s (request_id=%s)",
            error.code,
            error.__class__.__name__,
            error,
            getattr(g, "request_id", "?"),
        )
        return jsonify(_build_error_response(error)), error.http_status

    @flask_app.errorhandler(Exception)
    def _handle_generic_error(error: Exception):  # type: ignore[return]
        """Catch-all: log full traceback, return generic 500."""
        from werkzeug.exceptions import HTTPException
        if isinstance(error, HTTPException):
            return error

        request_id = getattr(g, "request_id", "?")
        logger.exception(
            "Unhandled exception (request_id=%s): %s", request_id, error
        )
        return jsonify({
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
            "request_id": request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }), 500
