"""
Error taxonomy shared by the lifecycle controller, the bill renderer and the
delivery gateway. Each error knows the HTTP status it maps to.
"""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class POSError(Exception):
    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(POSError):
    """Missing or malformed input."""
    status_code = 400


class NotFound(POSError):
    """Unknown order, product or category id."""
    status_code = 404


class InvalidTransition(POSError):
    """Illegal status change, or an edit to a finalized order."""
    status_code = 409


class RenderError(POSError):
    status_code = 500


class DeliveryError(POSError):
    """The messaging provider rejected the request (e.g. no active session)."""
    status_code = 503


class UpstreamError(POSError):
    """The messaging provider could not be reached."""
    status_code = 502


def error_envelope(exc: POSError) -> JSONResponse:
    """{success: false, error} body used by the send-bill and WhatsApp routes."""
    content = {"success": False, "error": exc.message}
    if exc.detail:
        content["details"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)


async def pos_error_handler(request: Request, exc: POSError) -> JSONResponse:
    content = {"detail": exc.message}
    if exc.detail:
        content["details"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)
