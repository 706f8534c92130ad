"""
JSON envelope shared by every response: `{"error": bool, "message": str, ...}`.
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

NOT_FOUND_MESSAGE = "Not found."
GENERIC_ERROR_MESSAGE = "Internal server error."


def envelope(message: str, *, error: bool = False, **payload: Any) -> dict[str, Any]:
    return {"error": error, "message": message, **payload}


def error_response(status_code: int, message: str, *, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(envelope(message, error=True), status_code=status_code, headers=headers)


def server_error_response(exc: BaseException, *, production: bool) -> JSONResponse:
    # Internals only leave the process outside production.
    message = GENERIC_ERROR_MESSAGE if production else (str(exc) or exc.__class__.__name__)
    return error_response(500, message)
