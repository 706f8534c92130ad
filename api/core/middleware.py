"""
Request pipeline: request id, per-request transaction, error envelopes.

Each request goes through

    id assigned -> connection acquired -> transaction begun -> handler
    -> committed | rolled back -> connection released -> response

Commit policy: the transaction is committed when the handler returns a
response with status < 400 and did not call `context.request_rollback()`.
Any other outcome rolls back. A handler may also commit or roll back itself;
the middleware only finishes a transaction that is still open.

The middleware is the only place that decides rollback and the 500 response
for errors that escape a handler. HTTP errors raised inside routing
(404, HTTPException, validation) are rendered by the handlers registered in
`install_error_handlers` and then rolled back here by status code.
"""

from __future__ import annotations

import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .context import RequestContext
from .db import DRIVER_ERRORS, ConnectionManager
from .errors import DatabaseError
from .logging import RequestLogger, bind_logger
from .responses import NOT_FOUND_MESSAGE, error_response, server_error_response

_FINALIZE_ERRORS = (DatabaseError, *DRIVER_ERRORS)
NOT_FOUND_DETAIL = "Not Found"


def client_ip(request: Request) -> str:
    """Best-effort client IP (prefers the first hop in X-Forwarded-For)."""
    xff = request.headers.get("x-forwarded-for", "")
    if xff:
        return xff.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


class TransactionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        state = request.app.state
        manager: ConnectionManager = state.database
        production = bool(state.settings.production)

        request_id = str(uuid.uuid4())
        logger = bind_logger(state.logger, request_id)
        logger.request("[%s] %s", request.method, request.url)
        logger.info("Client IP address: %s", client_ip(request))

        context = RequestContext(request_id=request_id, connection=manager.connection(request_id), logger=logger)
        request.state.request_id = request_id
        request.state.context = context

        try:
            try:
                await context.connection.acquire()
                await context.connection.begin_transaction()
            except _FINALIZE_ERRORS as exc:
                logger.error("Unable to open a database transaction. Error: %s", exc)
                response = server_error_response(exc, production=production)
            else:
                response = await self._run_handler(request, call_next, context, production)
        finally:
            if context.connection.is_acquired:
                await _release(context)

        response.headers["x-request-id"] = request_id
        response.headers["x-server-timing-ms"] = str(context.elapsed_ms())
        logger.response("Response status = %s", response.status_code)
        return response

    async def _run_handler(
        self,
        request: Request,
        call_next: Callable,
        context: RequestContext,
        production: bool,
    ) -> Response:
        try:
            response = await call_next(request)
        except Exception as exc:
            context.logger.exception("Unhandled error while processing the request.")
            await _rollback(context)
            return server_error_response(exc, production=production)

        if response.status_code >= 400 or context.rollback_requested:
            await _rollback(context)
            return response

        if context.connection.in_transaction:
            try:
                await context.connection.commit()
            except _FINALIZE_ERRORS as exc:
                context.logger.error("Commit failed. Error: %s", exc)
                return server_error_response(exc, production=production)
        return response


async def _rollback(context: RequestContext) -> None:
    if not context.connection.in_transaction:
        return None
    try:
        await context.connection.rollback()
    except _FINALIZE_ERRORS as exc:
        # Release still returns the connection; the pool resets it.
        context.logger.error("Rollback failed. Error: %s", exc)


async def _release(context: RequestContext) -> None:
    try:
        await context.connection.release()
    except _FINALIZE_ERRORS as exc:
        # The transaction is already finished; the response stands.
        context.logger.error("Releasing the database connection failed. Error: %s", exc)


def _logger_for(request: Request) -> RequestLogger:
    return bind_logger(request.app.state.logger, getattr(request.state, "request_id", None))


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    # Only unmatched routes carry Starlette's default detail.
    if exc.status_code == 404 and exc.detail == NOT_FOUND_DETAIL:
        message = NOT_FOUND_MESSAGE
    else:
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    if exc.status_code >= 500:
        _logger_for(request).error("HTTP %s: %s", exc.status_code, message)
    else:
        _logger_for(request).warning("HTTP %s: %s", exc.status_code, message)
    return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> Response:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location}: {err.get('msg', 'invalid value')}")
    message = "Invalid request. " + "; ".join(problems)
    _logger_for(request).warning(message)
    return error_response(422, message)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
