"""Error taxonomy for the autopay API and the handlers that render it.

Every failure leaves the service as
    {"error": {"code", "message", "request_id"}, "detail": message}
with the request id echoed in the x-request-id header.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from autopay.core.logging import get_request_id

logger = logging.getLogger("autopay")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundOrForbiddenError(AppError):
    """Row is missing or owned by someone else. The two cases are never told apart."""
    code = "not_found"
    status_code = 404


class InsufficientFundsError(AppError):
    code = "insufficient_funds"
    status_code = 402


class AuthorizationDeniedError(AppError):
    """Allowance raise or charge was rejected or failed on the ledger."""
    code = "authorization_denied"
    status_code = 403


class ConfigurationError(AppError):
    """Wallet or contract wiring is missing."""
    code = "configuration_error"
    status_code = 503


class LimitExceededError(AppError):
    code = "limit_exceeded"
    status_code = 403


class InternalError(AppError):
    code = "internal_error"
    status_code = 500


_HTTP_CODES = {404: "not_found", 405: "method_not_allowed"}


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(status: int, code: str, message: str, rid: str, headers: Optional[dict] = None) -> JSONResponse:
    body = {"error": {"code": code, "message": message, "request_id": rid}, "detail": message}
    response = JSONResponse(status_code=status, content=body, headers=headers)
    response.headers["x-request-id"] = rid
    return response


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or "body"
    return f"Invalid request: {field} {first.get('msg', '')}".strip()


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code},
    )
    return _respond(exc.status_code, exc.code, exc.message, rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id_for(request)
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "status": 400})
    return _respond(400, ValidationError.code, _first_validation_message(exc), rid)


async def http_error_handler(request: Request, exc: HTTPException):
    """Routing failures raised by Starlette itself (unknown path, wrong method)."""
    rid = _request_id_for(request)
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(exc.status_code, code, exc.detail or "HTTP error", rid, headers=getattr(exc, "headers", None))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": InternalError.code})
    return _respond(500, InternalError.code, "Unexpected error", rid)
