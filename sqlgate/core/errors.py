import logging
from typing import Dict, List, Optional, Tuple

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sqlgate.core.correlation import CORRELATION_HEADER, get_correlation_id, new_correlation_id
from sqlgate.core.exceptions import (
    GENERIC_SAFE_MESSAGE,
    BusinessRuleException,
    CircuitOpenException,
    ConfigurationException,
    DatabaseException,
    ExternalServiceException,
    GatewayError,
    OperationCancelledException,
    RateLimitException,
    ResourceNotFoundException,
    SecurityException,
    ValidationException,
)
from sqlgate.core.schemas import ErrorDetail, ErrorResponse, utc_now

# -----------------------------------------------------------------------------
# ERROR BOUNDARY - exception kind -> HTTP response
# Purpose: One place that logs full diagnostics and answers the caller with the
# safe message, the correlation id and, for validation, the field errors
# Why: Nothing past this point may carry identifiers, SQL or parameter values
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

# Checked in order, first match wins (subclasses before their parents)
STATUS_BY_KIND = (
    (ValidationException, status.HTTP_400_BAD_REQUEST),
    (ResourceNotFoundException, status.HTTP_404_NOT_FOUND),
    (BusinessRuleException, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ExternalServiceException, status.HTTP_502_BAD_GATEWAY),
    (DatabaseException, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RateLimitException, status.HTTP_429_TOO_MANY_REQUESTS),
    (OperationCancelledException, status.HTTP_408_REQUEST_TIMEOUT),
    (ConfigurationException, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: BaseException) -> int:
    if isinstance(exc, SecurityException):
        if exc.is_authentication_failure:
            return status.HTTP_401_UNAUTHORIZED
        return status.HTTP_403_FORBIDDEN
    for kind, code in STATUS_BY_KIND:
        if isinstance(exc, kind):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def build_error_response(
    exc: BaseException, correlation_id: Optional[str] = None
) -> Tuple[int, ErrorResponse, Dict[str, str]]:
    """
    Translate an exception into (status code, body, headers).

    Only safe_message, the correlation id and validation field errors reach
    the body; anything that is not a GatewayError gets the generic message.
    """
    code = status_for(exc)
    if isinstance(exc, GatewayError):
        correlation_id = exc.correlation_id
        message = exc.safe_message
        timestamp = exc.timestamp
    else:
        correlation_id = correlation_id or get_correlation_id() or new_correlation_id()
        message = GENERIC_SAFE_MESSAGE
        timestamp = utc_now()

    errors: List[ErrorDetail] = []
    if isinstance(exc, ValidationException):
        for field, messages in exc.errors.items():
            errors += [ErrorDetail(code="VALIDATION_ERROR", message=m, field=field) for m in messages]

    headers = {CORRELATION_HEADER: correlation_id}
    if code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RateLimitException):
        headers["Retry-After"] = str(int(exc.retry_after_seconds))
    elif isinstance(exc, CircuitOpenException):
        headers["Retry-After"] = str(max(1, int(exc.retry_after_seconds)))

    body = ErrorResponse(
        correlation_id=correlation_id, message=message, timestamp=timestamp, errors=errors
    )
    return code, body, headers


def log_failure(exc: BaseException, code: int, request: Optional[Request] = None) -> None:
    where = f"{request.method} {request.url.path}" if request is not None else "-"
    if isinstance(exc, OperationCancelledException):
        # Caller initiated, not an error
        logger.info(f"Request cancelled by caller {where}: {exc.get_log_message()}")
        return

    detail = exc.get_log_message() if isinstance(exc, GatewayError) else f"{type(exc).__name__}: {exc}"
    logger.error(f"{where} -> {code} {detail}", exc_info=exc)


def _respond(exc: BaseException, request: Request) -> JSONResponse:
    code, body, headers = build_error_response(
        exc, getattr(request.state, "correlation_id", None)
    )
    log_failure(exc, code, request)
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"), headers=headers)


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return _respond(exc, request)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.setdefault(".".join(location) or "request", []).append(error.get("msg", "Invalid value"))
    return _respond(
        ValidationException(errors=errors, correlation_id=getattr(request.state, "correlation_id", None)),
        request,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return _respond(exc, request)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
