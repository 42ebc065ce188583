import asyncio
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlgate.core.correlation import get_correlation_id, new_correlation_id

# -----------------------------------------------------------------------------
# EXCEPTIONS MODULE - Failure taxonomy
# Purpose: Every failure that crosses a module boundary carries a diagnostic
# message (logs only), a caller-safe message, a correlation id and a details bag
# Why: The caller must never see identifiers, command text or parameter values
# -----------------------------------------------------------------------------

GENERIC_SAFE_MESSAGE = "An error has occurred. Please try again later."

# Statement timeout as reported by the driver
TIMEOUT_ERROR_NUMBER = -2

# SQL Server error numbers worth retrying unchanged.
# Unique-key violations (2601, 2627) are deliberately absent.
TRANSIENT_ERROR_NUMBERS = frozenset(
    {
        TIMEOUT_ERROR_NUMBER,
        64,  # connection dropped during login
        233,  # no process on the other end of the pipe
        1205,  # deadlock victim
        1222,  # lock request timeout
        4060,  # cannot open database
        10053,  # connection aborted
        10054,  # connection reset by peer
        10060,  # connection attempt timed out
        40143,
        40197,
        40501,  # service busy
        40613,  # database unavailable
        41301,
        41302,
        41305,
        41325,
        41839,
        49918,
        49919,
        49920,
    }
)

# Subset where the server guarantees no visible effect before the failure,
# so a data-modifying call may be re-sent
WRITE_RETRY_SAFE_ERROR_NUMBERS = frozenset(
    {1205, 4060, 40501, 40613, 49918, 49919, 49920}
)

_ERROR_NUMBER_IN_MESSAGE = re.compile(r"\((-?\d+)\)")
_TIMEOUT_SQLSTATES = ("HYT00", "HYT01")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GatewayError(Exception):
    """Base of the taxonomy. Message is for logs, safe_message is for callers."""

    default_safe_message = GENERIC_SAFE_MESSAGE

    def __init__(
        self,
        message: Optional[str] = None,
        safe_message: Optional[str] = None,
        *,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.default_safe_message
        super().__init__(self.message)
        self.safe_message = safe_message or self.default_safe_message
        self.correlation_id = correlation_id or get_correlation_id() or new_correlation_id()
        self.timestamp = _utc_now()
        self.details: Dict[str, Any] = dict(details or {})

    def add_detail(self, key: str, value: Any) -> "GatewayError":
        self.details[key] = value
        return self

    def with_correlation_id(self, correlation_id: str) -> "GatewayError":
        self.correlation_id = correlation_id
        return self

    def get_log_message(self) -> str:
        """Full diagnostic line. Never send this to a caller."""
        line = f"[{self.correlation_id}] {type(self).__name__}: {self.message}"
        if self.details:
            rendered = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
            line = f"{line} | {rendered}"
        return line


# =========================
# Validation
# =========================
class ValidationException(GatewayError):
    """Field errors are not sensitive, so the safe message mirrors the message."""

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[Dict[str, List[str]]] = None,
        **kwargs,
    ):
        self._errors: Dict[str, List[str]] = {
            field: list(messages) for field, messages in (errors or {}).items()
        }
        if message is None:
            message = self._summary()
        super().__init__(message, message, **kwargs)

    def _summary(self) -> str:
        total = sum(len(v) for v in self._errors.values())
        return f"Validation failed with {total} error(s) in {len(self._errors)} field(s)"

    @property
    def errors(self) -> Dict[str, List[str]]:
        return {field: list(messages) for field, messages in self._errors.items()}

    @property
    def has_errors(self) -> bool:
        return any(self._errors.values())

    def add_validation_error(self, field: str, error: str) -> "ValidationException":
        self._errors.setdefault(field, []).append(error)
        return self

    def get_formatted_errors(self) -> str:
        """
        Render the error map one field per block.

        Example:
            query:
              - Query cannot be empty
        """
        blocks = []
        for field, messages in self._errors.items():
            lines = [f"{field}:"] + [f"  - {m}" for m in messages]
            blocks.append("\n".join(lines))
        return "\n".join(blocks)


# =========================
# Not found
# =========================
class ResourceNotFoundException(GatewayError):
    def __init__(self, resource_type: str, resource_id: Any = None, **kwargs):
        self.resource_type = resource_type
        self.resource_id = resource_id
        if resource_id is None:
            message = f"{resource_type} was not found"
        else:
            message = f"{resource_type} with ID '{resource_id}' was not found"
        super().__init__(message, f"{resource_type} not found", **kwargs)
        self.add_detail("resource_type", resource_type)
        if resource_id is not None:
            self.add_detail("resource_id", resource_id)


# =========================
# Security
# =========================
class SecurityEventKind(str, Enum):
    AUTHENTICATION_FAILURE = "AuthenticationFailure"
    AUTHORIZATION_FAILURE = "AuthorizationFailure"
    SUSPICIOUS_ACTIVITY = "SuspiciousActivity"
    TOKEN_EXPIRED = "TokenExpired"
    INVALID_TOKEN = "InvalidToken"
    UNAUTHORIZED = "Unauthorized"


SECURITY_SAFE_MESSAGES = {
    SecurityEventKind.AUTHENTICATION_FAILURE: "Authentication failed. Please check your credentials and try again.",
    SecurityEventKind.AUTHORIZATION_FAILURE: "You are not authorized to access this resource.",
    SecurityEventKind.SUSPICIOUS_ACTIVITY: "Your request has been blocked for security reasons.",
    SecurityEventKind.TOKEN_EXPIRED: "Your session has expired. Please sign in again.",
    SecurityEventKind.INVALID_TOKEN: "Invalid authentication token. Please sign in again.",
    SecurityEventKind.UNAUTHORIZED: "Access denied. You do not have permission to perform this action.",
}

# Kinds answered with 401 rather than 403
AUTHENTICATION_KINDS = frozenset(
    {
        SecurityEventKind.AUTHENTICATION_FAILURE,
        SecurityEventKind.TOKEN_EXPIRED,
        SecurityEventKind.INVALID_TOKEN,
    }
)


class SecurityException(GatewayError):
    """Identity, resource and address go to details only, never the safe message."""

    def __init__(
        self,
        message: str,
        kind: SecurityEventKind = SecurityEventKind.UNAUTHORIZED,
        **kwargs,
    ):
        self.kind = SecurityEventKind(kind)
        super().__init__(message, SECURITY_SAFE_MESSAGES[self.kind], **kwargs)
        self.add_detail("security_event", self.kind.value)

    @property
    def is_authentication_failure(self) -> bool:
        return self.kind in AUTHENTICATION_KINDS

    def with_user_id(self, user_id: str) -> "SecurityException":
        self.add_detail("user_id", user_id)
        return self

    def with_resource(self, resource: str) -> "SecurityException":
        self.add_detail("resource", resource)
        return self

    def with_ip_address(self, ip_address: str) -> "SecurityException":
        self.add_detail("ip_address", ip_address)
        return self


# =========================
# Database
# =========================
class DatabaseException(GatewayError):
    default_safe_message = "A database error occurred. Please try again or contact support."

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        error_number: Optional[int] = None,
        **kwargs,
    ):
        kwargs.pop("safe_message", None)
        super().__init__(message, self.default_safe_message, **kwargs)
        self.operation = operation
        self.error_number = error_number
        if operation:
            self.add_detail("operation", operation)
        if error_number is not None:
            self.add_detail("sql_error_number", error_number)

    @property
    def is_transient(self) -> bool:
        return self.error_number in TRANSIENT_ERROR_NUMBERS

    @property
    def is_write_retry_safe(self) -> bool:
        return self.error_number in WRITE_RETRY_SAFE_ERROR_NUMBERS

    @property
    def is_timeout(self) -> bool:
        return self.error_number == TIMEOUT_ERROR_NUMBER


class CircuitOpenException(DatabaseException):
    """Raised without touching the database while the breaker is open."""

    default_safe_message = "The database is temporarily unavailable. Please try again later."

    def __init__(self, message: str, retry_after_seconds: float = 0.0, **kwargs):
        super().__init__(message, operation=kwargs.pop("operation", None), **kwargs)
        self.retry_after_seconds = retry_after_seconds

    @property
    def is_transient(self) -> bool:
        # Never retried by the executor
        return False


# =========================
# Business rules
# =========================
class BusinessRuleException(GatewayError):
    """Rule violations are intentionally user-facing."""

    def __init__(
        self,
        rule_name: str,
        message: str,
        user_message: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, user_message or message, **kwargs)
        self.rule_name = rule_name
        self.add_detail("rule_name", rule_name)

    def with_rule_code(self, code: str) -> "BusinessRuleException":
        self.add_detail("rule_code", code)
        return self


# =========================
# Configuration
# =========================
class ConfigurationException(GatewayError):
    default_safe_message = "The application is not configured correctly. Please contact support."

    def __init__(self, key: str, message: Optional[str] = None, **kwargs):
        self.key = key
        super().__init__(
            message or f"Configuration value '{key}' is missing or invalid",
            self.default_safe_message,
            **kwargs,
        )
        self.add_detail("configuration_key", key)


# =========================
# Transport-level conditions
# =========================
class RateLimitException(GatewayError):
    default_safe_message = "Too many requests. Please try again later."

    def __init__(self, message: str, retry_after_seconds: int = 60, **kwargs):
        super().__init__(message, self.default_safe_message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class ExternalServiceException(GatewayError):
    default_safe_message = "A dependent service is unavailable. Please try again later."

    def __init__(self, service_name: str, message: str, **kwargs):
        super().__init__(message, self.default_safe_message, **kwargs)
        self.service_name = service_name
        self.add_detail("service", service_name)


class OperationCancelledException(GatewayError):
    default_safe_message = "The request was cancelled."

    def __init__(self, message: str = "The operation was cancelled by the caller", **kwargs):
        super().__init__(message, self.default_safe_message, **kwargs)


class TransactionStateError(GatewayError):
    """Illegal transition of a transaction scope, always a programming error."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, GENERIC_SAFE_MESSAGE, **kwargs)


# =========================
# Driver error helpers
# =========================
def extract_error_number(exc: BaseException) -> Optional[int]:
    """
    Pull the SQL Server error number out of a driver exception.

    Looks at, in order: timeout types, a numeric `number` attribute,
    the wrapped DBAPI error (`orig`), timeout SQLSTATEs, and finally the
    first "(NNNN)" group in the driver message.

    Returns:
        The vendor error number, TIMEOUT_ERROR_NUMBER for timeouts, or None.
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TIMEOUT_ERROR_NUMBER

    number = getattr(exc, "number", None)
    if isinstance(number, int):
        return number

    orig = getattr(exc, "orig", None)
    if orig is not None and orig is not exc:
        return extract_error_number(orig)

    args = getattr(exc, "args", ()) or ()
    if args and args[0] in _TIMEOUT_SQLSTATES:
        return TIMEOUT_ERROR_NUMBER

    for arg in args:
        if isinstance(arg, str):
            match = _ERROR_NUMBER_IN_MESSAGE.search(arg)
            if match:
                return int(match.group(1))
    return None


def wrap_database_error(
    exc: BaseException, operation: str, correlation_id: Optional[str] = None
) -> DatabaseException:
    """Translate a driver exception into a DatabaseException, keeping the cause."""
    if isinstance(exc, DatabaseException):
        return exc
    number = extract_error_number(exc)
    wrapped = DatabaseException(
        f"{operation} failed: {exc}",
        operation=operation,
        error_number=number,
        correlation_id=correlation_id,
    )
    wrapped.__cause__ = exc
    return wrapped
