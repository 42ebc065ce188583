import pytest
from hypothesis import assume, given, strategies as st

from sqlgate.core.correlation import bind_correlation_id, reset_correlation_id
from sqlgate.core.exceptions import (
    GENERIC_SAFE_MESSAGE,
    SECURITY_SAFE_MESSAGES,
    BusinessRuleException,
    CircuitOpenException,
    ConfigurationException,
    DatabaseException,
    ExternalServiceException,
    GatewayError,
    OperationCancelledException,
    RateLimitException,
    ResourceNotFoundException,
    SecurityEventKind,
    SecurityException,
    ValidationException,
    extract_error_number,
    wrap_database_error,
)
from conftest import FakeDriverError


def test_security_safe_message_hides_identity():
    exc = SecurityException(
        "User jane.doe@example.com from 10.1.2.3 tried to read dbo.Salaries",
        kind=SecurityEventKind.AUTHORIZATION_FAILURE,
    )

    assert exc.safe_message == "You are not authorized to access this resource."
    assert "jane.doe" not in exc.safe_message
    assert "10.1.2.3" not in exc.safe_message
    assert "jane.doe@example.com" in exc.get_log_message()


@pytest.mark.parametrize("kind", list(SecurityEventKind))
def test_every_security_kind_has_fixed_safe_message(kind):
    exc = SecurityException("diagnostic", kind=kind)

    assert exc.safe_message == SECURITY_SAFE_MESSAGES[kind]


def test_authentication_kinds():
    assert SecurityException("x", kind=SecurityEventKind.TOKEN_EXPIRED).is_authentication_failure
    assert SecurityException("x", kind=SecurityEventKind.INVALID_TOKEN).is_authentication_failure
    assert not SecurityException("x", kind=SecurityEventKind.AUTHORIZATION_FAILURE).is_authentication_failure


def test_security_fluent_details_stay_out_of_safe_message():
    exc = (
        SecurityException("denied", kind=SecurityEventKind.AUTHORIZATION_FAILURE)
        .with_user_id("agent-7")
        .with_resource("dbo.sp_ExecuteCommand")
        .with_ip_address("192.168.0.9")
    )

    assert exc.details["user_id"] == "agent-7"
    assert exc.details["resource"] == "dbo.sp_ExecuteCommand"
    assert exc.details["ip_address"] == "192.168.0.9"
    assert "agent-7" not in exc.safe_message


def test_database_safe_message_is_generic():
    exc = DatabaseException("Login failed for user 'sa' on SQLPROD01", operation="Open", error_number=18456)

    assert exc.safe_message == "A database error occurred. Please try again or contact support."
    assert exc.details["sql_error_number"] == 18456
    assert exc.details["operation"] == "Open"


def test_not_found_names_type_only():
    exc = ResourceNotFoundException("Tool", "drop_everything")

    assert exc.safe_message == "Tool not found"
    assert exc.message == "Tool with ID 'drop_everything' was not found"


def test_other_kinds_safe_messages():
    assert ConfigurationException("SECRET_KEY").safe_message.startswith("The application is not configured")
    assert RateLimitException("quota exceeded for agent-1").safe_message == "Too many requests. Please try again later."
    assert "agent" not in ExternalServiceException("vault", "vault at 10.0.0.1 down").safe_message
    assert OperationCancelledException().safe_message == "The request was cancelled."
    assert GatewayError("boom").safe_message == GENERIC_SAFE_MESSAGE


def test_business_rule_is_user_facing():
    exc = BusinessRuleException("MaxRows", "Requested 50000 rows", "Too many rows requested").with_rule_code("BR-7")

    assert exc.safe_message == "Too many rows requested"
    assert exc.details["rule_code"] == "BR-7"


# =========================
# Validation
# =========================
def test_validation_errors_and_summary():
    exc = ValidationException(errors={"query": ["Query cannot be empty"], "timeout": ["Out of range", "Not an integer"]})

    assert exc.has_errors
    assert exc.message == "Validation failed with 3 error(s) in 2 field(s)"
    assert exc.safe_message == exc.message
    assert exc.get_formatted_errors() == (
        "query:\n  - Query cannot be empty\ntimeout:\n  - Out of range\n  - Not an integer"
    )


def test_validation_add_error_is_fluent():
    exc = ValidationException("Bad request").add_validation_error("database", "Required")

    assert exc.errors == {"database": ["Required"]}
    assert not ValidationException("Bad request").has_errors


# =========================
# Correlation
# =========================
def test_correlation_id_taken_from_context():
    token = bind_correlation_id("6f1c2a4e-9b7d-4c1e-8a3f-2d5e6f7a8b9c")
    try:
        exc = GatewayError("boom")
    finally:
        reset_correlation_id(token)

    assert exc.correlation_id == "6f1c2a4e-9b7d-4c1e-8a3f-2d5e6f7a8b9c"


def test_correlation_id_generated_when_absent():
    assert GatewayError("boom").correlation_id
    assert GatewayError("a").correlation_id != GatewayError("b").correlation_id


@given(secret=st.text(min_size=4, max_size=60))
def test_safe_messages_never_echo_diagnostics(secret):
    """Whatever lands in the diagnostic message never reaches the caller"""
    assume(secret.strip())
    errors = [
        SecurityException(f"denied {secret}", kind=SecurityEventKind.AUTHORIZATION_FAILURE),
        DatabaseException(f"failed {secret}", error_number=50000),
        ConfigurationException("KEY", f"bad {secret}"),
        ExternalServiceException("svc", f"down {secret}"),
        GatewayError(f"boom {secret}"),
    ]
    for exc in errors:
        assume(secret not in exc.safe_message)
        assert secret in exc.message
        assert secret not in exc.safe_message


# =========================
# Driver error numbers
# =========================
def test_extract_error_number_from_attribute():
    assert extract_error_number(FakeDriverError(1205)) == 1205


def test_extract_error_number_from_message():
    exc = Exception("42000", "[Microsoft][ODBC Driver 18] Transaction was deadlocked (1205) (SQLExecDirectW)")

    assert extract_error_number(exc) == 1205


def test_extract_error_number_timeouts():
    assert extract_error_number(TimeoutError()) == -2
    assert extract_error_number(Exception("HYT00", "Query timeout expired")) == -2


def test_extract_error_number_unknown():
    assert extract_error_number(ValueError("nothing here")) is None


@pytest.mark.parametrize("number", [-2, 1205, 40501, 40613, 10054])
def test_transient_numbers(number):
    assert DatabaseException("x", error_number=number).is_transient


@pytest.mark.parametrize("number", [2601, 2627, 547, 18456, None])
def test_non_transient_numbers(number):
    assert not DatabaseException("x", error_number=number).is_transient


def test_timeout_is_transient_but_not_write_safe():
    exc = DatabaseException("timeout", error_number=-2)

    assert exc.is_timeout
    assert exc.is_transient
    assert not exc.is_write_retry_safe
    assert DatabaseException("deadlock", error_number=1205).is_write_retry_safe


def test_circuit_open_is_not_transient():
    exc = CircuitOpenException("breaker open", retry_after_seconds=12.5)

    assert not exc.is_transient
    assert exc.retry_after_seconds == 12.5
    assert exc.safe_message == "The database is temporarily unavailable. Please try again later."


def test_wrap_database_error_keeps_cause():
    cause = FakeDriverError(1205, "deadlocked on lock resources")

    wrapped = wrap_database_error(cause, "ExecuteQuery")

    assert wrapped.error_number == 1205
    assert wrapped.__cause__ is cause
    assert "deadlocked" in wrapped.message
    assert wrap_database_error(wrapped, "Other") is wrapped
