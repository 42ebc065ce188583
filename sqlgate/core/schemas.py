import os
import socket
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

APPLICATION_VERSION = "0.1.0"
SYSTEM_USER = "SYSTEM"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# Enums
# =========================
class AuditResult(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    PARTIAL_SUCCESS = "PartialSuccess"


class AuditSeverity(str, Enum):
    VERBOSE = "Verbose"
    INFORMATION = "Information"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"


class DatabaseOperation(str, Enum):
    CREATE = "Create"
    READ = "Read"
    UPDATE = "Update"
    DELETE = "Delete"
    EXECUTE = "Execute"


class AuditReportType(str, Enum):
    SUMMARY = "Summary"
    USER_ACTIVITY = "UserActivity"
    SECURITY_EVENTS = "SecurityEvents"
    FAILURE_ANALYSIS = "FailureAnalysis"
    RESOURCE_USAGE = "ResourceUsage"


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LoginSuccess"
    LOGIN_FAILURE = "LoginFailure"
    LOGOUT = "Logout"
    UNAUTHORIZED_ACCESS = "UnauthorizedAccess"
    PERMISSION_DENIED = "PermissionDenied"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_REFRESHED = "TokenRefreshed"
    PASSWORD_CHANGED = "PasswordChanged"
    PASSWORD_RESET_REQUESTED = "PasswordResetRequested"
    ACCOUNT_LOCKED = "AccountLocked"
    ACCOUNT_UNLOCKED = "AccountUnlocked"
    SUSPICIOUS_ACTIVITY = "SuspiciousActivity"
    ROLE_CHANGED = "RoleChanged"
    PERMISSION_GRANTED = "PermissionGranted"
    PERMISSION_REVOKED = "PermissionRevoked"


_SECURITY_FAILURES = {
    SecurityEventType.LOGIN_FAILURE,
    SecurityEventType.UNAUTHORIZED_ACCESS,
    SecurityEventType.PERMISSION_DENIED,
    SecurityEventType.TOKEN_EXPIRED,
    SecurityEventType.ACCOUNT_LOCKED,
    SecurityEventType.SUSPICIOUS_ACTIVITY,
}


# =========================
# ACTOR
# =========================
class Actor(BaseModel):
    """Authenticated caller resolved from a bearer token."""

    user_id: str = Field(min_length=1)
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def has_any_role(self, roles) -> bool:
        return any(role in self.roles for role in roles)


# =========================
# AUDIT EVENTS
# =========================
class AuditEvent(BaseModel):
    """
    One immutable record of an attempted operation. Frozen once queued.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = Field(min_length=1, max_length=100)
    event_sub_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    correlation_id: str = Field(min_length=1)

    user_id: str = SYSTEM_USER
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_roles: List[str] = Field(default_factory=list)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None

    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None

    action: str = Field(min_length=1)
    result: AuditResult
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    additional_data: Dict[str, Any] = Field(default_factory=dict)

    severity: AuditSeverity = AuditSeverity.INFORMATION
    # Compliance events fall under the long retention window
    compliance: bool = False

    machine_name: str = Field(default_factory=socket.gethostname)
    process_id: int = Field(default_factory=os.getpid)
    thread_id: int = Field(default_factory=threading.get_ident)
    application_version: str = APPLICATION_VERSION

    model_config = ConfigDict(frozen=True)

    def to_log_string(self) -> str:
        return (
            f"[{self.timestamp:%Y-%m-%d %H:%M:%S}] {self.event_type} - "
            f"User: {self.user_id} - Action: {self.action} - "
            f"Result: {self.result.value} - CorrelationId: {self.correlation_id}"
        )


class DatabaseAuditEvent(AuditEvent):
    operation: DatabaseOperation
    entity_name: Optional[str] = None
    entity_id: Optional[str] = None
    stored_procedure_name: Optional[str] = None
    # Already rendered through StoredProcedureParameter.to_log_string
    parameters: Dict[str, str] = Field(default_factory=dict)
    before_data: Optional[Dict[str, Any]] = None
    after_data: Optional[Dict[str, Any]] = None
    rows_affected: Optional[int] = None
    success: bool
    execution_time_ms: int = 0

    @model_validator(mode="before")
    @classmethod
    def derive_classification(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("operation") is None:
            return data
        data = dict(data)
        operation = DatabaseOperation(data["operation"])
        success = bool(data.get("success"))

        data.setdefault("event_type", f"Database.{operation.value}")
        data.setdefault("result", AuditResult.SUCCESS if success else AuditResult.FAILURE)
        if "severity" not in data:
            if not success:
                data["severity"] = AuditSeverity.ERROR
            elif operation == DatabaseOperation.DELETE:
                data["severity"] = AuditSeverity.WARNING
            elif operation == DatabaseOperation.READ:
                data["severity"] = AuditSeverity.VERBOSE
            else:
                data["severity"] = AuditSeverity.INFORMATION
        # Reads are routine, anything that can change data is compliance
        data.setdefault("compliance", operation != DatabaseOperation.READ)
        data.setdefault("duration_ms", data.get("execution_time_ms"))
        return data


class SecurityAuditEvent(AuditEvent):
    security_event_type: SecurityEventType
    resource: Optional[str] = None
    authentication_method: Optional[str] = None
    required_permissions: List[str] = Field(default_factory=list)
    user_permissions: List[str] = Field(default_factory=list)
    risk_score: float = Field(default=0.0, ge=0.0, le=1.0)
    threat_indicators: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def derive_classification(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("security_event_type") is None:
            return data
        data = dict(data)
        kind = SecurityEventType(data["security_event_type"])

        data.setdefault("event_type", f"Security.{kind.value}")
        data.setdefault(
            "result",
            AuditResult.FAILURE if kind in _SECURITY_FAILURES else AuditResult.SUCCESS,
        )
        if "severity" not in data:
            if kind == SecurityEventType.SUSPICIOUS_ACTIVITY:
                data["severity"] = AuditSeverity.CRITICAL
            elif kind in _SECURITY_FAILURES:
                data["severity"] = AuditSeverity.WARNING
            else:
                data["severity"] = AuditSeverity.INFORMATION
        data.setdefault("compliance", True)
        return data

    def get_missing_permissions(self) -> List[str]:
        granted = set(self.user_permissions)
        return [p for p in self.required_permissions if p not in granted]


class FieldChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None

    model_config = ConfigDict(frozen=True)


# =========================
# AUDIT QUERY
# =========================
class AuditQuery(BaseModel):
    """Filters for the audit read path. Out-of-range paging is clamped, not rejected."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    event_type: Optional[str] = None
    user_id: Optional[str] = None
    correlation_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[str] = None
    result: Optional[AuditResult] = None
    page: int = 1
    page_size: int = 100
    sort_by: str = "Timestamp"
    sort_direction: str = "DESC"


class AuditEventOut(BaseModel):
    event_id: str
    event_type: str
    event_sub_type: Optional[str] = None
    timestamp: datetime
    correlation_id: str
    user_id: str
    user_name: Optional[str] = None
    ip_address: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    resource_name: Optional[str] = None
    action: str
    result: AuditResult
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    severity: AuditSeverity
    additional_data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class AuditPage(BaseModel):
    items: List[AuditEventOut]
    total: int
    page: int
    page_size: int
    start_date: datetime
    end_date: datetime


class AuditReport(BaseModel):
    """Aggregated audit statistics; each section is a list of result rows."""

    report_type: AuditReportType
    start_date: datetime
    end_date: datetime
    user_id: Optional[str] = None
    top_n: int
    sections: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class RetentionSweepRequest(BaseModel):
    dry_run: bool = False
    batch_size: int = Field(default=1000, ge=1, le=100000)
    max_execution_seconds: int = Field(default=300, ge=1, le=3600)


class RetentionSweepResult(BaseModel):
    compliance_cutoff: datetime
    routine_cutoff: datetime
    matched: int
    deleted: int
    dry_run: bool
    timed_out: bool = False


# =========================
# TOOLS
# =========================
class ToolParameterOut(BaseModel):
    name: str
    sql_type: str
    required: bool
    description: Optional[str] = None


class ToolDescription(BaseModel):
    tool_id: str
    description: str
    access: str
    parameters: List[ToolParameterOut]


class ToolInvocationRequest(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict)
    # None means the tool's default: transactional for write tools
    use_transaction: Optional[bool] = None
    timeout_seconds: Optional[int] = Field(default=None, ge=1, le=300)


class ToolInvocationResponse(BaseModel):
    tool_id: str
    correlation_id: str
    columns: List[str]
    rows: List[Dict[str, Any]]
    row_count: int
    rows_affected: Optional[int] = None
    output_parameters: Dict[str, Any] = Field(default_factory=dict)
    return_value: Optional[int] = None
    execution_time_ms: int
    warnings: List[str] = Field(default_factory=list)


# =========================
# AUTH
# =========================
class TokenRequest(BaseModel):
    key_name: str = Field(min_length=1, max_length=128)
    api_key: str = Field(min_length=1, max_length=512)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# =========================
# ERRORS
# =========================
class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    correlation_id: str
    message: str
    timestamp: datetime
    errors: List[ErrorDetail] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    audit_queue_depth: int
    circuit_state: str
