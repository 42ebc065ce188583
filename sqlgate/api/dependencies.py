from typing import Annotated

from fastapi import Depends, Request

from sqlgate.core.config import settings
from sqlgate.core.correlation import ensure_correlation_id
from sqlgate.core.exceptions import ConfigurationException, SecurityEventKind, SecurityException
from sqlgate.core.gateway.audit import AuditRecorder, RetentionPolicy, SqlAuditStore
from sqlgate.core.gateway.secrets import ApiKeyStore
from sqlgate.core.gateway.service import ToolService
from sqlgate.core.schemas import Actor, SecurityAuditEvent, SecurityEventType
from sqlgate.core.security import actor_dep


# Services are built once in the lifespan and parked on app.state
def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ConfigurationException(name, f"{name} was not initialised at startup")
    return service


def get_tool_service(request: Request) -> ToolService:
    return _from_state(request, "tool_service")


def get_audit_store(request: Request) -> SqlAuditStore:
    return _from_state(request, "audit_store")


def get_recorder(request: Request) -> AuditRecorder:
    return _from_state(request, "recorder")


def get_api_key_store(request: Request) -> ApiKeyStore:
    return _from_state(request, "api_key_store")


def get_retention_policy(request: Request) -> RetentionPolicy:
    return _from_state(request, "retention_policy")


tool_service_dep = Annotated[ToolService, Depends(get_tool_service)]
audit_store_dep = Annotated[SqlAuditStore, Depends(get_audit_store)]
recorder_dep = Annotated[AuditRecorder, Depends(get_recorder)]
api_key_store_dep = Annotated[ApiKeyStore, Depends(get_api_key_store)]
retention_policy_dep = Annotated[RetentionPolicy, Depends(get_retention_policy)]


async def require_elevated(request: Request, actor: actor_dep, recorder: recorder_dep) -> Actor:
    """Auditor/admin only. A refusal is itself a security audit event."""
    if actor.has_any_role(settings.AUDIT_ELEVATED_ROLES):
        return actor

    recorder.record(
        SecurityAuditEvent(
            security_event_type=SecurityEventType.PERMISSION_DENIED,
            correlation_id=ensure_correlation_id(),
            user_id=actor.user_id,
            user_roles=list(actor.roles),
            ip_address=request.client.host if request.client else None,
            action="AccessElevatedEndpoint",
            resource=request.url.path,
            required_permissions=list(settings.AUDIT_ELEVATED_ROLES),
            user_permissions=list(actor.roles),
        )
    )
    raise SecurityException(
        f"User {actor.user_id} lacks an elevated role for {request.url.path}",
        SecurityEventKind.AUTHORIZATION_FAILURE,
    ).with_user_id(actor.user_id).with_resource(request.url.path)


elevated_dep = Annotated[Actor, Depends(require_elevated)]
