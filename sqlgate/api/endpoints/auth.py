from fastapi import APIRouter, Request, status

from sqlgate.api.dependencies import api_key_store_dep, recorder_dep
from sqlgate.core import schemas
from sqlgate.core.correlation import ensure_correlation_id
from sqlgate.core.exceptions import SecurityEventKind, SecurityException
from sqlgate.core.security import token_for_actor

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/token", status_code=status.HTTP_200_OK, response_model=schemas.Token)
async def issue_token(
    credentials: schemas.TokenRequest,
    request: Request,
    key_store: api_key_store_dep,
    recorder: recorder_dep,
):
    """Exchange an API key for a short-lived bearer token."""
    ip_address = request.client.host if request.client else None
    actor = key_store.authenticate(credentials.key_name, credentials.api_key)

    if actor is None:
        recorder.record(
            schemas.SecurityAuditEvent(
                security_event_type=schemas.SecurityEventType.LOGIN_FAILURE,
                correlation_id=ensure_correlation_id(),
                user_id=credentials.key_name,
                ip_address=ip_address,
                user_agent=request.headers.get("user-agent"),
                action="IssueToken",
                authentication_method="ApiKey",
                risk_score=0.3,
            )
        )
        raise SecurityException(
            f"API key authentication failed for key {credentials.key_name}",
            SecurityEventKind.AUTHENTICATION_FAILURE,
        ).with_ip_address(ip_address or "unknown")

    recorder.record(
        schemas.SecurityAuditEvent(
            security_event_type=schemas.SecurityEventType.LOGIN_SUCCESS,
            correlation_id=ensure_correlation_id(),
            user_id=actor.user_id,
            user_name=actor.display_name,
            user_roles=list(actor.roles),
            ip_address=ip_address,
            user_agent=request.headers.get("user-agent"),
            action="IssueToken",
            authentication_method="ApiKey",
        )
    )
    return schemas.Token(access_token=token_for_actor(actor))
