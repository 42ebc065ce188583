from typing import List

from fastapi import APIRouter, Request, status

from sqlgate.api.dependencies import tool_service_dep
from sqlgate.core import schemas
from sqlgate.core.security import actor_dep

router = APIRouter(prefix="/tools", tags=["Tools"])


@router.get("", response_model=List[schemas.ToolDescription])
async def list_tools(actor: actor_dep, service: tool_service_dep):
    return service.describe()


@router.post(
    "/{tool_id}/invoke",
    status_code=status.HTTP_200_OK,
    response_model=schemas.ToolInvocationResponse,
)
async def invoke_tool(
    tool_id: str,
    payload: schemas.ToolInvocationRequest,
    request: Request,
    actor: actor_dep,
    service: tool_service_dep,
):
    """
    Run a registered tool. The caller names a tool, never a procedure:
    the registry decides which procedure runs and which parameters it accepts.
    """
    return await service.invoke(
        tool_id,
        payload.arguments,
        actor,
        use_transaction=payload.use_transaction,
        timeout=payload.timeout_seconds,
        ip_address=request.client.host if request.client else None,
    )
