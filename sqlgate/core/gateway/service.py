import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlgate.core.correlation import ensure_correlation_id
from sqlgate.core.exceptions import ValidationException
from sqlgate.core.gateway.audit import AuditRecorder
from sqlgate.core.gateway.executor import StoredProcedureExecutor, StoredProcedureResult
from sqlgate.core.gateway.registry import (
    BoundArguments,
    ToolDefinition,
    ToolId,
    ToolRegistry,
    bind_parameters,
)
from sqlgate.core.schemas import (
    Actor,
    SecurityAuditEvent,
    SecurityEventType,
    ToolDescription,
    ToolInvocationResponse,
    ToolParameterOut,
)

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


class ToolService:
    """validate -> execute (optionally in a transaction scope) -> result"""

    def __init__(self, registry: ToolRegistry, executor: StoredProcedureExecutor, recorder: AuditRecorder):
        self._registry = registry
        self._executor = executor
        self._recorder = recorder

    def describe(self) -> List[ToolDescription]:
        return [
            ToolDescription(
                tool_id=definition.tool_id.value,
                description=definition.description,
                access=definition.access.value,
                parameters=[
                    ToolParameterOut(
                        name=spec.name,
                        sql_type=spec.sql_type,
                        required=spec.required,
                        description=spec.description,
                    )
                    for spec in definition.parameters
                ],
            )
            for definition in self._registry.definitions()
        ]

    def _reject(
        self,
        definition: ToolDefinition,
        bound: BoundArguments,
        actor: Actor,
        ip_address: Optional[str],
    ) -> ValidationException:
        blocked = bound.blocked
        indicators: List[str] = []
        for verdict in blocked.values():
            indicators += [reason for reason in verdict.reasons if reason not in indicators]

        correlation_id = ensure_correlation_id()
        self._recorder.record(
            SecurityAuditEvent(
                security_event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
                correlation_id=correlation_id,
                user_id=actor.user_id,
                user_name=actor.display_name,
                user_roles=list(actor.roles),
                ip_address=ip_address,
                action="ClassifyCommand",
                resource=definition.tool_id.value,
                resource_type="Tool",
                risk_score=min(1.0, 0.5 + 0.1 * len(indicators)),
                threat_indicators=indicators,
                error_message=f"Command text blocked for {definition.procedure}",
            )
        )
        logger.warning(
            f"Blocked {definition.tool_id.value} for user {actor.user_id}: {', '.join(indicators)}"
        )
        return ValidationException(
            errors={
                name: [f"Command rejected by policy: {', '.join(verdict.reasons)}"]
                for name, verdict in blocked.items()
            }
        )

    async def invoke(
        self,
        tool_id: Union[str, ToolId],
        arguments: Mapping[str, Any],
        actor: Actor,
        *,
        use_transaction: Optional[bool] = None,
        timeout: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        ip_address: Optional[str] = None,
    ) -> ToolInvocationResponse:
        """
        Run one tool call end to end.

        Write tools run inside a TransactionScope unless use_transaction is False.
        A sanitizer block records a SuspiciousActivity security event and
        raises ValidationException; the procedure is never called.
        """
        definition = self._registry.resolve(tool_id)
        bound = bind_parameters(definition, arguments)
        if bound.blocked:
            raise self._reject(definition, bound, actor, ip_address)

        timeout = timeout or definition.default_timeout
        if definition.read_only:
            result = await self._executor.execute(
                definition.procedure,
                bound.parameters,
                actor=actor,
                timeout=timeout,
                cancel_event=cancel_event,
                read_only=definition.idempotent,
                ip_address=ip_address,
            )
        elif use_transaction is False:
            result = await self._executor.execute_non_query(
                definition.procedure,
                bound.parameters,
                actor=actor,
                timeout=timeout,
                cancel_event=cancel_event,
                ip_address=ip_address,
            )
        else:
            result = await self._executor.execute_in_transaction(
                definition.procedure,
                bound.parameters,
                actor=actor,
                timeout=timeout,
                cancel_event=cancel_event,
                ip_address=ip_address,
            )

        return self._to_response(definition, result, bound.warnings)

    def _to_response(
        self, definition: ToolDefinition, result: StoredProcedureResult, warnings: List[str]
    ) -> ToolInvocationResponse:
        rows: List[Dict[str, Any]] = [
            {column: _plain(value) for column, value in row.items()} for row in result.rows
        ]
        return ToolInvocationResponse(
            tool_id=definition.tool_id.value,
            correlation_id=result.correlation_id,
            columns=result.columns,
            rows=rows,
            row_count=result.row_count,
            rows_affected=result.rows_affected,
            output_parameters={k: _plain(v) for k, v in result.output_parameters.items()},
            return_value=result.return_value,
            execution_time_ms=result.execution_time_ms,
            warnings=warnings,
        )
