import pytest

from sqlgate.core.exceptions import (
    CircuitOpenException,
    DatabaseException,
    ResourceNotFoundException,
    ValidationException,
)
from sqlgate.core.gateway.backend import BackendResult
from sqlgate.core.gateway.service import ToolService
from sqlgate.core.schemas import Actor, AuditResult, AuditSeverity, SecurityAuditEvent, SecurityEventType

from conftest import FakeBackend, FakeDriverError

AGENT = Actor(user_id="agent-1", display_name="Reporting agent", roles=["agent"])


def test_describe_lists_every_tool(tool_service):
    tools = {tool.tool_id: tool for tool in tool_service.describe()}

    assert set(tools) == {
        "execute_query",
        "execute_command",
        "analyze_table_schema",
        "analyze_query_performance",
        "database_health_check",
    }
    assert tools["execute_command"].access == "read_write"
    query = {p.name: p for p in tools["execute_query"].parameters}
    assert query["Query"].required
    assert query["Timeout"].sql_type == "INT"


@pytest.mark.asyncio
async def test_read_tool_returns_rows(tool_service, backend, recorder, sink):
    response = await tool_service.invoke(
        "execute_query", {"Database": "Sales", "Query": "SELECT TOP 2 Id, Name FROM dbo.Users"}, AGENT
    )
    await recorder.flush()

    assert response.row_count == 2
    assert response.rows[0] == {"Id": 1, "Name": "alpha"}
    assert response.output_parameters == {"ExecutionTimeMs": 4}
    assert backend.sessions == []
    assert backend.calls[0].timeout_seconds == 30
    assert len(sink.events) == 1


@pytest.mark.asyncio
async def test_blocked_command_never_reaches_database(tool_service, backend, recorder, sink):
    """Sanitizer block: security event, validation error, no procedure call"""
    with pytest.raises(ValidationException) as exc_info:
        await tool_service.invoke(
            "execute_query",
            {"Database": "Sales", "Query": "SELECT * FROM Users; DROP TABLE Users"},
            AGENT,
            ip_address="10.0.0.8",
        )
    await recorder.flush()

    assert backend.calls == []
    assert exc_info.value.errors["Query"] == [
        "Command rejected by policy: statement_terminator, forbidden_verb:DROP"
    ]

    assert len(sink.events) == 1
    event = sink.events[0]
    assert isinstance(event, SecurityAuditEvent)
    assert event.security_event_type == SecurityEventType.SUSPICIOUS_ACTIVITY
    assert event.result == AuditResult.FAILURE
    assert event.severity == AuditSeverity.CRITICAL
    assert event.threat_indicators == ["statement_terminator", "forbidden_verb:DROP"]
    assert event.risk_score == pytest.approx(0.7)
    assert event.ip_address == "10.0.0.8"


@pytest.mark.asyncio
async def test_unknown_tool(tool_service, backend):
    with pytest.raises(ResourceNotFoundException):
        await tool_service.invoke("drop_everything", {}, AGENT)

    assert backend.calls == []


@pytest.mark.asyncio
async def test_write_tool_runs_in_transaction(make_executor, registry, recorder, sink):
    backend = FakeBackend(default=BackendResult(rows_affected=4, output_values={"AffectedRows": 4}))
    service = ToolService(registry, make_executor(backend), recorder)

    response = await service.invoke(
        "execute_command",
        {"Database": "Sales", "Command": "DELETE FROM dbo.Carts WHERE CreatedAt < '2020-01-01'"},
        AGENT,
    )
    await recorder.flush()

    assert response.rows_affected == 4
    assert len(backend.sessions) == 1
    assert backend.sessions[0].committed
    assert sink.events[0].action == "ExecuteCommand"
    assert sink.events[0].compliance is True


@pytest.mark.asyncio
async def test_write_tool_without_transaction(make_executor, registry, recorder):
    backend = FakeBackend(default=BackendResult(rows_affected=1))
    service = ToolService(registry, make_executor(backend), recorder)

    await service.invoke(
        "execute_command",
        {"Database": "Sales", "Command": "INSERT INTO dbo.Tags (Name) VALUES ('new')"},
        AGENT,
        use_transaction=False,
    )

    assert backend.sessions == []
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_write_failure_rolls_back(make_executor, registry, recorder, sink):
    backend = FakeBackend([FakeDriverError(547, "conflicted with the FOREIGN KEY constraint")])
    service = ToolService(registry, make_executor(backend), recorder)

    with pytest.raises(DatabaseException):
        await service.invoke(
            "execute_command",
            {"Database": "Sales", "Command": "DELETE FROM dbo.Users WHERE Id = 1"},
            AGENT,
        )
    await recorder.flush()

    assert backend.sessions[0].rolled_back
    assert not backend.sessions[0].committed
    assert sink.events[0].result == AuditResult.FAILURE
    assert "FOREIGN KEY" in sink.events[0].error_message


@pytest.mark.asyncio
async def test_session_open_failure_audited_and_breaker_guarded(make_executor, registry, recorder, sink):
    """A write whose connection cannot be opened still leaves a trail and trips the breaker"""
    backend = FakeBackend(open_error=FakeDriverError(10054, "connection reset by peer"))
    service = ToolService(registry, make_executor(backend, max_retries=0, threshold=2), recorder)
    arguments = {"Database": "Sales", "Command": "DELETE FROM dbo.Users WHERE Id = 1"}

    for _ in range(2):
        with pytest.raises(DatabaseException) as exc_info:
            await service.invoke("execute_command", arguments, AGENT)
        assert exc_info.value.error_number == 10054
    with pytest.raises(CircuitOpenException):
        await service.invoke("execute_command", arguments, AGENT)
    await recorder.flush()

    assert backend.open_attempts == 2
    assert backend.calls == []
    assert [e.action for e in sink.events] == ["BeginTransaction"] * 3
    assert all(e.result == AuditResult.FAILURE for e in sink.events)
    assert sink.events[0].error_code == "10054"
    assert sink.events[0].user_id == "agent-1"


@pytest.mark.asyncio
async def test_transient_open_failure_retried(make_executor, registry, recorder, sink):
    class FlakyOpenBackend(FakeBackend):
        def __init__(self):
            super().__init__(default=BackendResult(rows_affected=1))
            self.failures = [FakeDriverError(4060, "Cannot open database")]

        async def open_session(self):
            if self.failures:
                raise self.failures.pop(0)
            return await super().open_session()

    backend = FlakyOpenBackend()
    service = ToolService(registry, make_executor(backend), recorder)

    response = await service.invoke(
        "execute_command", {"Database": "Sales", "Command": "DELETE FROM dbo.Users WHERE Id = 1"}, AGENT
    )
    await recorder.flush()

    assert response.rows_affected == 1
    assert backend.sessions[0].committed
    assert [e.action for e in sink.events] == ["ExecuteCommand"]

@pytest.mark.asyncio
async def test_bytes_rendered_as_hex(make_executor, registry, recorder):
    backend = FakeBackend(default=BackendResult(columns=["Sid"], rows=[{"Sid": b"\x01\xff"}]))
    service = ToolService(registry, make_executor(backend), recorder)

    response = await service.invoke("database_health_check", {}, AGENT)

    assert response.rows == [{"Sid": "01ff"}]


@pytest.mark.asyncio
async def test_tool_default_timeout_used(tool_service, backend):
    await tool_service.invoke("analyze_query_performance", {"Query": "SELECT 1", "DatabaseName": "Sales"}, AGENT)

    assert backend.calls[0].timeout_seconds == 120
