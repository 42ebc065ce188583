import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from sqlgate.core.exceptions import ValidationException

# -----------------------------------------------------------------------------
# BACKEND MODULE - Stored procedure calling convention
# Purpose: Typed, directioned parameters, the EXEC batch that binds them, and the
# SQL Server backend that runs it and returns rows, output values and return value
# Why: The executor only ever talks to the ProcedureBackend protocol, so tests
# can swap in a fake and production uses SqlServerBackend
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "dbo"
LOG_VALUE_MAX_LENGTH = 500
REDACTED = "***REDACTED***"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")
_SQL_TYPE = re.compile(
    r"^(?:BIT|TINYINT|SMALLINT|INT|BIGINT|FLOAT|REAL|MONEY|DATE|TIME|DATETIME|DATETIME2"
    r"|DATETIMEOFFSET|UNIQUEIDENTIFIER|XML"
    r"|(?:NVARCHAR|VARCHAR|NCHAR|CHAR|VARBINARY)\s*\(\s*(?:\d{1,4}|MAX)\s*\)"
    r"|(?:DECIMAL|NUMERIC)(?:\s*\(\s*\d{1,2}\s*(?:,\s*\d{1,2}\s*)?\))?)$",
    re.IGNORECASE,
)

RETURN_VALUE_COLUMN = "__return_value"


class ParameterDirection(str, Enum):
    INPUT = "Input"
    OUTPUT = "Output"
    INPUT_OUTPUT = "InputOutput"
    RETURN_VALUE = "ReturnValue"


@dataclass(frozen=True)
class StoredProcedureParameter:
    """
    One bound parameter. Name is stored without the @ prefix.

    Example:
        StoredProcedureParameter.input("Query", "SELECT 1", "NVARCHAR(MAX)")
        StoredProcedureParameter.output("ExecutionTimeMs", "INT")
    """

    name: str
    value: Any = None
    direction: ParameterDirection = ParameterDirection.INPUT
    sql_type: str = "NVARCHAR(MAX)"
    sensitive: bool = False

    def __post_init__(self):
        object.__setattr__(self, "name", self.name.lstrip("@"))

    @classmethod
    def input(cls, name: str, value: Any, sql_type: str = "NVARCHAR(MAX)", sensitive: bool = False):
        return cls(name, value, ParameterDirection.INPUT, sql_type, sensitive)

    @classmethod
    def output(cls, name: str, sql_type: str = "INT"):
        return cls(name, None, ParameterDirection.OUTPUT, sql_type)

    @classmethod
    def input_output(cls, name: str, value: Any, sql_type: str = "INT"):
        return cls(name, value, ParameterDirection.INPUT_OUTPUT, sql_type)

    @classmethod
    def return_value(cls, name: str = "ReturnValue"):
        return cls(name, None, ParameterDirection.RETURN_VALUE, "INT")

    @property
    def is_output(self) -> bool:
        return self.direction in (ParameterDirection.OUTPUT, ParameterDirection.INPUT_OUTPUT)

    def to_log_string(self) -> str:
        if self.sensitive:
            shown = REDACTED
        elif self.value is None:
            shown = "NULL"
        else:
            shown = str(self.value)
            if len(shown) > LOG_VALUE_MAX_LENGTH:
                shown = shown[:LOG_VALUE_MAX_LENGTH] + "...(truncated)"
        return f"{self.name}={shown} (Type: {self.sql_type}, Direction: {self.direction.value})"


@dataclass(frozen=True)
class ProcedureCall:
    schema: str
    name: str
    parameters: Tuple[StoredProcedureParameter, ...] = ()
    timeout_seconds: int = 30

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass
class BackendResult:
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    rows_affected: Optional[int] = None
    output_values: Dict[str, Any] = field(default_factory=dict)
    return_value: Optional[int] = None


class BackendSession(Protocol):
    """A single connection with an explicit transaction, used by TransactionScope."""

    async def begin(self) -> None: ...

    async def call(self, call: ProcedureCall) -> BackendResult: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def close(self) -> None: ...


class ProcedureBackend(Protocol):
    async def call(self, call: ProcedureCall) -> BackendResult:
        """Run one call on its own connection and commit it."""
        ...

    async def open_session(self) -> BackendSession: ...


# ===== Identifier helpers =====


def split_procedure_name(procedure_name: str) -> Tuple[str, str]:
    """
    "dbo.sp_ExecuteQuery" -> ("dbo", "sp_ExecuteQuery"); bare names get dbo.

    Raises:
        ValidationException: when either part is not a plain identifier.
    """
    parts = procedure_name.replace("[", "").replace("]", "").split(".")
    if len(parts) == 1:
        schema, name = DEFAULT_SCHEMA, parts[0]
    elif len(parts) == 2:
        schema, name = parts
    else:
        raise ValidationException(errors={"procedure": ["Procedure name is not well formed"]})

    if not (_IDENTIFIER.match(schema) and _IDENTIFIER.match(name)):
        raise ValidationException(errors={"procedure": ["Procedure name is not well formed"]})
    return schema, name


def is_valid_identifier(value: str) -> bool:
    return bool(_IDENTIFIER.match(value or ""))


def is_valid_sql_type(value: str) -> bool:
    return bool(_SQL_TYPE.match((value or "").strip()))


def build_exec_batch(call: ProcedureCall) -> Tuple[str, List[Any]]:
    """
    Build the parameterised EXEC batch for a call.

    Only validated identifiers and allow-listed type names are written into
    the SQL text; every value travels as a ? placeholder.

    Example:
        SET NOCOUNT ON;
        DECLARE @__rv INT;
        DECLARE @__o_ExecutionTimeMs INT;
        EXEC @__rv = [dbo].[sp_ExecuteQuery] @Query = ?,
            @ExecutionTimeMs = @__o_ExecutionTimeMs OUTPUT;
        SELECT @__rv AS [__return_value], @__o_ExecutionTimeMs AS [ExecutionTimeMs];
    """
    if not (is_valid_identifier(call.schema) and is_valid_identifier(call.name)):
        raise ValidationException(errors={"procedure": ["Procedure name is not well formed"]})

    declarations = ["SET NOCOUNT ON;", "DECLARE @__rv INT;"]
    arguments: List[str] = []
    selects = [f"@__rv AS [{RETURN_VALUE_COLUMN}]"]
    declare_params: List[Any] = []
    exec_params: List[Any] = []

    for param in call.parameters:
        if not is_valid_identifier(param.name):
            raise ValidationException(errors={param.name: ["Parameter name is not well formed"]})
        if param.direction == ParameterDirection.RETURN_VALUE:
            continue
        if not is_valid_sql_type(param.sql_type):
            raise ValidationException(errors={param.name: ["Parameter type is not supported"]})

        if param.is_output:
            local = f"@__o_{param.name}"
            if param.direction == ParameterDirection.INPUT_OUTPUT:
                declarations.append(f"DECLARE {local} {param.sql_type} = ?;")
                declare_params.append(param.value)
            else:
                declarations.append(f"DECLARE {local} {param.sql_type};")
            arguments.append(f"@{param.name} = {local} OUTPUT")
            selects.append(f"{local} AS [{param.name}]")
        else:
            arguments.append(f"@{param.name} = ?")
            exec_params.append(param.value)

    exec_line = f"EXEC @__rv = [{call.schema}].[{call.name}]"
    if arguments:
        exec_line += " " + ", ".join(arguments)

    sql = "\n".join(declarations + [exec_line + ";", "SELECT " + ", ".join(selects) + ";"])
    return sql, declare_params + exec_params


# ===== SQL Server =====


def _affected_rows(output_values: Dict[str, Any], cursor_rowcount: Optional[int]) -> Optional[int]:
    for key in ("AffectedRows", "RowsAffected"):
        value = output_values.get(key)
        if value is not None:
            return int(value)
    if cursor_rowcount is not None and cursor_rowcount >= 0:
        return cursor_rowcount
    return None


async def run_batch(conn: AsyncConnection, call: ProcedureCall) -> BackendResult:
    """Execute the batch on the raw aioodbc connection behind an AsyncConnection."""
    sql, params = build_exec_batch(call)

    raw = await conn.get_raw_connection()
    driver = raw.driver_connection
    cursor = await driver.cursor()
    result_sets: List[Tuple[List[str], List[Dict[str, Any]]]] = []
    try:
        await cursor.execute(sql, *params)
        while True:
            if cursor.description:
                columns = [column[0] for column in cursor.description]
                fetched = await cursor.fetchall()
                result_sets.append(
                    (columns, [dict(zip(columns, row)) for row in fetched])
                )
            if not await cursor.nextset():
                break
        rowcount = cursor.rowcount
    finally:
        await cursor.close()

    # The batch always ends with the output SELECT
    output_row = result_sets.pop()[1][0] if result_sets else {}
    return_value = output_row.pop(RETURN_VALUE_COLUMN, None)
    columns, rows = result_sets[0] if result_sets else ([], [])

    return BackendResult(
        columns=columns,
        rows=rows,
        rows_affected=_affected_rows(output_row, rowcount),
        output_values=output_row,
        return_value=return_value,
    )


class SqlServerSession:
    def __init__(self, conn: AsyncConnection):
        self._conn = conn

    async def begin(self) -> None:
        await self._conn.begin()

    async def call(self, call: ProcedureCall) -> BackendResult:
        return await run_batch(self._conn, call)

    async def commit(self) -> None:
        await self._conn.commit()

    async def rollback(self) -> None:
        await self._conn.rollback()

    async def close(self) -> None:
        await self._conn.close()


class SqlServerBackend:
    """Runs procedure calls against the target SQL Server engine."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def call(self, call: ProcedureCall) -> BackendResult:
        # engine.begin() commits on exit: each call auto-commits on its own
        async with self._engine.begin() as conn:
            return await run_batch(conn, call)

    async def open_session(self) -> SqlServerSession:
        conn = await self._engine.connect()
        return SqlServerSession(conn)

    async def dispose(self) -> None:
        await self._engine.dispose()


def parameters_for_log(parameters: Sequence[StoredProcedureParameter]) -> Dict[str, str]:
    return {param.name: param.to_log_string() for param in parameters}
