import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlgate.core.exceptions import (
    ConfigurationException,
    ResourceNotFoundException,
    ValidationException,
)
from sqlgate.core.gateway.backend import (
    StoredProcedureParameter,
    is_valid_identifier,
    is_valid_sql_type,
    split_procedure_name,
)
from sqlgate.core.gateway.sanitizer import (
    MAX_COMMAND_LENGTH,
    SanitizerPolicy,
    ToolAccess,
    Verdict,
    check_value,
    classify,
)

# -----------------------------------------------------------------------------
# REGISTRY MODULE - Closed tool catalogue
# Purpose: Map every ToolId to exactly one stored procedure definition with typed
# parameter specs, validated once at startup, and bind caller arguments to it
# Why: No string-keyed dispatch at call time; the executor allow-list is
# exactly the set of procedures registered here
# -----------------------------------------------------------------------------

INT32_MIN, INT32_MAX = -(2**31), 2**31 - 1
_INTEGER_TEXT = re.compile(r"^-?\d+$")


class ToolId(str, Enum):
    EXECUTE_QUERY = "execute_query"
    EXECUTE_COMMAND = "execute_command"
    ANALYZE_TABLE_SCHEMA = "analyze_table_schema"
    ANALYZE_QUERY_PERFORMANCE = "analyze_query_performance"
    DATABASE_HEALTH_CHECK = "database_health_check"


class ParamKind(str, Enum):
    INT = "int"
    BIGINT = "bigint"
    BIT = "bit"
    NVARCHAR = "nvarchar"
    DATETIME = "datetime"
    DECIMAL = "decimal"


@dataclass(frozen=True)
class ToolParameterSpec:
    name: str
    kind: ParamKind
    required: bool = False
    default: Any = None
    max_length: Optional[int] = None  # nvarchar only, None means MAX
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    allowed_values: Tuple[str, ...] = ()
    # Free command text, classified by the sanitizer with the tool's policy
    is_command: bool = False
    sensitive: bool = False
    description: Optional[str] = None

    @property
    def sql_type(self) -> str:
        if self.kind == ParamKind.NVARCHAR:
            return f"NVARCHAR({self.max_length or 'MAX'})"
        if self.kind == ParamKind.DECIMAL:
            return "DECIMAL(38, 10)"
        if self.kind == ParamKind.DATETIME:
            return "DATETIME2"
        return self.kind.value.upper()


@dataclass(frozen=True)
class ToolOutputSpec:
    name: str
    sql_type: str = "INT"


@dataclass(frozen=True)
class ToolDefinition:
    tool_id: ToolId
    procedure: str
    access: ToolAccess
    description: str
    parameters: Tuple[ToolParameterSpec, ...] = ()
    outputs: Tuple[ToolOutputSpec, ...] = ()
    default_timeout: int = 30
    idempotent: bool = True

    @property
    def policy(self) -> SanitizerPolicy:
        return SanitizerPolicy(self.access, MAX_COMMAND_LENGTH)

    @property
    def read_only(self) -> bool:
        return self.access == ToolAccess.READ_ONLY


@dataclass
class BoundArguments:
    parameters: List[StoredProcedureParameter] = field(default_factory=list)
    verdicts: Dict[str, Verdict] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def blocked(self) -> Dict[str, Verdict]:
        return {name: verdict for name, verdict in self.verdicts.items() if verdict.blocked}


# =========================
# Registry
# =========================
class ToolRegistry:
    def __init__(self, definitions: Iterable[ToolDefinition]):
        self._tools: Dict[ToolId, ToolDefinition] = {}
        for definition in definitions:
            if definition.tool_id in self._tools:
                raise ConfigurationException(
                    "tools", f"Duplicate definition for tool {definition.tool_id.value}"
                )
            self._tools[definition.tool_id] = definition

    def validate(self) -> "ToolRegistry":
        """
        Startup check: every ToolId has exactly one well-formed definition.

        Raises:
            ConfigurationException: naming the tool that failed.
        """
        missing = [tool.value for tool in ToolId if tool not in self._tools]
        if missing:
            raise ConfigurationException("tools", f"No definition registered for: {', '.join(missing)}")

        for tool_id, definition in self._tools.items():
            try:
                split_procedure_name(definition.procedure)
            except ValidationException:
                raise ConfigurationException(
                    "tools", f"Tool {tool_id.value} has a malformed procedure name"
                ) from None

            names = [p.name for p in definition.parameters] + [o.name for o in definition.outputs]
            if len(set(n.lower() for n in names)) != len(names):
                raise ConfigurationException("tools", f"Tool {tool_id.value} declares a parameter twice")
            for name in names:
                if not is_valid_identifier(name):
                    raise ConfigurationException(
                        "tools", f"Tool {tool_id.value} has a malformed parameter name {name}"
                    )
            for sql_type in [p.sql_type for p in definition.parameters] + [o.sql_type for o in definition.outputs]:
                if not is_valid_sql_type(sql_type):
                    raise ConfigurationException(
                        "tools", f"Tool {tool_id.value} uses unsupported type {sql_type}"
                    )
            if not 1 <= definition.default_timeout <= 300:
                raise ConfigurationException("tools", f"Tool {tool_id.value} has an invalid default timeout")
        return self

    def resolve(self, tool_id: Union[str, ToolId]) -> ToolDefinition:
        try:
            return self._tools[ToolId(tool_id)]
        except (ValueError, KeyError):
            raise ResourceNotFoundException("Tool", tool_id) from None

    def procedure_names(self) -> List[str]:
        return [definition.procedure for definition in self._tools.values()]

    def definitions(self) -> List[ToolDefinition]:
        return list(self._tools.values())


# =========================
# Argument binding
# =========================
def _coerce(spec: ToolParameterSpec, value: Any) -> Tuple[Any, Optional[str]]:
    """Return (coerced value, error). Errors never echo the value."""
    if spec.kind in (ParamKind.INT, ParamKind.BIGINT):
        if isinstance(value, str) and _INTEGER_TEXT.match(value.strip()):
            value = int(value.strip())
        if isinstance(value, bool) or not isinstance(value, int):
            return None, "Must be an integer"
        if spec.kind == ParamKind.INT and not INT32_MIN <= value <= INT32_MAX:
            return None, "Integer is out of range"
        if spec.min_value is not None and value < spec.min_value:
            return None, f"Must be at least {spec.min_value}"
        if spec.max_value is not None and value > spec.max_value:
            return None, f"Must be at most {spec.max_value}"
        return value, None

    if spec.kind == ParamKind.BIT:
        if isinstance(value, bool):
            return value, None
        if isinstance(value, int) and value in (0, 1):
            return bool(value), None
        return None, "Must be a boolean"

    if spec.kind == ParamKind.DECIMAL:
        if isinstance(value, bool):
            return None, "Must be a number"
        try:
            number = Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None, "Must be a number"
        # NaN and infinities have no DECIMAL representation
        if not number.is_finite():
            return None, "Must be a number"
        return number, None

    if spec.kind == ParamKind.DATETIME:
        if isinstance(value, datetime):
            return value, None
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value), None
            except ValueError:
                pass
        return None, "Must be an ISO 8601 date/time"

    # nvarchar
    if not isinstance(value, str):
        return None, "Must be a string"
    if spec.max_length is not None and len(value) > spec.max_length:
        return None, f"Must be at most {spec.max_length} characters"
    if spec.allowed_values:
        upper = value.strip().upper()
        if upper not in spec.allowed_values:
            return None, f"Must be one of: {', '.join(spec.allowed_values)}"
        return upper, None
    return value, None


def bind_parameters(definition: ToolDefinition, arguments: Mapping[str, Any]) -> BoundArguments:
    """
    Type-check caller arguments against a tool definition.

    Output parameters come from the definition only; callers cannot add or
    override them.

    Raises:
        ValidationException: with a field map of every problem found.
    """
    errors: Dict[str, List[str]] = {}
    bound = BoundArguments()
    specs = {spec.name.lower(): spec for spec in definition.parameters}

    for name in arguments:
        if name.lower() not in specs:
            errors.setdefault(name, []).append("Unknown parameter")

    provided = {name.lower(): value for name, value in arguments.items()}
    for spec in definition.parameters:
        value = provided.get(spec.name.lower())
        if value is None:
            if spec.required:
                errors.setdefault(spec.name, []).append("Field is required")
                continue
            value = spec.default
            if value is None:
                bound.parameters.append(
                    StoredProcedureParameter.input(spec.name, None, spec.sql_type, spec.sensitive)
                )
                continue

        coerced, error = _coerce(spec, value)
        if error:
            errors.setdefault(spec.name, []).append(error)
            continue

        if spec.is_command:
            bound.verdicts[spec.name] = classify(coerced, definition.policy)
        elif isinstance(coerced, str):
            verdict = check_value(coerced)
            if verdict.blocked:
                errors.setdefault(spec.name, []).extend(
                    f"Value rejected: {reason}" for reason in verdict.reasons
                )
                continue
            bound.warnings.extend(f"{spec.name}: {warning}" for warning in verdict.warnings)

        bound.parameters.append(
            StoredProcedureParameter.input(spec.name, coerced, spec.sql_type, spec.sensitive)
        )

    if errors:
        raise ValidationException(errors=errors)

    for output in definition.outputs:
        bound.parameters.append(StoredProcedureParameter.output(output.name, output.sql_type))
    return bound


# =========================
# Shipped tools
# =========================
_DATABASE = ToolParameterSpec(
    "Database", ParamKind.NVARCHAR, required=True, max_length=128,
    description="Target database name",
)
_EXECUTION_TIME = ToolOutputSpec("ExecutionTimeMs", "INT")

DEFAULT_TOOLS: Tuple[ToolDefinition, ...] = (
    ToolDefinition(
        tool_id=ToolId.EXECUTE_QUERY,
        procedure="dbo.sp_ExecuteQuery",
        access=ToolAccess.READ_ONLY,
        description="Run a read-only query and return its rows",
        parameters=(
            _DATABASE,
            ToolParameterSpec("Query", ParamKind.NVARCHAR, required=True, is_command=True,
                              description="SELECT statement to run"),
            ToolParameterSpec("Timeout", ParamKind.INT, default=30, min_value=1, max_value=300,
                              description="Statement timeout in seconds"),
        ),
        outputs=(_EXECUTION_TIME,),
    ),
    ToolDefinition(
        tool_id=ToolId.EXECUTE_COMMAND,
        procedure="dbo.sp_ExecuteCommand",
        access=ToolAccess.READ_WRITE,
        description="Run a data-modifying command and return the affected row count",
        parameters=(
            _DATABASE,
            ToolParameterSpec("Command", ParamKind.NVARCHAR, required=True, is_command=True,
                              description="INSERT, UPDATE, DELETE or MERGE statement"),
            ToolParameterSpec("UseTransaction", ParamKind.BIT, default=True,
                              description="Wrap the command in a server-side transaction"),
        ),
        outputs=(ToolOutputSpec("AffectedRows", "INT"), _EXECUTION_TIME),
        idempotent=False,
    ),
    ToolDefinition(
        tool_id=ToolId.ANALYZE_TABLE_SCHEMA,
        procedure="dbo.sp_AnalyzeTableSchema",
        access=ToolAccess.READ_ONLY,
        description="Describe columns, constraints, indexes and triggers of a table",
        parameters=(
            ToolParameterSpec("DatabaseName", ParamKind.NVARCHAR, required=True, max_length=128),
            ToolParameterSpec("TableName", ParamKind.NVARCHAR, max_length=128,
                              description="Omit to analyse every table"),
            ToolParameterSpec("IncludeConstraints", ParamKind.BIT, default=True),
            ToolParameterSpec("IncludeIndexes", ParamKind.BIT, default=True),
            ToolParameterSpec("IncludeTriggers", ParamKind.BIT, default=False),
            ToolParameterSpec("IncludeStatistics", ParamKind.BIT, default=False),
        ),
        default_timeout=60,
    ),
    ToolDefinition(
        tool_id=ToolId.ANALYZE_QUERY_PERFORMANCE,
        procedure="dbo.sp_AnalyzeQueryPerformance",
        access=ToolAccess.READ_ONLY,
        description="Estimate the plan and statistics of a query without running it",
        parameters=(
            ToolParameterSpec("Query", ParamKind.NVARCHAR, required=True, is_command=True),
            ToolParameterSpec("DatabaseName", ParamKind.NVARCHAR, required=True, max_length=128),
            ToolParameterSpec("AnalysisType", ParamKind.NVARCHAR, default="FULL", max_length=20,
                              allowed_values=("PLAN", "STATS", "FULL")),
            ToolParameterSpec("GenerateOptimizations", ParamKind.BIT, default=True),
        ),
        default_timeout=120,
    ),
    ToolDefinition(
        tool_id=ToolId.DATABASE_HEALTH_CHECK,
        procedure="dbo.sp_DatabaseHealthCheck",
        access=ToolAccess.READ_ONLY,
        description="Report performance, security, backup and maintenance health",
        parameters=(
            ToolParameterSpec("DatabaseName", ParamKind.NVARCHAR, max_length=128,
                              description="Omit to check every user database"),
            ToolParameterSpec("IncludePerformance", ParamKind.BIT, default=True),
            ToolParameterSpec("IncludeSecurity", ParamKind.BIT, default=True),
            ToolParameterSpec("IncludeBackups", ParamKind.BIT, default=True),
            ToolParameterSpec("IncludeMaintenance", ParamKind.BIT, default=True),
        ),
        default_timeout=120,
    ),
)


def default_registry() -> ToolRegistry:
    return ToolRegistry(DEFAULT_TOOLS).validate()
