import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from sqlgate.core.correlation import ensure_correlation_id
from sqlgate.core.exceptions import (
    TIMEOUT_ERROR_NUMBER,
    DatabaseException,
    GatewayError,
    OperationCancelledException,
    SecurityEventKind,
    SecurityException,
    ValidationException,
    wrap_database_error,
)
from sqlgate.core.gateway.audit import AuditRecorder
from sqlgate.core.gateway.backend import (
    BackendResult,
    ProcedureBackend,
    ProcedureCall,
    StoredProcedureParameter,
    parameters_for_log,
    split_procedure_name,
)
from sqlgate.core.gateway.resilience import CircuitBreaker, RetryPolicy
from sqlgate.core.gateway.transaction import TransactionScope
from sqlgate.core.schemas import Actor, DatabaseAuditEvent, DatabaseOperation

# -----------------------------------------------------------------------------
# EXECUTOR MODULE - The single gateway to the database
# Purpose: Run allow-listed stored procedures with typed parameters under a
# deadline, caller cancellation, transient retry and the circuit breaker
# Why: Every invocation, success or failure, produces exactly one audit event
# carrying the operation's correlation id
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

MIN_TIMEOUT_SECONDS = 1
MAX_TIMEOUT_SECONDS = 300

ACTION_QUERY = "ExecuteQuery"
ACTION_COMMAND = "ExecuteCommand"
ACTION_BEGIN = "BeginTransaction"
ACTION_COMMIT = "CommitTransaction"

T = TypeVar("T")


@dataclass
class StoredProcedureResult:
    """Everything a call produced, returned by value."""

    procedure_name: str
    correlation_id: str
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    output_parameters: Dict[str, Any] = field(default_factory=dict)
    rows_affected: Optional[int] = None
    execution_time_ms: int = 0
    return_value: Optional[int] = None
    retry_count: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)


class StoredProcedureExecutor:
    def __init__(
        self,
        backend: ProcedureBackend,
        allowed_procedures: Iterable[str],
        recorder: AuditRecorder,
        retry_policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        default_timeout: int = 30,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._backend = backend
        self._allowed = frozenset(
            ".".join(split_procedure_name(name)).lower() for name in allowed_procedures
        )
        self._recorder = recorder
        self._retry_policy = retry_policy or RetryPolicy()
        self._breaker = breaker or CircuitBreaker()
        self._default_timeout = default_timeout
        self._sleep = sleep

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # ===== Public API =====

    async def execute(
        self,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter] = (),
        *,
        actor: Optional[Actor] = None,
        timeout: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        scope: Optional[TransactionScope] = None,
        read_only: bool = True,
        ip_address: Optional[str] = None,
    ) -> StoredProcedureResult:
        """
        Run a procedure that returns rows.

        Args:
            procedure_name: Must be on the allow-list ("dbo.sp_X" or "sp_X").
            parameters: Typed, directioned parameters.
            actor: Who is calling; recorded on the audit event.
            timeout: Seconds, 1..300. Defaults to the configured command timeout.
            cancel_event: Set by the caller to abandon the call.
            scope: Enlist in an active TransactionScope instead of auto-committing.
            read_only: Only read-only calls are retried on every transient error.

        Returns:
            StoredProcedureResult with rows, output parameters and timings.
        """
        return await self._invoke(
            ACTION_QUERY,
            DatabaseOperation.READ if read_only else DatabaseOperation.EXECUTE,
            procedure_name,
            parameters,
            actor=actor,
            timeout=timeout,
            cancel_event=cancel_event,
            scope=scope,
            read_only=read_only,
            ip_address=ip_address,
        )

    async def execute_non_query(
        self,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter] = (),
        *,
        actor: Optional[Actor] = None,
        timeout: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        scope: Optional[TransactionScope] = None,
        ip_address: Optional[str] = None,
    ) -> StoredProcedureResult:
        """Run a data-modifying procedure; rows_affected comes from its output parameters."""
        return await self._invoke(
            ACTION_COMMAND,
            DatabaseOperation.EXECUTE,
            procedure_name,
            parameters,
            actor=actor,
            timeout=timeout,
            cancel_event=cancel_event,
            scope=scope,
            read_only=False,
            ip_address=ip_address,
        )

    async def execute_in_transaction(
        self,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter] = (),
        *,
        actor: Optional[Actor] = None,
        timeout: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        ip_address: Optional[str] = None,
    ) -> StoredProcedureResult:
        """
        Run a data-modifying procedure in its own TransactionScope and commit it.

        Opening the scope goes through the circuit breaker and is retried on
        transient errors, since nothing has been sent yet. A scope that cannot
        be opened, or whose work is rolled back at commit, gets its own Failure
        event under the procedure call's correlation id.
        """
        correlation_id = ensure_correlation_id()
        started = time.perf_counter()
        scope = TransactionScope(self._backend, cancel_event)

        retry_count = 0
        try:
            while True:
                try:
                    await self._guarded(ACTION_BEGIN, scope.begin, correlation_id)
                    break
                except DatabaseException as db_error:
                    if not self._can_retry(db_error, retry_count, read_only=True, in_scope=False):
                        raise
                    retry_count += 1
                    delay = self._retry_policy.compute_delay(retry_count)
                    logger.warning(
                        f"Could not open a transaction (error {db_error.error_number}), "
                        f"retry {retry_count} in {delay:.2f}s"
                    )
                    await self._sleep(delay)
        except BaseException as e:
            self._audit_scope_failure(
                ACTION_BEGIN, procedure_name, parameters, actor, ip_address,
                correlation_id, started, retry_count, e,
            )
            raise

        try:
            result = await self.execute_non_query(
                procedure_name,
                parameters,
                actor=actor,
                timeout=timeout,
                cancel_event=cancel_event,
                scope=scope,
                ip_address=ip_address,
            )
        except BaseException:
            if scope.is_active:
                try:
                    await scope.rollback()
                except Exception as rollback_error:
                    logger.error(f"Rollback after failed {procedure_name} also failed: {rollback_error}")
            raise

        try:
            await scope.commit()
        except BaseException as e:
            if isinstance(e, DatabaseException) and e.is_transient:
                self._breaker.record_failure()
            self._audit_scope_failure(
                ACTION_COMMIT, procedure_name, parameters, actor, ip_address,
                correlation_id, started, 0, e,
            )
            raise
        return result

    # ===== Internals =====

    def _prepare(
        self,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter],
        timeout: Optional[int],
    ) -> ProcedureCall:
        schema, name = split_procedure_name(procedure_name)
        if f"{schema}.{name}".lower() not in self._allowed:
            raise SecurityException(
                f"Procedure {schema}.{name} is not on the allow-list",
                SecurityEventKind.AUTHORIZATION_FAILURE,
            ).with_resource(f"{schema}.{name}")

        timeout = self._default_timeout if timeout is None else timeout
        if not MIN_TIMEOUT_SECONDS <= timeout <= MAX_TIMEOUT_SECONDS:
            raise ValidationException(
                errors={"timeout": [f"Timeout must be between {MIN_TIMEOUT_SECONDS} and {MAX_TIMEOUT_SECONDS} seconds"]}
            )
        return ProcedureCall(schema, name, tuple(parameters), timeout)

    async def _with_deadline(
        self,
        call: ProcedureCall,
        runner: Callable[[ProcedureCall], Awaitable[BackendResult]],
        cancel_event: Optional[asyncio.Event],
    ) -> BackendResult:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledException()

        task = asyncio.ensure_future(runner(call))
        waiters = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=call.timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Abandoned call to {call.qualified_name} failed late: {e}")

        if cancel_waiter is not None and cancel_waiter in done:
            raise OperationCancelledException(
                f"Call to {call.qualified_name} was cancelled by the caller"
            )
        raise DatabaseException(
            f"Call to {call.qualified_name} exceeded the {call.timeout_seconds}s command timeout",
            operation=call.qualified_name,
            error_number=TIMEOUT_ERROR_NUMBER,
        )

    async def _guarded(
        self,
        operation: str,
        action: Callable[[], Awaitable[T]],
        correlation_id: str,
    ) -> T:
        """
        One round-trip through the circuit breaker.

        Any answer from the database settles the breaker: success or a
        permanent error closes it, a transient error counts as a failure.
        An attempt that ends without an answer (cancelled, abandoned) hands its
        half-open slot back.
        """
        self._breaker.guard(operation)
        settled = False
        try:
            try:
                outcome = await action()
            except GatewayError:
                raise
            except Exception as e:
                raise wrap_database_error(e, operation, correlation_id) from e
            self._breaker.record_success()
            settled = True
            return outcome
        except DatabaseException as db_error:
            if db_error.is_transient:
                self._breaker.record_failure()
            else:
                self._breaker.record_success()
            settled = True
            raise
        finally:
            if not settled:
                self._breaker.release_trial()

    def _can_retry(
        self, error: DatabaseException, retry_count: int, read_only: bool, in_scope: bool
    ) -> bool:
        # Inside a transaction the whole scope must be retried, not one call
        if in_scope or not error.is_transient:
            return False
        if not read_only and not error.is_write_retry_safe:
            return False
        return self._retry_policy.should_retry(retry_count)

    async def _invoke(
        self,
        action: str,
        operation: DatabaseOperation,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter],
        *,
        actor: Optional[Actor],
        timeout: Optional[int],
        cancel_event: Optional[asyncio.Event],
        scope: Optional[TransactionScope],
        read_only: bool,
        ip_address: Optional[str],
    ) -> StoredProcedureResult:
        correlation_id = ensure_correlation_id()
        started = time.perf_counter()
        retry_count = 0
        call: Optional[ProcedureCall] = None
        backend_result: Optional[BackendResult] = None
        error: Optional[BaseException] = None

        try:
            call = self._prepare(procedure_name, parameters, timeout)
            runner = scope.call if scope is not None else self._backend.call

            while True:
                logger.info(
                    f"Executing {call.qualified_name} action={action} attempt={retry_count + 1}"
                )
                try:
                    backend_result = await self._guarded(
                        call.qualified_name,
                        lambda: self._with_deadline(call, runner, cancel_event),
                        correlation_id,
                    )
                    break
                except DatabaseException as db_error:
                    if not self._can_retry(db_error, retry_count, read_only, scope is not None):
                        raise
                    retry_count += 1
                    delay = self._retry_policy.compute_delay(retry_count)
                    logger.warning(
                        f"Transient failure on {call.qualified_name} "
                        f"(error {db_error.error_number}), retry {retry_count} in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelledException()

        except BaseException as e:
            error = e
            raise
        finally:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self._audit(
                action=action,
                operation=operation,
                procedure_name=call.qualified_name if call else procedure_name,
                parameters=parameters,
                actor=actor,
                ip_address=ip_address,
                correlation_id=correlation_id,
                elapsed_ms=elapsed_ms,
                retry_count=retry_count,
                backend_result=backend_result if error is None else None,
                error=error,
                transactional=scope is not None,
            )

        logger.info(
            f"Executed {call.qualified_name} in {elapsed_ms}ms rows={len(backend_result.rows)} retries={retry_count}"
        )
        return StoredProcedureResult(
            procedure_name=call.qualified_name,
            correlation_id=correlation_id,
            columns=list(backend_result.columns),
            rows=list(backend_result.rows),
            output_parameters=dict(backend_result.output_values),
            rows_affected=backend_result.rows_affected,
            execution_time_ms=elapsed_ms,
            return_value=backend_result.return_value,
            retry_count=retry_count,
        )

    def _audit_scope_failure(
        self,
        action: str,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter],
        actor: Optional[Actor],
        ip_address: Optional[str],
        correlation_id: str,
        started: float,
        retry_count: int,
        error: BaseException,
    ) -> None:
        self._audit(
            action=action,
            operation=DatabaseOperation.EXECUTE,
            procedure_name=procedure_name,
            parameters=parameters,
            actor=actor,
            ip_address=ip_address,
            correlation_id=correlation_id,
            elapsed_ms=int((time.perf_counter() - started) * 1000),
            retry_count=retry_count,
            backend_result=None,
            error=error,
            transactional=True,
        )

    def _audit(
        self,
        *,
        action: str,
        operation: DatabaseOperation,
        procedure_name: str,
        parameters: Sequence[StoredProcedureParameter],
        actor: Optional[Actor],
        ip_address: Optional[str],
        correlation_id: str,
        elapsed_ms: int,
        retry_count: int,
        backend_result: Optional[BackendResult],
        error: Optional[BaseException],
        transactional: bool,
    ) -> None:
        error_code = None
        error_message = None
        if error is not None:
            if isinstance(error, DatabaseException) and error.error_number is not None:
                error_code = str(error.error_number)
            else:
                error_code = type(error).__name__
            error_message = getattr(error, "message", None) or str(error) or type(error).__name__

        self._recorder.record(
            DatabaseAuditEvent(
                operation=operation,
                action=action,
                success=error is None,
                correlation_id=correlation_id,
                user_id=actor.user_id if actor else "SYSTEM",
                user_name=actor.display_name if actor else None,
                user_roles=list(actor.roles) if actor else [],
                ip_address=ip_address,
                stored_procedure_name=procedure_name,
                parameters=parameters_for_log(parameters),
                rows_affected=backend_result.rows_affected if backend_result else None,
                execution_time_ms=elapsed_ms,
                error_code=error_code,
                error_message=error_message,
                additional_data={
                    "retry_count": retry_count,
                    "row_count": len(backend_result.rows) if backend_result else 0,
                    "transactional": transactional,
                },
            )
        )
