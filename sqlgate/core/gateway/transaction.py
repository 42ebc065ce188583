import asyncio
import logging
from enum import Enum
from typing import Optional

from sqlgate.core.exceptions import (
    OperationCancelledException,
    TransactionStateError,
    wrap_database_error,
)
from sqlgate.core.gateway.backend import (
    BackendResult,
    BackendSession,
    ProcedureBackend,
    ProcedureCall,
)

# -----------------------------------------------------------------------------
# TRANSACTION MODULE - Atomic scope over several executor calls
# Purpose: NotStarted -> Active -> Committed | RolledBack on one connection
# Why: An exception escaping an active scope, caller cancellation included,
# rolls the work back before it propagates
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


class TransactionState(str, Enum):
    NOT_STARTED = "NotStarted"
    ACTIVE = "Active"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"


class TransactionScope:
    """
    Single-use transaction scope.

    Example:
        async with TransactionScope(backend) as scope:
            await executor.execute_non_query("sp_ExecuteCommand", params, scope=scope)
        # committed here, or rolled back if the block raised
    """

    def __init__(self, backend: ProcedureBackend, cancel_event: Optional[asyncio.Event] = None):
        self._backend = backend
        self._cancel_event = cancel_event
        self._session: Optional[BackendSession] = None
        self._state = TransactionState.NOT_STARTED
        # Calls on one connection are strictly sequential
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == TransactionState.ACTIVE

    def _require_active(self, operation: str) -> None:
        if self._state != TransactionState.ACTIVE:
            raise TransactionStateError(
                f"Cannot {operation}: transaction is {self._state.value}, not Active"
            )

    async def begin(self) -> None:
        if self._state == TransactionState.ACTIVE:
            raise TransactionStateError("A transaction is already active on this scope")
        if self._state != TransactionState.NOT_STARTED:
            raise TransactionStateError(
                f"Transaction scope already finished ({self._state.value}) and cannot be reused"
            )

        try:
            session = await self._backend.open_session()
        except Exception as e:
            raise wrap_database_error(e, "OpenSession") from e
        try:
            await session.begin()
        except Exception as e:
            await session.close()
            raise wrap_database_error(e, "BeginTransaction") from e

        self._session = session
        self._state = TransactionState.ACTIVE
        logger.debug("Transaction started")

    async def call(self, call: ProcedureCall) -> BackendResult:
        """Run one procedure call enlisted in this transaction."""
        self._require_active("execute")
        async with self._lock:
            return await self._session.call(call)

    async def commit(self) -> None:
        self._require_active("commit")
        if self._cancel_event is not None and self._cancel_event.is_set():
            await self.rollback()
            raise OperationCancelledException("Transaction was cancelled before commit")

        async with self._lock:
            try:
                await self._session.commit()
            except Exception as e:
                logger.error(f"Commit failed, rolling back: {e}")
                try:
                    await self._session.rollback()
                except Exception as rollback_error:
                    logger.error(f"Rollback after failed commit also failed: {rollback_error}")
                self._state = TransactionState.ROLLED_BACK
                await self._close()
                raise wrap_database_error(e, "CommitTransaction") from e

            self._state = TransactionState.COMMITTED
            await self._close()
        logger.debug("Transaction committed")

    async def rollback(self) -> None:
        self._require_active("roll back")
        async with self._lock:
            try:
                await self._session.rollback()
            except Exception as e:
                raise wrap_database_error(e, "RollbackTransaction") from e
            finally:
                self._state = TransactionState.ROLLED_BACK
                await self._close()
        logger.info("Transaction rolled back")

    async def _close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def __aenter__(self) -> "TransactionScope":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._state != TransactionState.ACTIVE:
            # Caller already committed or rolled back explicitly
            return False

        if exc_type is None:
            await self.commit()
            return False

        try:
            await self.rollback()
        except Exception as rollback_error:
            # The original exception is what the caller needs to see
            logger.error(f"Rollback during exception unwinding failed: {rollback_error}")
        return False
