import os
import time

# Settings are read at import time, so the environment goes first
os.environ.setdefault("AUDIT_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-sqlgate-0123456789abcdef")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("RUN_MIGRATIONS", "false")

from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sqlgate.api import dependencies
from sqlgate.core import models  # noqa: F401
from sqlgate.core.database import Base
from sqlgate.core.gateway.audit import AuditRecorder, RetentionPolicy, SqlAuditStore
from sqlgate.core.gateway.backend import BackendResult, ProcedureCall
from sqlgate.core.gateway.executor import StoredProcedureExecutor
from sqlgate.core.gateway.registry import default_registry
from sqlgate.core.gateway.resilience import BreakerConfig, CircuitBreaker, RetryPolicy
from sqlgate.core.gateway.secrets import ApiKeyStore, hash_api_key
from sqlgate.core.config import ApiKeyEntry
from sqlgate.core.gateway.service import ToolService
from sqlgate.core.security import create_access_token
from sqlgate.main import app


# =========================
# Fakes at the backend seam
# =========================
class FakeDriverError(Exception):
    """Stands in for a driver error carrying a SQL Server error number."""

    def __init__(self, number: int, message: str = "driver failure"):
        super().__init__(message)
        self.number = number


class FakeSession:
    def __init__(self, backend: "FakeBackend"):
        self.backend = backend
        self.began = False
        self.committed = False
        self.rolled_back = False
        self.closed = False

    async def begin(self):
        self.began = True

    async def call(self, call: ProcedureCall) -> BackendResult:
        return await self.backend.call(call)

    async def commit(self):
        if self.backend.commit_error is not None:
            raise self.backend.commit_error
        self.committed = True

    async def rollback(self):
        self.rolled_back = True

    async def close(self):
        self.closed = True


class FakeBackend:
    """
    Scripted backend: each call pops the next outcome (an exception to raise
    or a BackendResult to return); once the script is empty `default` is used.
    `open_error` and `commit_error` make session opening and commit fail.
    """

    def __init__(
        self,
        outcomes: Optional[list] = None,
        default: Optional[BackendResult] = None,
        open_error: Optional[BaseException] = None,
        commit_error: Optional[BaseException] = None,
    ):
        self.open_error = open_error
        self.commit_error = commit_error
        self.open_attempts = 0
        self.outcomes = list(outcomes or [])
        self.default = default or BackendResult()
        self.calls: List[ProcedureCall] = []
        self.sessions: List[FakeSession] = []

    async def call(self, call: ProcedureCall) -> BackendResult:
        self.calls.append(call)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def open_session(self) -> FakeSession:
        self.open_attempts += 1
        if self.open_error is not None:
            raise self.open_error
        session = FakeSession(self)
        self.sessions.append(session)
        return session


class CollectingSink:
    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    async def append(self, events):
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.events.extend(events)


async def no_sleep(_delay):
    return None


def two_rows() -> BackendResult:
    return BackendResult(
        columns=["Id", "Name"],
        rows=[{"Id": 1, "Name": "alpha"}, {"Id": 2, "Name": "beta"}],
        output_values={"ExecutionTimeMs": 4},
        return_value=0,
    )


# =========================
# Gateway fixtures
# =========================
@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def recorder(sink):
    return AuditRecorder(sink, buffer_size=100, flush_interval=0.05)


@pytest.fixture
def backend():
    return FakeBackend(default=two_rows())


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def make_executor(recorder, registry):
    def _make(backend, max_retries: int = 3, threshold: int = 5, clock=time.monotonic):
        return StoredProcedureExecutor(
            backend,
            registry.procedure_names(),
            recorder,
            retry_policy=RetryPolicy(max_retries=max_retries, base_delay_ms=1, max_delay_ms=5, jitter_ms=0),
            breaker=CircuitBreaker(BreakerConfig(failure_threshold=threshold, recovery_seconds=30), clock=clock),
            default_timeout=30,
            sleep=no_sleep,
        )

    return _make


@pytest.fixture
def executor(make_executor, backend):
    return make_executor(backend)


@pytest.fixture
def tool_service(registry, executor, recorder):
    return ToolService(registry, executor, recorder)


# =========================
# Audit store (in-memory SQLite)
# =========================
@pytest_asyncio.fixture(scope="function")
async def session_factory():
    pytest.importorskip("aiosqlite")
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", poolclass=StaticPool, echo=False
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def audit_store(session_factory):
    return SqlAuditStore(session_factory, elevated_roles=("auditor", "admin"))


# =========================
# HTTP client
# =========================
@pytest.fixture
def api_key_store():
    store = ApiKeyStore()
    store.open(
        {
            "agent-key": ApiKeyEntry(
                key_hash=hash_api_key("agent-secret"),
                user_id="agent-1",
                display_name="Reporting agent",
                roles=["agent"],
            )
        }
    )
    yield store
    store.close()


@pytest_asyncio.fixture(scope="function")
async def client(tool_service, audit_store, recorder, api_key_store):
    app.dependency_overrides[dependencies.get_tool_service] = lambda: tool_service
    app.dependency_overrides[dependencies.get_audit_store] = lambda: audit_store
    app.dependency_overrides[dependencies.get_recorder] = lambda: recorder
    app.dependency_overrides[dependencies.get_api_key_store] = lambda: api_key_store
    app.dependency_overrides[dependencies.get_retention_policy] = lambda: RetentionPolicy()

    async with AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# Token for an ordinary agent
@pytest.fixture
def auth_headers_agent():
    token = create_access_token({"sub": "agent-1", "name": "Reporting agent", "roles": ["agent"]})
    return {"Authorization": f"Bearer {token}"}


# Token for an auditor
@pytest.fixture
def auth_headers_auditor():
    token = create_access_token({"sub": "auditor-1", "roles": ["auditor"]})
    return {"Authorization": f"Bearer {token}"}
