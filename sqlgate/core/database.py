from urllib.parse import quote_plus

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from sqlgate.core.config import settings

# Audit store engine. The target SQL Server engine is built at startup
# from the secret store, see create_target_engine
engine = create_async_engine(settings.AUDIT_DATABASE_URL, echo=False)

# expire_on_commit=False so rows stay readable after the session commits
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass


def to_target_url(connection_string: str) -> str:
    """
    Accept either a SQLAlchemy URL or a raw ODBC connection string.

    Example:
        to_target_url("Driver={ODBC Driver 18 for SQL Server};Server=db;...")
        -> "mssql+aioodbc:///?odbc_connect=Driver%3D..."
    """
    if "://" in connection_string:
        return connection_string
    return "mssql+aioodbc:///?odbc_connect=" + quote_plus(connection_string)


def create_target_engine(connection_string: str) -> AsyncEngine:
    """Engine for the SQL Server the tools run against."""
    return create_async_engine(
        to_target_url(connection_string),
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        isolation_level="READ COMMITTED",
    )
