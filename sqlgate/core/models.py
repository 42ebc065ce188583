from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import false

from sqlgate.core.database import Base


# =========================
# Audit event (append-only)
# =========================
class AuditEventRecord(Base):
    """
    Persisted audit event. Rows are inserted by the recorder and removed
    only by the retention sweep, never updated.
    """

    __tablename__ = "audit_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    event_id = Column(String(36), nullable=False, unique=True)

    event_type = Column(String(100), nullable=False)
    event_sub_type = Column(String(100), nullable=True)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    correlation_id = Column(String(36), nullable=False)

    # Actor
    user_id = Column(String(256), nullable=False)
    user_name = Column(String(256), nullable=True)
    user_email = Column(String(256), nullable=True)
    user_roles = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)

    # Resource
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(256), nullable=True)
    resource_name = Column(String(500), nullable=True)

    action = Column(String(100), nullable=False)
    result = Column(String(50), nullable=False)  # Success / Failure / PartialSuccess
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    additional_data = Column(JSON, nullable=True)

    severity = Column(String(20), nullable=False, server_default="Information")
    compliance = Column(Boolean, nullable=False, server_default=false())

    machine_name = Column(String(100), nullable=True)
    process_id = Column(Integer, nullable=True)
    thread_id = Column(BigInteger, nullable=True)
    application_version = Column(String(50), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "result IN ('Success', 'Failure', 'PartialSuccess')", name="ck_audit_events_result"
        ),
        Index("ix_audit_events_timestamp", "timestamp"),
        Index("ix_audit_events_correlation_id", "correlation_id"),
        Index("ix_audit_events_user_id_timestamp", "user_id", "timestamp"),
        Index("ix_audit_events_event_type_timestamp", "event_type", "timestamp"),
    )
