"""create audit events table

Revision ID: 0001_audit_events
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_audit_events"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Append-only: rows are inserted by the recorder and removed only by retention sweeps
    op.create_table(
        "audit_events",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("event_id", sa.String(36), nullable=False, unique=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_sub_type", sa.String(100), nullable=True),
        sa.Column("timestamp", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("correlation_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(256), nullable=False),
        sa.Column("user_name", sa.String(256), nullable=True),
        sa.Column("user_email", sa.String(256), nullable=True),
        sa.Column("user_roles", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("resource_type", sa.String(100), nullable=True),
        sa.Column("resource_id", sa.String(256), nullable=True),
        sa.Column("resource_name", sa.String(500), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("result", sa.String(50), nullable=False),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("additional_data", sa.JSON(), nullable=True),
        sa.Column("severity", sa.String(20), nullable=False, server_default="Information"),
        sa.Column("compliance", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("machine_name", sa.String(100), nullable=True),
        sa.Column("process_id", sa.Integer(), nullable=True),
        sa.Column("thread_id", sa.BigInteger(), nullable=True),
        sa.Column("application_version", sa.String(50), nullable=True),
        sa.CheckConstraint(
            "result IN ('Success', 'Failure', 'PartialSuccess')", name="ck_audit_events_result"
        ),
    )
    op.create_index("ix_audit_events_timestamp", "audit_events", ["timestamp"], unique=False)
    op.create_index("ix_audit_events_correlation_id", "audit_events", ["correlation_id"], unique=False)
    op.create_index(
        "ix_audit_events_user_id_timestamp", "audit_events", ["user_id", "timestamp"], unique=False
    )
    op.create_index(
        "ix_audit_events_event_type_timestamp", "audit_events", ["event_type", "timestamp"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_audit_events_event_type_timestamp", table_name="audit_events")
    op.drop_index("ix_audit_events_user_id_timestamp", table_name="audit_events")
    op.drop_index("ix_audit_events_correlation_id", table_name="audit_events")
    op.drop_index("ix_audit_events_timestamp", table_name="audit_events")
    op.drop_table("audit_events")
