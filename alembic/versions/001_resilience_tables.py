"""Resilience coordination tables

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates the tables used as the synchronization medium of the analysis pipeline:
- circuit_breaker_logs: circuit breaker call audit log
- idempotency_keys: operation deduplication records
- kill_switches: global and per-engine gates
- deal_execution_locks: per-deal distributed mutex rows
- deal_rate_limits: per-deal rate limit counters and circuit
- analysis_completion_tracker: per-deal analysis completion state
- engine_completion_tracking: waterfall engine convergence state
- enrichment engine result tables
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENRICHMENT_TABLES = (
    "deal_documents",
    "deal_enrichment_crunchbase_export",
    "deal_enrichment_linkedin_profile_export",
    "deal_enrichment_linkedin_export",
    "deal_enrichment_perplexity_company_export",
    "deal_enrichment_perplexity_founder_export",
    "deal_enrichment_perplexity_market_export",
)


def _id_column() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamp(name: str, nullable: bool = False, server_default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    """Create resilience schema."""

    # ==========================================================================
    # Circuit breaker audit log
    # ==========================================================================
    op.create_table(
        "circuit_breaker_logs",
        _id_column(),
        sa.Column("function_name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "status IN ('attempt', 'success', 'failure')",
            name="ck_circuit_breaker_logs_status",
        ),
    )
    op.create_index(
        "ix_circuit_breaker_logs_function_created",
        "circuit_breaker_logs",
        ["function_name", "created_at"],
    )
    op.create_index("ix_circuit_breaker_logs_created_at", "circuit_breaker_logs", ["created_at"])

    # ==========================================================================
    # Idempotency keys
    # ==========================================================================
    op.create_table(
        "idempotency_keys",
        _id_column(),
        sa.Column("key", sa.String(512), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        _timestamp("created_at"),
        _timestamp("completed_at", nullable=True, server_default=False),
        _timestamp("expires_at", server_default=False),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_idempotency_keys_status",
        ),
    )
    op.create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])

    # ==========================================================================
    # Kill switches
    # ==========================================================================
    op.create_table(
        "kill_switches",
        _id_column(),
        sa.Column("switch_name", sa.String(128), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("activated_by", sa.String(255), nullable=True),
        _timestamp("activated_at", nullable=True, server_default=False),
        sa.Column("deactivated_by", sa.String(255), nullable=True),
        _timestamp("deactivated_at", nullable=True, server_default=False),
        _timestamp("expires_at", nullable=True, server_default=False),
    )

    # ==========================================================================
    # Execution locks
    # ==========================================================================
    op.create_table(
        "deal_execution_locks",
        _id_column(),
        sa.Column("deal_id", sa.String(64), nullable=False),
        sa.Column("lock_type", sa.String(50), nullable=False, server_default="analysis"),
        sa.Column("locked_by", sa.String(255), nullable=False),
        _timestamp("locked_at"),
        _timestamp("expires_at", server_default=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.UniqueConstraint("deal_id", "lock_type", name="uq_deal_execution_locks_deal_type"),
    )
    op.create_index("ix_deal_execution_locks_expires_at", "deal_execution_locks", ["expires_at"])

    # ==========================================================================
    # Deal rate limits
    # ==========================================================================
    op.create_table(
        "deal_rate_limits",
        _id_column(),
        sa.Column("deal_id", sa.String(64), nullable=False, unique=True),
        _timestamp("last_analysis_at", nullable=True, server_default=False),
        sa.Column("analysis_count_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reset_date", sa.Date(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_circuit_open", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("circuit_opened_at", nullable=True, server_default=False),
    )

    # ==========================================================================
    # Analysis completion tracker
    # ==========================================================================
    op.create_table(
        "analysis_completion_tracker",
        _id_column(),
        sa.Column("deal_id", sa.String(64), nullable=False),
        sa.Column("analysis_type", sa.String(128), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        _timestamp("started_at"),
        _timestamp("completed_at", nullable=True, server_default=False),
        sa.Column("completion_reason", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.UniqueConstraint("deal_id", "analysis_type", name="uq_analysis_completion_deal_type"),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="ck_analysis_completion_tracker_status",
        ),
    )

    # ==========================================================================
    # Waterfall engine completion tracking
    # ==========================================================================
    op.create_table(
        "engine_completion_tracking",
        _id_column(),
        sa.Column("deal_id", sa.String(64), nullable=False, unique=True),
        sa.Column("engine_statuses", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("completed_engines", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("failed_engines", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("overall_status", sa.String(20), nullable=False, server_default="monitoring"),
        sa.Column("check_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("timeout_at", server_default=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "overall_status IN ('monitoring', 'completed', 'failed', 'timeout')",
            name="ck_engine_completion_tracking_status",
        ),
    )

    # ==========================================================================
    # Enrichment engine result tables
    # ==========================================================================
    for table in ENRICHMENT_TABLES:
        columns = [
            _id_column(),
            sa.Column("deal_id", sa.String(64), nullable=False),
            sa.Column("processing_status", sa.String(30), nullable=False, server_default="pending"),
            sa.Column("payload", postgresql.JSONB(), nullable=True),
            sa.Column("data_completeness_score", sa.Float(), nullable=True),
            _timestamp("created_at"),
        ]
        if table == "deal_documents":
            columns.append(sa.Column("file_name", sa.Text(), nullable=True))
        op.create_table(table, *columns)
        op.create_index(f"ix_{table}_deal_id", table, ["deal_id"])


def downgrade() -> None:
    """Drop resilience schema."""
    for table in reversed(ENRICHMENT_TABLES):
        op.drop_index(f"ix_{table}_deal_id", table_name=table)
        op.drop_table(table)

    op.drop_table("engine_completion_tracking")
    op.drop_table("analysis_completion_tracker")
    op.drop_table("deal_rate_limits")
    op.drop_index("ix_deal_execution_locks_expires_at", table_name="deal_execution_locks")
    op.drop_table("deal_execution_locks")
    op.drop_table("kill_switches")
    op.drop_index("ix_idempotency_keys_expires_at", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("ix_circuit_breaker_logs_created_at", table_name="circuit_breaker_logs")
    op.drop_index("ix_circuit_breaker_logs_function_created", table_name="circuit_breaker_logs")
    op.drop_table("circuit_breaker_logs")
