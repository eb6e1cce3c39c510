"""
DealFlow Database Models
SQLAlchemy ORM models for the shared coordination store.

Besides business data, the relational store is the synchronization medium of
the analysis pipeline: lock rows, rate-limit counters, idempotency records,
kill-switch flags and circuit-breaker call logs all live here and are visible
to every process instance.
"""
import enum
import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Date,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from backend.core.exceptions import IllegalTransitionError

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Status Enums
# =============================================================================


class CircuitStatus(str, enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


class CircuitEvent(str, enum.Enum):
    """Inputs that drive the circuit breaker state machine."""

    TRIP = "trip"  # failure threshold reached
    RETRY_DUE = "retry_due"  # retry time elapsed while open
    RECOVER = "recover"  # success while half-open
    RESET = "reset"  # manual administrative reset


CIRCUIT_TRANSITIONS: dict[tuple[CircuitStatus, CircuitEvent], CircuitStatus] = {
    (CircuitStatus.CLOSED, CircuitEvent.TRIP): CircuitStatus.OPEN,
    (CircuitStatus.HALF_OPEN, CircuitEvent.TRIP): CircuitStatus.OPEN,
    (CircuitStatus.OPEN, CircuitEvent.TRIP): CircuitStatus.OPEN,
    (CircuitStatus.OPEN, CircuitEvent.RETRY_DUE): CircuitStatus.HALF_OPEN,
    (CircuitStatus.HALF_OPEN, CircuitEvent.RECOVER): CircuitStatus.CLOSED,
    (CircuitStatus.CLOSED, CircuitEvent.RESET): CircuitStatus.CLOSED,
    (CircuitStatus.HALF_OPEN, CircuitEvent.RESET): CircuitStatus.CLOSED,
    (CircuitStatus.OPEN, CircuitEvent.RESET): CircuitStatus.CLOSED,
}


def next_circuit_status(current: CircuitStatus, event: CircuitEvent) -> CircuitStatus:
    """
    Apply an event to a circuit status.

    Raises:
        IllegalTransitionError: If the event is not defined for the current status.
    """
    try:
        return CIRCUIT_TRANSITIONS[(current, event)]
    except KeyError:
        raise IllegalTransitionError("circuit", current.value, event.value) from None


class CircuitCallStatus(str, enum.Enum):
    """Kinds of rows written to the circuit breaker audit log."""

    ATTEMPT = "attempt"
    SUCCESS = "success"
    FAILURE = "failure"


class IdempotencyStatus(str, enum.Enum):
    """Lifecycle of an idempotency record."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TrackerStatus(str, enum.Enum):
    """Status of an analysis completion tracker row."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class EngineStatus(str, enum.Enum):
    """Per-engine status observed by the waterfall monitor."""

    PENDING = "pending"
    COMPLETE = "complete"
    ERROR = "error"


class MonitoringStatus(str, enum.Enum):
    """Overall status of waterfall engine monitoring for a deal."""

    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not MonitoringStatus.MONITORING


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


# =============================================================================
# Coordination Tables
# =============================================================================


class CircuitBreakerLog(Base):
    """
    Append-only audit log of circuit breaker calls.

    Used both for the sliding-window call budget and for external
    observability. Rows older than the retention window are pruned.
    """

    __tablename__ = "circuit_breaker_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    function_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Operation key, usually '{engine}:{deal_id}'",
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="attempt, success or failure",
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_circuit_breaker_logs_function_created", function_name, created_at),
        Index("ix_circuit_breaker_logs_created_at", created_at),
    )

    def __repr__(self) -> str:
        return f"<CircuitBreakerLog(function_name='{self.function_name}', status='{self.status}')>"


class IdempotencyKey(Base):
    """
    Idempotency records keyed by a caller-supplied deterministic key.

    The unique constraint on ``key`` is what resolves two concurrent first
    checks: only one insert can win.
    """

    __tablename__ = "idempotency_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=IdempotencyStatus.PENDING.value,
    )
    result: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (Index("ix_idempotency_keys_expires_at", expires_at),)

    def __repr__(self) -> str:
        return f"<IdempotencyKey(key='{self.key}', status='{self.status}')>"


class KillSwitch(Base):
    """Global and per-engine kill switches."""

    __tablename__ = "kill_switches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    switch_name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    activated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    deactivated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
        doc="An expired switch is inactive regardless of is_active",
    )

    def __repr__(self) -> str:
        return f"<KillSwitch(switch_name='{self.switch_name}', is_active={self.is_active})>"


class DealExecutionLock(Base):
    """Distributed mutex row for one deal's protected operation."""

    __tablename__ = "deal_execution_locks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lock_type: Mapped[str] = mapped_column(String(50), nullable=False, default="analysis")
    locked_by: Mapped[str] = mapped_column(String(255), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    extra_data: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("deal_id", "lock_type", name="uq_deal_execution_locks_deal_type"),
        Index("ix_deal_execution_locks_expires_at", expires_at),
    )

    def __repr__(self) -> str:
        return f"<DealExecutionLock(deal_id='{self.deal_id}', lock_type='{self.lock_type}')>"


class DealRateLimit(Base):
    """Entity-level rate limit counters and coarse circuit for a deal."""

    __tablename__ = "deal_rate_limits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    last_analysis_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    analysis_count_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reset_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_circuit_open: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    circuit_opened_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<DealRateLimit(deal_id='{self.deal_id}', failures={self.consecutive_failures})>"


class AnalysisCompletionTracker(Base):
    """Persisted completion state of an analysis type for a deal."""

    __tablename__ = "analysis_completion_tracker"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    analysis_type: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TrackerStatus.IN_PROGRESS.value,
    )
    started_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completion_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint("deal_id", "analysis_type", name="uq_analysis_completion_deal_type"),
    )


class EngineCompletionTracking(Base):
    """Convergence state of the fan-out enrichment engines for a deal."""

    __tablename__ = "engine_completion_tracking"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    engine_statuses: Mapped[dict[str, str]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        doc="engine name -> pending/complete/error",
    )
    completed_engines: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    failed_engines: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    overall_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MonitoringStatus.MONITORING.value,
    )
    check_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timeout_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<EngineCompletionTracking(deal_id='{self.deal_id}', status='{self.overall_status}')>"


# =============================================================================
# Enrichment Engine Result Tables
# =============================================================================


class EnrichmentResultMixin:
    """Columns shared by every enrichment engine's result table."""

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    processing_status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    data_completeness_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)


class DealDocument(EnrichmentResultMixin, Base):
    __tablename__ = "deal_documents"

    file_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class CrunchbaseEnrichment(EnrichmentResultMixin, Base):
    __tablename__ = "deal_enrichment_crunchbase_export"


class LinkedInProfileEnrichment(EnrichmentResultMixin, Base):
    __tablename__ = "deal_enrichment_linkedin_profile_export"


class LinkedInExportEnrichment(EnrichmentResultMixin, Base):
    __tablename__ = "deal_enrichment_linkedin_export"


class PerplexityCompanyEnrichment(EnrichmentResultMixin, Base):
    __tablename__ = "deal_enrichment_perplexity_company_export"


class PerplexityFounderEnrichment(EnrichmentResultMixin, Base):
    __tablename__ = "deal_enrichment_perplexity_founder_export"


class PerplexityMarketEnrichment(EnrichmentResultMixin, Base):
    __tablename__ = "deal_enrichment_perplexity_market_export"


# Fan-out engines in the order they are reported
ENRICHMENT_RESULT_MODELS: dict[str, type[EnrichmentResultMixin]] = {
    "documents": DealDocument,
    "crunchbase": CrunchbaseEnrichment,
    "linkedin_profile": LinkedInProfileEnrichment,
    "linkedin_export": LinkedInExportEnrichment,
    "perplexity_company": PerplexityCompanyEnrichment,
    "perplexity_founder": PerplexityFounderEnrichment,
    "perplexity_market": PerplexityMarketEnrichment,
}

COMPLETE_PROCESSING_STATUSES = ("processed", "completed")
ERROR_PROCESSING_STATUSES = ("failed", "error")
