"""
Opportunity Loop - SQLAlchemy ORM Models
Persistent storage for signals, opportunities, snapshots, proofs and patterns
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Boolean,
    Index, UniqueConstraint, Enum as SQLEnum, text,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls):
    """Store enum values (not member names) as plain strings."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# ENUMS
# =============================================================================

class SignalStatus(str, Enum):
    """Lifecycle of a detected signal."""
    NEW = "new"
    QUEUED = "queued"
    CONSUMED = "consumed"


class OpportunityStatus(str, Enum):
    """States in the opportunity state machine."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    PROVING = "proving"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that hold the per-entity execution slot
IN_FLIGHT_STATUSES = (OpportunityStatus.EXECUTING, OpportunityStatus.PROVING)

TERMINAL_STATUSES = (
    OpportunityStatus.REJECTED,
    OpportunityStatus.COMPLETED,
    OpportunityStatus.ROLLED_BACK,
    OpportunityStatus.FAILED,
    OpportunityStatus.CANCELLED,
)


class ProofVerdict(str, Enum):
    """Outcome of before/after measurement."""
    SUCCESS = "success"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class ApprovalStatus(str, Enum):
    """Human review state of an approval request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AutonomyLevel(str, Enum):
    """How much the loop may do without a human."""
    FULL = "full"
    APPROVE_ONLY = "approve_only"
    DISABLED = "disabled"


class RiskTolerance(str, Enum):
    """Tenant appetite for unattended change."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActorType(str, Enum):
    """Actor types for the opportunity audit trail."""
    USER = "user"
    SYSTEM = "system"


# =============================================================================
# SIGNALS
# =============================================================================

class SignalDB(Base):
    """
    A detected, unresolved friction indicator on one entity.

    Only the status column is ever updated, and only to CONSUMED.
    """
    __tablename__ = "loop_signals"

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_ref = Column(String(255), nullable=False)
    signal_type = Column(String(64), nullable=False)

    estimated_impact = Column(Float, default=0.0)
    confidence = Column(Integer, default=50)  # 0-100
    magnitude = Column(Float, default=0.0)    # size of the change the fix implies, 0-1
    is_foundational = Column(Boolean, default=False)
    signal_data = Column(JSON, nullable=True)  # detector evidence

    status = Column(_enum_column(SignalStatus), nullable=False, default=SignalStatus.NEW)
    detected_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    consumed_by = Column(String(36), nullable=True)  # opportunity id

    __table_args__ = (
        Index("idx_loop_signal_dedup", "tenant_id", "entity_ref", "signal_type", "status"),
    )


# =============================================================================
# OPPORTUNITIES
# =============================================================================

class OpportunityDB(Base):
    """
    A scored, actionable unit of work synthesized from signals.

    Coordination between workers happens only through conditional updates
    on status; the partial unique index below is the cross-process lock
    that keeps one in-flight opportunity per entity.
    """
    __tablename__ = "loop_opportunities"

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_ref = Column(String(255), nullable=False)

    opportunity_type = Column(String(64), nullable=False)
    category = Column(String(64), nullable=False)
    compatibility_key = Column(String(64), nullable=False)
    source_signal_ids = Column(JSON, nullable=False, default=list)
    is_foundational = Column(Boolean, default=False)

    # Scoring
    priority_score = Column(Float, nullable=False, default=0.0)
    safety_score = Column(Float, nullable=False, default=0.0)  # 0-100, lower = safer
    estimated_impact = Column(Float, nullable=False, default=0.0)
    magnitude = Column(Float, nullable=False, default=0.0)
    latest_signal_at = Column(DateTime, nullable=True)  # tie-break: newer evidence first

    # State machine
    status = Column(_enum_column(OpportunityStatus), nullable=False, default=OpportunityStatus.PENDING)
    error_detail = Column(Text, nullable=True)

    # Execution payloads
    proposed_change = Column(JSON, nullable=True)
    applied_changes = Column(JSON, nullable=True)

    # Proof scheduling (resumable measurement window)
    proof_due_at = Column(DateTime, nullable=True, index=True)
    proof_attempts = Column(Integer, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    executed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    snapshot = relationship("SnapshotDB", back_populates="opportunity", uselist=False)
    proof = relationship("ProofRecordDB", back_populates="opportunity", uselist=False)
    approval_request = relationship("ApprovalRequestDB", back_populates="opportunity", uselist=False)
    events = relationship(
        "OpportunityEventDB",
        back_populates="opportunity",
        order_by="OpportunityEventDB.created_at",
    )

    __table_args__ = (
        Index(
            "uq_loop_opportunity_in_flight",
            "tenant_id",
            "entity_ref",
            unique=True,
            postgresql_where=text("status IN ('executing', 'proving')"),
            sqlite_where=text("status IN ('executing', 'proving')"),
        ),
        Index("idx_loop_opportunity_tenant_status", "tenant_id", "status"),
    )


class OpportunityEventDB(Base):
    """
    Immutable log entry per status transition.

    Together with the snapshot and proof record this answers
    "what happened and why" for every terminal opportunity.
    """
    __tablename__ = "loop_opportunity_events"

    id = Column(String(36), primary_key=True)  # UUID
    opportunity_id = Column(String(36), ForeignKey("loop_opportunities.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    trigger = Column(String(100), nullable=False)
    actor = Column(_enum_column(ActorType), nullable=False, default=ActorType.SYSTEM)
    detail = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    opportunity = relationship("OpportunityDB", back_populates="events")


# =============================================================================
# SNAPSHOTS
# =============================================================================

class SnapshotDB(Base):
    """
    Pre-mutation capture of an entity.

    Immutable once written. One per executed opportunity, written strictly
    before the catalog is touched.
    """
    __tablename__ = "loop_snapshots"

    id = Column(String(36), primary_key=True)  # UUID
    opportunity_id = Column(String(36), ForeignKey("loop_opportunities.id", ondelete="CASCADE"), nullable=False, unique=True)
    entity_ref = Column(String(255), nullable=False, index=True)

    # {"schema": "entity_state", "version": N, "state": {...}, "metrics": {...}}
    captured_state = Column(JSON, nullable=False)
    state_hash = Column(String(64), nullable=False)  # SHA256 of canonical state
    reason = Column(String(100), nullable=False)
    can_rollback = Column(Boolean, nullable=False, default=True)

    captured_at = Column(DateTime, nullable=False, default=utcnow)

    opportunity = relationship("OpportunityDB", back_populates="snapshot")


# =============================================================================
# PROOF
# =============================================================================

class ProofRecordDB(Base):
    """Before/after measurement for one opportunity. Written at most once."""
    __tablename__ = "loop_proof_records"

    id = Column(String(36), primary_key=True)  # UUID
    opportunity_id = Column(String(36), ForeignKey("loop_opportunities.id", ondelete="CASCADE"), nullable=False, unique=True)

    metric_name = Column(String(64), nullable=False)
    before_metric = Column(Float, nullable=False)
    after_metric = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    relative_delta = Column(Float, nullable=True)
    exposure = Column(Float, default=0.0)  # traffic observed during the window
    verdict = Column(_enum_column(ProofVerdict), nullable=False)

    measured_at = Column(DateTime, nullable=False, default=utcnow)

    opportunity = relationship("OpportunityDB", back_populates="proof")


# =============================================================================
# LEARNING
# =============================================================================

class LearnedPatternDB(Base):
    """
    Aggregated prior for one tenant/category.

    Merge-only: sample_size grows, confidence never decreases.
    """
    __tablename__ = "loop_learned_patterns"

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False, index=True)
    category = Column(String(64), nullable=False)
    pattern_data = Column(JSON, nullable=True)

    success_rate = Column(Float, nullable=False, default=0.0)  # 0-1
    sample_size = Column(Integer, nullable=False, default=0)
    confidence = Column(Float, nullable=False, default=0.0)    # 0-1

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "category", name="uq_loop_pattern_category"),
    )


# =============================================================================
# APPROVALS & POLICY
# =============================================================================

class ApprovalRequestDB(Base):
    """Human decision point for a gated opportunity (1:1)."""
    __tablename__ = "loop_approval_requests"

    id = Column(String(36), primary_key=True)  # UUID
    opportunity_id = Column(String(36), ForeignKey("loop_opportunities.id", ondelete="CASCADE"), nullable=False, unique=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    recommended_action = Column(JSON, nullable=False)
    rationale = Column(Text, nullable=False)

    status = Column(_enum_column(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    opportunity = relationship("OpportunityDB", back_populates="approval_request")


class AutonomyPolicyDB(Base):
    """
    Autonomy configuration. entity_ref NULL is the tenant-wide default.
    """
    __tablename__ = "loop_autonomy_policies"

    id = Column(String(36), primary_key=True)  # UUID
    tenant_id = Column(String(64), nullable=False, index=True)
    entity_ref = Column(String(255), nullable=True)

    autonomy_level = Column(_enum_column(AutonomyLevel), nullable=False, default=AutonomyLevel.APPROVE_ONLY)
    risk_tolerance = Column(_enum_column(RiskTolerance), nullable=False, default=RiskTolerance.LOW)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_ref", name="uq_loop_autonomy_scope"),
    )
