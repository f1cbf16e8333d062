"""
Opportunity Loop - In-Process Data Models

Value objects passed between loop components. Persistent records live in
db_models; these never touch the database directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .db_models import AutonomyLevel, RiskTolerance


# =============================================================================
# ENUMS
# =============================================================================

class GateDecision(str, Enum):
    """Outcome of the autonomy gate. Every opportunity maps to exactly one."""
    AUTO_EXECUTE = "auto_execute"
    REQUIRE_APPROVAL = "require_approval"
    REJECT = "reject"


class LoopStage(str, Enum):
    """Where a tenant's loop currently stands, derived from stored state."""
    IDLE = "idle"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    MEASURING_IMPACT = "measuring_impact"


LOOP_STAGE_LABELS: Dict[LoopStage, str] = {
    LoopStage.IDLE: "Monitoring for opportunities",
    LoopStage.AWAITING_APPROVAL: "Waiting for approval",
    LoopStage.EXECUTING: "Applying approved improvement",
    LoopStage.MEASURING_IMPACT: "Measuring impact",
}


# =============================================================================
# POLICY
# =============================================================================

@dataclass(frozen=True)
class AutonomyPolicy:
    """Resolved autonomy policy for one entity."""
    autonomy_level: AutonomyLevel = AutonomyLevel.APPROVE_ONLY
    risk_tolerance: RiskTolerance = RiskTolerance.LOW
    source: str = "default"  # entity, tenant, default


# =============================================================================
# SCANNER
# =============================================================================

@dataclass
class DetectedSignal:
    """Detector output before it is deduplicated and persisted."""
    entity_ref: str
    signal_type: str
    estimated_impact: float
    confidence: int
    magnitude: float = 0.0
    is_foundational: bool = False
    evidence: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# EXECUTION
# =============================================================================

@dataclass
class ExecutionResult:
    """Result of a single execute() call."""
    opportunity_id: str
    success: bool
    applied_changes: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    already_handled: bool = False
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "opportunity_id": self.opportunity_id,
            "success": self.success,
            "applied_changes": self.applied_changes,
            "error": self.error,
            "already_handled": self.already_handled,
            "status": self.status,
        }


@dataclass
class RollbackResult:
    """Result of a rollback() call."""
    opportunity_id: str
    rolled_back: bool
    no_op: bool = False
    message: str = ""


# =============================================================================
# LOOP
# =============================================================================

@dataclass
class CycleResult:
    """Summary of one scan -> synthesize -> gate -> act iteration."""
    tenant_id: str
    signals_detected: int = 0
    opportunities_created: int = 0
    selected_opportunity_id: Optional[str] = None
    gate_decision: Optional[GateDecision] = None
    execution: Optional[ExecutionResult] = None
    approval_request_id: Optional[str] = None
    foundational: bool = False
    submitted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "signals_detected": self.signals_detected,
            "opportunities_created": self.opportunities_created,
            "selected_opportunity_id": self.selected_opportunity_id,
            "gate_decision": self.gate_decision.value if self.gate_decision else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "approval_request_id": self.approval_request_id,
            "foundational": self.foundational,
            "submitted": self.submitted,
            "errors": self.errors,
        }


@dataclass
class LoopState:
    """Tenant loop position, reconstructed from the opportunity table."""
    tenant_id: str
    stage: LoopStage
    stage_label: str
    current_opportunity_id: Optional[str] = None
    entity_ref: Optional[str] = None
    opportunity_type: Optional[str] = None
    pending_approvals: int = 0
    proving_count: int = 0
    since: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "stage": self.stage.value,
            "stage_label": self.stage_label,
            "current_opportunity_id": self.current_opportunity_id,
            "entity_ref": self.entity_ref,
            "opportunity_type": self.opportunity_type,
            "pending_approvals": self.pending_approvals,
            "proving_count": self.proving_count,
            "since": self.since,
        }
