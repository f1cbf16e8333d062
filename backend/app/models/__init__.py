"""Opportunity Loop - Data Models"""
from .db_models import (
    # Enums
    SignalStatus, OpportunityStatus, ProofVerdict, ApprovalStatus,
    AutonomyLevel, RiskTolerance, ActorType,
    IN_FLIGHT_STATUSES, TERMINAL_STATUSES,
    # Tables
    SignalDB, OpportunityDB, OpportunityEventDB, SnapshotDB, ProofRecordDB,
    LearnedPatternDB, ApprovalRequestDB, AutonomyPolicyDB,
    utcnow,
)
from .loop_models import (
    GateDecision, LoopStage, AutonomyPolicy, DetectedSignal,
    ExecutionResult, RollbackResult, CycleResult, LoopState,
)

__all__ = [
    "SignalStatus", "OpportunityStatus", "ProofVerdict", "ApprovalStatus",
    "AutonomyLevel", "RiskTolerance", "ActorType",
    "IN_FLIGHT_STATUSES", "TERMINAL_STATUSES",
    "SignalDB", "OpportunityDB", "OpportunityEventDB", "SnapshotDB", "ProofRecordDB",
    "LearnedPatternDB", "ApprovalRequestDB", "AutonomyPolicyDB",
    "utcnow",
    "GateDecision", "LoopStage", "AutonomyPolicy", "DetectedSignal",
    "ExecutionResult", "RollbackResult", "CycleResult", "LoopState",
]
