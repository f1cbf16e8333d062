"""
Opportunity Loop - Opportunities API Router

Next-best opportunity, reviewer decisions, execution, rollback and the
audit trail behind every terminal state.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import TenantIdentity, get_current_tenant, resolve_tenant
from ..database import get_db
from ..models.db_models import OpportunityDB, OpportunityStatus, ActorType, TERMINAL_STATUSES
from ..services.loop import (
    ApprovalQueue,
    Collaborators,
    ExecutionEngine,
    LoopController,
    RollbackManager,
    SnapshotStore,
    get_collaborators,
)
from ..services.loop.errors import (
    ApprovalRequestNotFoundError,
    CancellationError,
    DataIntegrityError,
    MetricsUnavailableError,
    OpportunityLoopError,
    OpportunityNotFoundError,
    PolicyViolationError,
    RollbackFailedError,
    TransientCollaboratorError,
)


router = APIRouter(prefix="/opportunities", tags=["opportunities"])


# =============================================================================
# ERROR TRANSLATION
# =============================================================================

def http_error(error: OpportunityLoopError) -> HTTPException:
    """Map a loop error onto the HTTP status callers should see."""
    if isinstance(error, (OpportunityNotFoundError, ApprovalRequestNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, PolicyViolationError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, (CancellationError, DataIntegrityError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (TransientCollaboratorError, MetricsUnavailableError)):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, RollbackFailedError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class OpportunityResponse(BaseModel):
    """Response model for an opportunity."""
    id: str
    tenant_id: str
    entity_ref: str
    opportunity_type: str
    category: str
    status: str
    priority_score: float
    safety_score: float
    estimated_impact: float
    is_foundational: bool
    source_signal_ids: List[str]
    proposed_change: Optional[Dict[str, Any]] = None
    applied_changes: Optional[Dict[str, Any]] = None
    error_detail: Optional[str] = None
    created_at: str
    executed_at: Optional[str] = None
    completed_at: Optional[str] = None
    proof_due_at: Optional[str] = None


class NextOpportunityResponse(BaseModel):
    opportunity: Optional[OpportunityResponse]
    loop_state: Dict[str, Any]


class OpportunityList(BaseModel):
    opportunities: List[OpportunityResponse]
    total: int


class DecisionResponse(BaseModel):
    """Result of approve/reject/execute."""
    opportunity_id: str
    status: str
    execution: Optional[Dict[str, Any]] = None


class RollbackRequest(BaseModel):
    reason: str = "manual"


class BulkExecuteRequest(BaseModel):
    opportunity_ids: List[str]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def opportunity_to_response(opportunity: OpportunityDB) -> OpportunityResponse:
    return OpportunityResponse(
        id=opportunity.id,
        tenant_id=opportunity.tenant_id,
        entity_ref=opportunity.entity_ref,
        opportunity_type=opportunity.opportunity_type,
        category=opportunity.category,
        status=opportunity.status.value,
        priority_score=opportunity.priority_score,
        safety_score=opportunity.safety_score,
        estimated_impact=opportunity.estimated_impact,
        is_foundational=bool(opportunity.is_foundational),
        source_signal_ids=list(opportunity.source_signal_ids or []),
        proposed_change=opportunity.proposed_change,
        applied_changes=opportunity.applied_changes,
        error_detail=opportunity.error_detail,
        created_at=opportunity.created_at.isoformat(),
        executed_at=_iso(opportunity.executed_at),
        completed_at=_iso(opportunity.completed_at),
        proof_due_at=_iso(opportunity.proof_due_at),
    )


def _get_owned(db: Session, opportunity_id: str, identity: TenantIdentity) -> OpportunityDB:
    opportunity = db.query(OpportunityDB).filter(
        OpportunityDB.id == opportunity_id,
        OpportunityDB.tenant_id == identity.tenant_id,
    ).first()
    if opportunity is None:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    return opportunity


# =============================================================================
# TENANT-LEVEL ENDPOINTS
# =============================================================================

@router.get("/next", response_model=NextOpportunityResponse)
def get_next_opportunity(
    tenant: Optional[str] = None,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Best-ranked open opportunity for the tenant.

    Runs a loop cycle when nothing is open and falls back to foundational
    guidance, so an active tenant never gets an empty answer.
    """
    tenant_id = resolve_tenant(tenant, identity)
    controller = LoopController(db, collaborators)
    try:
        opportunity = controller.next_opportunity(tenant_id)
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)

    return NextOpportunityResponse(
        opportunity=opportunity_to_response(opportunity) if opportunity else None,
        loop_state=controller.get_loop_state(tenant_id).to_dict(),
    )


@router.get("/state", response_model=dict)
async def get_loop_state(
    tenant: Optional[str] = None,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Where the tenant's loop currently stands."""
    tenant_id = resolve_tenant(tenant, identity)
    return LoopController(db, collaborators).get_loop_state(tenant_id).to_dict()


@router.get("", response_model=OpportunityList)
async def list_opportunities(
    tenant: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """List the tenant's opportunities, newest first."""
    tenant_id = resolve_tenant(tenant, identity)
    query = db.query(OpportunityDB).filter(OpportunityDB.tenant_id == tenant_id)

    if status:
        try:
            query = query.filter(OpportunityDB.status == OpportunityStatus(status))
        except ValueError:
            valid = [s.value for s in OpportunityStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Must be one of: {valid}")

    rows = query.order_by(OpportunityDB.created_at.desc()).limit(limit).all()
    return OpportunityList(
        opportunities=[opportunity_to_response(o) for o in rows],
        total=len(rows),
    )


@router.post("/execute-bulk", response_model=dict)
def execute_bulk(
    request: BulkExecuteRequest,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Execute several opportunities; each result is independent."""
    owned = {
        oid for (oid,) in db.query(OpportunityDB.id).filter(
            OpportunityDB.id.in_(request.opportunity_ids),
            OpportunityDB.tenant_id == identity.tenant_id,
        )
    }
    engine = ExecutionEngine(db, collaborators)
    results = []
    for opportunity_id in request.opportunity_ids:
        if opportunity_id not in owned:
            results.append({"opportunity_id": opportunity_id, "success": False, "error": "Opportunity not found"})
            continue
        results.extend(r.to_dict() for r in engine.execute_bulk([opportunity_id], actor=ActorType.USER))

    return {
        "total": len(results),
        "succeeded": sum(1 for r in results if r["success"]),
        "results": results,
    }


# =============================================================================
# PER-OPPORTUNITY ACTIONS
# =============================================================================

@router.post("/{opportunity_id}/approve", response_model=DecisionResponse)
def approve_opportunity(
    opportunity_id: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Approve an opportunity. Approval is the execution trigger: the change
    is applied before this call returns.
    """
    _get_owned(db, opportunity_id, identity)
    queue = ApprovalQueue(db, collaborators)
    try:
        execution = queue.approve_opportunity(opportunity_id, reviewer=identity.reviewer)
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)

    opportunity = _get_owned(db, opportunity_id, identity)
    return DecisionResponse(
        opportunity_id=opportunity_id,
        status=opportunity.status.value,
        execution=execution.to_dict() if execution else None,
    )


@router.post("/{opportunity_id}/reject", response_model=DecisionResponse)
def reject_opportunity(
    opportunity_id: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Reject an opportunity. Terminal; it is never retried."""
    _get_owned(db, opportunity_id, identity)
    try:
        ApprovalQueue(db, collaborators).reject_opportunity(opportunity_id, reviewer=identity.reviewer)
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)

    opportunity = _get_owned(db, opportunity_id, identity)
    return DecisionResponse(opportunity_id=opportunity_id, status=opportunity.status.value)


@router.post("/{opportunity_id}/execute", response_model=DecisionResponse)
def execute_opportunity(
    opportunity_id: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """
    Execute an approved opportunity, or a pending one the autonomy gate
    allows to run unattended. Anything else is refused with 403.
    """
    _get_owned(db, opportunity_id, identity)
    try:
        result = ExecutionEngine(db, collaborators).execute(opportunity_id, actor=ActorType.USER)
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)

    opportunity = _get_owned(db, opportunity_id, identity)
    return DecisionResponse(
        opportunity_id=opportunity_id,
        status=opportunity.status.value,
        execution=result.to_dict(),
    )


@router.post("/{opportunity_id}/rollback", response_model=dict)
def rollback_opportunity(
    opportunity_id: str,
    request: Optional[RollbackRequest] = None,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Restore the entity to its pre-change snapshot."""
    _get_owned(db, opportunity_id, identity)
    reason = request.reason if request else "manual"
    try:
        result = RollbackManager(db, collaborators).rollback(
            opportunity_id, reason=reason, actor=ActorType.USER,
        )
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)

    opportunity = _get_owned(db, opportunity_id, identity)
    return {
        "opportunity_id": opportunity_id,
        "status": opportunity.status.value,
        "rolled_back": result.rolled_back,
        "no_op": result.no_op,
        "message": result.message,
    }


@router.post("/{opportunity_id}/cancel", response_model=dict)
def cancel_opportunity(
    opportunity_id: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
):
    """Cancel an opportunity before its change is applied."""
    _get_owned(db, opportunity_id, identity)
    try:
        return ExecutionEngine(db, collaborators).cancel(opportunity_id, actor=ActorType.USER)
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)


# =============================================================================
# READ-ONLY
# =============================================================================

@router.get("/{opportunity_id}/status", response_model=dict)
async def get_opportunity_status(
    opportunity_id: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """Polling endpoint for the opportunity's state-machine position."""
    opportunity = _get_owned(db, opportunity_id, identity)
    approval = opportunity.approval_request
    proof = opportunity.proof
    return {
        "opportunity_id": opportunity.id,
        "status": opportunity.status.value,
        "terminal": opportunity.status in TERMINAL_STATUSES,
        "approval_status": approval.status.value if approval else None,
        "executed_at": _iso(opportunity.executed_at),
        "proof_due_at": _iso(opportunity.proof_due_at),
        "verdict": proof.verdict.value if proof else None,
        "error_detail": opportunity.error_detail,
        "updated_at": _iso(opportunity.updated_at),
    }


@router.get("/{opportunity_id}/trail", response_model=dict)
async def get_opportunity_trail(
    opportunity_id: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """
    Everything needed to explain the opportunity's outcome: transition
    events, the snapshot, the proof record and the reviewer decision.
    """
    opportunity = _get_owned(db, opportunity_id, identity)

    snapshot = opportunity.snapshot
    snapshot_out = None
    if snapshot is not None:
        payload = SnapshotStore(db).decode(snapshot)
        snapshot_out = {
            "id": snapshot.id,
            "captured_at": snapshot.captured_at.isoformat(),
            "reason": snapshot.reason,
            "can_rollback": snapshot.can_rollback,
            "state_hash": snapshot.state_hash,
            "version": payload["version"],
            "state": payload["state"],
            "metrics": payload.get("metrics", {}),
        }

    proof = opportunity.proof
    approval = opportunity.approval_request
    return {
        "opportunity": opportunity_to_response(opportunity).model_dump(),
        "events": [
            {
                "from_status": e.from_status,
                "to_status": e.to_status,
                "trigger": e.trigger,
                "actor": e.actor.value,
                "detail": e.detail,
                "created_at": e.created_at.isoformat(),
            }
            for e in opportunity.events
        ],
        "snapshot": snapshot_out,
        "proof": {
            "metric_name": proof.metric_name,
            "before_metric": proof.before_metric,
            "after_metric": proof.after_metric,
            "delta": proof.delta,
            "relative_delta": proof.relative_delta,
            "exposure": proof.exposure,
            "verdict": proof.verdict.value,
            "measured_at": proof.measured_at.isoformat(),
        } if proof else None,
        "approval": {
            "id": approval.id,
            "status": approval.status.value,
            "rationale": approval.rationale,
            "recommended_action": approval.recommended_action,
            "reviewed_by": approval.reviewed_by,
            "reviewed_at": _iso(approval.reviewed_at),
        } if approval else None,
    }
