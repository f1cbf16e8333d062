"""
Scheduler API Routes

Internal endpoints for system-automatic loop tasks.
Tenant cycles, due proof evaluations, signal scans.
"""
import os
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import SessionLocal, get_db
from ..services.loop import (
    Collaborators,
    LoopController,
    LoopScheduler,
    LoopWorkerPool,
    ProofEvaluator,
    SignalScanner,
    get_collaborators,
    get_worker_pool,
)
from ..services.loop.errors import OpportunityLoopError
from .opportunities import http_error


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("INTERNAL_API_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def get_session_factory() -> Callable[[], Session]:
    """Session factory for jobs that open one session per worker."""
    return SessionLocal


class TenantCycleRequest(BaseModel):
    tenant_id: str
    batch: bool = False


class AllCyclesRequest(BaseModel):
    tenant_ids: Optional[List[str]] = None


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/run-cycle", response_model=dict)
def run_cycle(
    request: TenantCycleRequest,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    worker_pool: Optional[LoopWorkerPool] = Depends(get_worker_pool),
    _: bool = Depends(verify_internal_key),
):
    """
    Run one scan -> synthesize -> gate -> act iteration for a tenant.

    System-automatic - opportunities the gate allows go to the background
    worker pool (inline when the app runs without one).
    """
    try:
        controller = LoopController(db, collaborators, worker_pool=worker_pool)
        result = controller.run_cycle(request.tenant_id, batch=request.batch)
    except OpportunityLoopError as e:
        db.rollback()
        raise http_error(e)
    return result.to_dict()


@router.post("/run-all-cycles", response_model=dict)
def run_all_cycles(
    request: Optional[AllCyclesRequest] = None,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    collaborators: Collaborators = Depends(get_collaborators),
    worker_pool: Optional[LoopWorkerPool] = Depends(get_worker_pool),
    _: bool = Depends(verify_internal_key),
):
    """
    Run a cycle for every known tenant, tenants in parallel.

    One tenant's failure is reported and never blocks the others.
    """
    scheduler = LoopScheduler(session_factory, collaborators, worker_pool=worker_pool)
    return scheduler.run_all_tenants(request.tenant_ids if request else None)


@router.post("/run-proofs", response_model=dict)
def run_proofs(
    limit: int = Query(50, ge=1, le=1000),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    _: bool = Depends(verify_internal_key),
):
    """
    Evaluate every proving opportunity whose measurement window closed.

    System-automatic - negative verdicts roll back without confirmation.
    """
    result = ProofEvaluator(db, collaborators).run_due(limit=limit)
    return {
        "task": "run_proofs",
        "run_date": datetime.now(timezone.utc).isoformat(),
        **result,
    }


@router.post("/scan", response_model=dict)
def run_scan(
    request: TenantCycleRequest,
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    _: bool = Depends(verify_internal_key),
):
    """Scan one tenant for new signals without acting on them."""
    scanner = SignalScanner(db, collaborators)
    signals = scanner.scan(request.tenant_id)
    db.commit()
    return {
        "task": "scan",
        "tenant_id": request.tenant_id,
        "run_date": datetime.now(timezone.utc).isoformat(),
        "signals_created": len(signals),
        "skipped_entities": scanner.skipped_entities,
        "signals": [
            {
                "id": s.id,
                "entity_ref": s.entity_ref,
                "signal_type": s.signal_type,
                "estimated_impact": s.estimated_impact,
                "is_foundational": s.is_foundational,
            }
            for s in signals
        ],
    }


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/signals", response_model=dict)
async def get_active_signals(
    tenant_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    _: bool = Depends(verify_internal_key),
):
    """Unresolved signals for a tenant, newest first."""
    signals = SignalScanner(db, collaborators).get_active_signals(tenant_id, limit=limit)
    return {
        "tenant_id": tenant_id,
        "count": len(signals),
        "signals": [
            {
                "id": s.id,
                "entity_ref": s.entity_ref,
                "signal_type": s.signal_type,
                "status": s.status.value,
                "detected_at": s.detected_at.isoformat(),
                "expires_at": s.expires_at.isoformat() if s.expires_at else None,
            }
            for s in signals
        ],
    }
