"""
Opportunity Loop - Autonomy API Router

Autonomy policy management and learned insights for a tenant.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import TenantIdentity, get_current_tenant
from ..config import get_settings
from ..database import get_db
from ..models.db_models import AutonomyLevel, RiskTolerance
from ..services.loop import PatternLearner, resolve_policy, set_policy


router = APIRouter(prefix="/autonomy", tags=["autonomy"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class AutonomyPolicyRequest(BaseModel):
    """Request model for updating an autonomy policy."""
    autonomy_level: str  # full, approve_only, disabled
    risk_tolerance: str = "low"  # low, medium, high
    entity_ref: Optional[str] = None  # omit for the tenant default


class AutonomyPolicyResponse(BaseModel):
    tenant_id: str
    entity_ref: Optional[str]
    autonomy_level: str
    risk_tolerance: str
    source: str
    safety_ceiling: float


class LearnedPatternResponse(BaseModel):
    category: str
    success_rate: float
    sample_size: int
    confidence: float
    confidence_weight: float
    average_lift: Optional[float] = None


class LearnedPatternList(BaseModel):
    patterns: List[LearnedPatternResponse]
    total: int


def _policy_response(tenant_id: str, entity_ref: Optional[str], policy) -> AutonomyPolicyResponse:
    ceilings = get_settings().tolerance_ceilings
    return AutonomyPolicyResponse(
        tenant_id=tenant_id,
        entity_ref=entity_ref,
        autonomy_level=policy.autonomy_level.value,
        risk_tolerance=policy.risk_tolerance.value,
        source=policy.source,
        safety_ceiling=ceilings.get(policy.risk_tolerance.value, ceilings["low"]),
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("", response_model=AutonomyPolicyResponse)
async def get_autonomy_policy(
    entity_ref: Optional[str] = None,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """Effective policy for an entity (or the tenant default)."""
    policy = resolve_policy(db, identity.tenant_id, entity_ref)
    return _policy_response(identity.tenant_id, entity_ref, policy)


@router.put("", response_model=AutonomyPolicyResponse)
async def update_autonomy_policy(
    request: AutonomyPolicyRequest,
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """Set the tenant default policy, or an override for one entity."""
    try:
        level = AutonomyLevel(request.autonomy_level)
        tolerance = RiskTolerance(request.risk_tolerance)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Invalid policy. autonomy_level must be one of {[l.value for l in AutonomyLevel]}, "
                f"risk_tolerance one of {[t.value for t in RiskTolerance]}"
            ),
        )

    set_policy(db, identity.tenant_id, level, tolerance, entity_ref=request.entity_ref)
    db.commit()

    policy = resolve_policy(db, identity.tenant_id, request.entity_ref)
    return _policy_response(identity.tenant_id, request.entity_ref, policy)


@router.get("/patterns", response_model=LearnedPatternList)
async def get_learned_patterns(
    identity: TenantIdentity = Depends(get_current_tenant),
    db: Session = Depends(get_db),
):
    """What the loop has learned works for this tenant, by category."""
    learner = PatternLearner(db)
    patterns = learner.get_patterns(identity.tenant_id)
    return LearnedPatternList(
        patterns=[
            LearnedPatternResponse(
                category=p.category,
                success_rate=p.success_rate,
                sample_size=p.sample_size,
                confidence=p.confidence,
                confidence_weight=learner.confidence_weight(identity.tenant_id, p.category),
                average_lift=(p.pattern_data or {}).get("average_lift"),
            )
            for p in patterns
        ],
        total=len(patterns),
    )
