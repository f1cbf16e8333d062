"""
Autonomy Gate

Decides whether an opportunity may run unattended.

decide() is pure and total: every (opportunity, policy) pair maps to
exactly one GateDecision.

    disabled                              -> reject
    approve_only                          -> require_approval
    full, safety <= ceiling[tolerance]    -> auto_execute
    full, safety >  ceiling[tolerance]    -> require_approval

Policy resolution (entity -> tenant -> default) is a separate read step so
the decision itself stays free of I/O.
"""
import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import LoopSettings, get_settings
from ...models.db_models import AutonomyPolicyDB, AutonomyLevel, RiskTolerance, OpportunityDB, utcnow
from ...models.loop_models import AutonomyPolicy, GateDecision


logger = logging.getLogger(__name__)

# Manual approval is the default; autonomy is earned
DEFAULT_POLICY = AutonomyPolicy(
    autonomy_level=AutonomyLevel.APPROVE_ONLY,
    risk_tolerance=RiskTolerance.LOW,
    source="default",
)


def decide(
    opportunity: OpportunityDB,
    policy: AutonomyPolicy,
    settings: Optional[LoopSettings] = None,
) -> GateDecision:
    settings = settings or get_settings()

    if policy.autonomy_level == AutonomyLevel.DISABLED:
        return GateDecision.REJECT
    if policy.autonomy_level == AutonomyLevel.APPROVE_ONLY:
        return GateDecision.REQUIRE_APPROVAL

    ceiling = settings.tolerance_ceilings.get(
        RiskTolerance(policy.risk_tolerance).value,
        settings.tolerance_ceilings["low"],
    )
    if opportunity.safety_score <= ceiling:
        return GateDecision.AUTO_EXECUTE
    return GateDecision.REQUIRE_APPROVAL


def resolve_policy(db: Session, tenant_id: str, entity_ref: Optional[str] = None) -> AutonomyPolicy:
    """Entity policy if one exists, else the tenant default, else DEFAULT_POLICY."""
    if entity_ref is not None:
        row = (
            db.query(AutonomyPolicyDB)
            .filter(
                AutonomyPolicyDB.tenant_id == tenant_id,
                AutonomyPolicyDB.entity_ref == entity_ref,
            )
            .first()
        )
        if row is not None:
            return AutonomyPolicy(row.autonomy_level, row.risk_tolerance, source="entity")

    row = (
        db.query(AutonomyPolicyDB)
        .filter(
            AutonomyPolicyDB.tenant_id == tenant_id,
            AutonomyPolicyDB.entity_ref.is_(None),
        )
        .first()
    )
    if row is not None:
        return AutonomyPolicy(row.autonomy_level, row.risk_tolerance, source="tenant")
    return DEFAULT_POLICY


def set_policy(
    db: Session,
    tenant_id: str,
    autonomy_level: AutonomyLevel,
    risk_tolerance: RiskTolerance,
    entity_ref: Optional[str] = None,
) -> AutonomyPolicyDB:
    """Create or update a policy row. The caller commits."""
    query = db.query(AutonomyPolicyDB).filter(AutonomyPolicyDB.tenant_id == tenant_id)
    if entity_ref is None:
        query = query.filter(AutonomyPolicyDB.entity_ref.is_(None))
    else:
        query = query.filter(AutonomyPolicyDB.entity_ref == entity_ref)
    row = query.first()

    if row is None:
        row = AutonomyPolicyDB(id=str(uuid4()), tenant_id=tenant_id, entity_ref=entity_ref)
        savepoint = db.begin_nested()
        try:
            db.add(row)
            row.autonomy_level = autonomy_level
            row.risk_tolerance = risk_tolerance
            db.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            row = query.first()

    row.autonomy_level = autonomy_level
    row.risk_tolerance = risk_tolerance
    row.updated_at = utcnow()
    db.flush()

    scope = entity_ref or "tenant default"
    logger.info(
        f"Autonomy policy for {tenant_id} ({scope}): "
        f"{AutonomyLevel(autonomy_level).value}/{RiskTolerance(risk_tolerance).value}"
    )
    return row


class AutonomyGate:
    """
    Session-bound convenience wrapper: resolve then decide.

    Usage:
        gate = AutonomyGate(db, settings)
        decision = gate.evaluate(opportunity)
    """

    def __init__(self, db: Session, settings: Optional[LoopSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def policy_for(self, opportunity: OpportunityDB) -> AutonomyPolicy:
        return resolve_policy(self.db, opportunity.tenant_id, opportunity.entity_ref)

    def evaluate(self, opportunity: OpportunityDB) -> GateDecision:
        policy = self.policy_for(opportunity)
        decision = decide(opportunity, policy, self.settings)
        logger.info(
            f"Gate {decision.value} for {opportunity.id} "
            f"(safety={opportunity.safety_score}, policy={policy.autonomy_level.value}/"
            f"{policy.risk_tolerance.value} from {policy.source})"
        )
        return decision
