"""
Approval Queue

Human decision point for gated opportunities.

- enqueue() is idempotent: one request per opportunity
- resolve() is first-writer-wins through UPDATE ... WHERE status='pending'
- approving IS the execution trigger: the engine runs before resolve returns
- rejection is terminal; the opportunity is never retried automatically
"""
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import (
    ApprovalRequestDB, OpportunityDB, ApprovalStatus, OpportunityStatus, ActorType, utcnow,
)
from ...models.loop_models import ExecutionResult, GateDecision
from .autonomy_gate import AutonomyGate
from .collaborators import Collaborators
from .errors import (
    ApprovalAlreadyResolvedError, ApprovalRequestNotFoundError, DataIntegrityError,
    InvalidTransitionError, OpportunityNotFoundError, PolicyViolationError,
)
from .execution_engine import ExecutionEngine
from .opportunity_types import handler_for_type
from .state_machine import OpportunityStateMachine


logger = logging.getLogger(__name__)


class ApprovalQueue:
    """
    Usage:
        queue = ApprovalQueue(db, collaborators)
        request = queue.enqueue(opportunity, rationale)
        result = queue.resolve(request.id, ApprovalStatus.APPROVED, reviewer="ops@tenant")
    """

    def __init__(self, db: Session, collaborators: Collaborators, engine: Optional[ExecutionEngine] = None):
        self.db = db
        self.collaborators = collaborators
        self.state_machine = OpportunityStateMachine(db)
        self.engine = engine or ExecutionEngine(db, collaborators)
        self.gate = AutonomyGate(db, collaborators.settings)

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(self, opportunity: OpportunityDB, rationale: str) -> ApprovalRequestDB:
        existing = self.get_for_opportunity(opportunity.id)
        if existing is not None:
            return existing
        if opportunity.status != OpportunityStatus.PENDING:
            raise InvalidTransitionError(
                f"Only pending opportunities can be queued for approval "
                f"({opportunity.id} is {opportunity.status.value})"
            )

        request = ApprovalRequestDB(
            id=str(uuid4()),
            opportunity_id=opportunity.id,
            tenant_id=opportunity.tenant_id,
            recommended_action=self.recommended_action(opportunity),
            rationale=rationale,
            status=ApprovalStatus.PENDING,
        )
        savepoint = self.db.begin_nested()
        try:
            self.db.add(request)
            self.db.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            return self.get_for_opportunity(opportunity.id)

        self.state_machine.record_event(
            opportunity.id, OpportunityStatus.PENDING,
            trigger="approval_requested", detail={"approval_request_id": request.id},
        )
        self.db.commit()

        logger.info(f"Queued opportunity {opportunity.id} for approval ({request.id})")
        self.collaborators.notify_safely(opportunity.tenant_id, "approval_requested", {
            "approval_request_id": request.id,
            "opportunity_id": opportunity.id,
            "entity_ref": opportunity.entity_ref,
            "recommended_action": request.recommended_action,
            "rationale": rationale,
        })
        return request

    def recommended_action(self, opportunity: OpportunityDB) -> Dict[str, Any]:
        handler = handler_for_type(opportunity.opportunity_type)
        return {
            "opportunity_type": opportunity.opportunity_type,
            "label": handler.label,
            "entity_ref": opportunity.entity_ref,
            "target_fields": list(handler.target_fields),
            "priority_score": opportunity.priority_score,
            "safety_score": opportunity.safety_score,
            "estimated_impact": opportunity.estimated_impact,
        }

    # =========================================================================
    # RESOLVE
    # =========================================================================

    def resolve(
        self,
        request_id: str,
        decision: ApprovalStatus,
        reviewer: str,
    ) -> Optional[ExecutionResult]:
        """
        Apply a reviewer decision.

        Approved: pending -> approved, then synchronous execution; the
        ExecutionResult is returned. Rejected: pending -> rejected; returns
        None. A request that was already resolved raises
        ApprovalAlreadyResolvedError and changes nothing.
        """
        if decision not in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            raise DataIntegrityError(f"Invalid approval decision: {decision}")

        request = self.db.query(ApprovalRequestDB).filter(ApprovalRequestDB.id == request_id).first()
        if request is None:
            raise ApprovalRequestNotFoundError(request_id)
        opportunity_id = request.opportunity_id
        if decision == ApprovalStatus.APPROVED and request.opportunity is not None:
            self._refuse_if_disabled(request.opportunity)

        updated = (
            self.db.query(ApprovalRequestDB)
            .filter(
                ApprovalRequestDB.id == request_id,
                ApprovalRequestDB.status == ApprovalStatus.PENDING,
            )
            .update({
                ApprovalRequestDB.status: decision,
                ApprovalRequestDB.reviewed_at: utcnow(),
                ApprovalRequestDB.reviewed_by: reviewer,
            }, synchronize_session="fetch")
        )
        if updated != 1:
            self.db.rollback()
            raise ApprovalAlreadyResolvedError(f"Approval request {request_id} was already resolved")

        target = OpportunityStatus.APPROVED if decision == ApprovalStatus.APPROVED else OpportunityStatus.REJECTED
        moved = self.state_machine.transition(
            opportunity_id, OpportunityStatus.PENDING, target,
            trigger=f"review_{decision.value}",
            actor=ActorType.USER,
            detail={"reviewer": reviewer, "approval_request_id": request_id},
        )
        if not moved:
            self.db.rollback()
            raise InvalidTransitionError(f"Opportunity {opportunity_id} is no longer pending")
        self.db.commit()
        logger.info(f"Approval request {request_id} {decision.value} by {reviewer}")

        if decision == ApprovalStatus.REJECTED:
            return None
        return self.engine.execute(opportunity_id, actor=ActorType.USER)

    def approve_opportunity(self, opportunity_id: str, reviewer: str) -> Optional[ExecutionResult]:
        """Approve by opportunity id, queueing it first if it was never queued."""
        opportunity = self._load(opportunity_id)
        self._refuse_if_disabled(opportunity)
        request = self._request_for(opportunity_id, "Approved directly by reviewer")
        return self.resolve(request.id, ApprovalStatus.APPROVED, reviewer)

    def reject_opportunity(self, opportunity_id: str, reviewer: str) -> None:
        request = self._request_for(opportunity_id, "Rejected directly by reviewer")
        self.resolve(request.id, ApprovalStatus.REJECTED, reviewer)

    def cancel(self, request_id: str, reviewer: str = "system") -> ApprovalRequestDB:
        """Withdraw an unresolved request; its opportunity is cancelled."""
        request = self.db.query(ApprovalRequestDB).filter(ApprovalRequestDB.id == request_id).first()
        if request is None:
            raise ApprovalRequestNotFoundError(request_id)

        updated = (
            self.db.query(ApprovalRequestDB)
            .filter(
                ApprovalRequestDB.id == request_id,
                ApprovalRequestDB.status == ApprovalStatus.PENDING,
            )
            .update({
                ApprovalRequestDB.status: ApprovalStatus.REJECTED,
                ApprovalRequestDB.reviewed_at: utcnow(),
                ApprovalRequestDB.reviewed_by: reviewer,
            }, synchronize_session="fetch")
        )
        if updated != 1:
            self.db.rollback()
            raise ApprovalAlreadyResolvedError(f"Approval request {request_id} was already resolved")

        self.state_machine.transition(
            request.opportunity_id, OpportunityStatus.PENDING, OpportunityStatus.CANCELLED,
            trigger="approval_cancelled", actor=ActorType.USER, detail={"by": reviewer},
        )
        self.db.commit()
        logger.info(f"Approval request {request_id} cancelled by {reviewer}")
        return request

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_for_opportunity(self, opportunity_id: str) -> Optional[ApprovalRequestDB]:
        return (
            self.db.query(ApprovalRequestDB)
            .filter(ApprovalRequestDB.opportunity_id == opportunity_id)
            .first()
        )

    def list_pending(self, tenant_id: str) -> List[ApprovalRequestDB]:
        return (
            self.db.query(ApprovalRequestDB)
            .filter(
                ApprovalRequestDB.tenant_id == tenant_id,
                ApprovalRequestDB.status == ApprovalStatus.PENDING,
            )
            .order_by(ApprovalRequestDB.created_at)
            .all()
        )

    def _request_for(self, opportunity_id: str, rationale: str) -> ApprovalRequestDB:
        request = self.get_for_opportunity(opportunity_id)
        if request is not None:
            return request
        return self.enqueue(self._load(opportunity_id), rationale)

    def _refuse_if_disabled(self, opportunity: OpportunityDB) -> None:
        """
        A disabled policy rejects the opportunity outright; no reviewer
        decision overrides it. Raises PolicyViolationError after the
        rejection is committed.
        """
        if opportunity.status != OpportunityStatus.PENDING:
            return
        if self.gate.evaluate(opportunity) != GateDecision.REJECT:
            return

        self.state_machine.transition(
            opportunity.id, OpportunityStatus.PENDING, OpportunityStatus.REJECTED,
            trigger="autonomy_disabled",
            detail={"gate": GateDecision.REJECT.value},
        )
        self.db.query(ApprovalRequestDB).filter(
            ApprovalRequestDB.opportunity_id == opportunity.id,
            ApprovalRequestDB.status == ApprovalStatus.PENDING,
        ).update({
            ApprovalRequestDB.status: ApprovalStatus.REJECTED,
            ApprovalRequestDB.reviewed_at: utcnow(),
            ApprovalRequestDB.reviewed_by: "autonomy_disabled",
        }, synchronize_session="fetch")
        self.db.commit()

        logger.warning(f"Refused approval of {opportunity.id}: autonomy disabled for {opportunity.entity_ref}")
        raise PolicyViolationError(
            f"Autonomy is disabled for {opportunity.entity_ref}; opportunity {opportunity.id} was rejected"
        )

    def _load(self, opportunity_id: str) -> OpportunityDB:
        opportunity = self.db.query(OpportunityDB).filter(OpportunityDB.id == opportunity_id).first()
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)
        return opportunity
