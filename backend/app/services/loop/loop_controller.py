"""
Loop Controller

One tenant iteration: scan -> synthesize -> gate -> act.

    auto_execute      -> Execution Engine (inline, or on the worker pool)
    require_approval  -> Approval Queue
    reject            -> opportunity rejected; nothing captured or changed

The tenant's loop position is never held in memory; get_loop_state()
derives it from the opportunity table.
"""
import logging
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy.orm import Session

from ...models.db_models import (
    ApprovalRequestDB, OpportunityDB, OpportunityStatus, ApprovalStatus, IN_FLIGHT_STATUSES,
)
from ...models.loop_models import (
    CycleResult, GateDecision, LoopStage, LoopState, LOOP_STAGE_LABELS,
)
from .approval_queue import ApprovalQueue
from .autonomy_gate import AutonomyGate
from .collaborators import Collaborators
from .errors import OpportunityLoopError
from .execution_engine import ExecutionEngine
from .opportunity_types import handler_for_type
from .signal_scanner import SignalScanner
from .state_machine import OpportunityStateMachine
from .synthesizer import OpportunitySynthesizer, rank

if TYPE_CHECKING:
    from .worker_pool import LoopWorkerPool


logger = logging.getLogger(__name__)


class LoopController:
    """
    Usage:
        controller = LoopController(db, collaborators)
        result = controller.run_cycle(tenant_id)
        opportunity = controller.next_opportunity(tenant_id)
    """

    def __init__(
        self,
        db: Session,
        collaborators: Collaborators,
        worker_pool: Optional["LoopWorkerPool"] = None,
    ):
        self.db = db
        self.collaborators = collaborators
        self.settings = collaborators.settings
        self.scanner = SignalScanner(db, collaborators)
        self.synthesizer = OpportunitySynthesizer(db, collaborators)
        self.gate = AutonomyGate(db, self.settings)
        self.engine = ExecutionEngine(db, collaborators)
        self.approvals = ApprovalQueue(db, collaborators, engine=self.engine)
        self.state_machine = OpportunityStateMachine(db)
        self.worker_pool = worker_pool

    def run_cycle(self, tenant_id: str, batch: bool = False) -> CycleResult:
        """Run one detection-to-action iteration for a tenant."""
        result = CycleResult(tenant_id=tenant_id)
        logger.info(f"Loop cycle start for tenant {tenant_id} (batch={batch})")

        new_signals = self.scanner.scan(tenant_id)
        self.db.commit()
        result.signals_detected = len(new_signals)

        active = self.scanner.get_active_signals(tenant_id, limit=self.settings.scan_entity_limit)
        created = self.synthesizer.synthesize(active)
        self.db.commit()
        result.opportunities_created = len(created)

        candidates = self.synthesizer.select(self._ungated(tenant_id), batch=batch)
        if not candidates:
            logger.info(f"No new opportunity to act on for tenant {tenant_id}")
            return result

        for opportunity in candidates:
            try:
                self._act(opportunity, result)
            except OpportunityLoopError as e:
                self.db.rollback()
                logger.error(f"Cycle action on {opportunity.id} failed: {e}")
                result.errors.append(f"{opportunity.id}: {e}")

        logger.info(
            f"Loop cycle done for tenant {tenant_id}: {result.signals_detected} signals, "
            f"{result.opportunities_created} opportunities, decision="
            f"{result.gate_decision.value if result.gate_decision else None}"
        )
        return result

    def _act(self, opportunity: OpportunityDB, result: CycleResult) -> None:
        decision = self.gate.evaluate(opportunity)
        if result.selected_opportunity_id is None:
            result.selected_opportunity_id = opportunity.id
            result.gate_decision = decision
            result.foundational = bool(opportunity.is_foundational)

        if decision == GateDecision.REJECT:
            self.state_machine.transition(
                opportunity.id, OpportunityStatus.PENDING, OpportunityStatus.REJECTED,
                trigger="autonomy_disabled",
                detail={"gate": decision.value},
            )
            self.db.commit()
            return

        if decision == GateDecision.REQUIRE_APPROVAL:
            request = self.approvals.enqueue(opportunity, self.rationale(opportunity))
            if result.approval_request_id is None:
                result.approval_request_id = request.id
            return

        if self.worker_pool is not None:
            self.worker_pool.submit_execution(opportunity.id)
            result.submitted.append(opportunity.id)
            logger.info(f"Submitted {opportunity.id} to worker pool")
            return

        execution = self.engine.execute(opportunity.id)
        if result.execution is None:
            result.execution = execution

    def rationale(self, opportunity: OpportunityDB) -> str:
        handler = handler_for_type(opportunity.opportunity_type)
        basis = "best-practice check" if opportunity.is_foundational else "detected friction"
        return (
            f"{handler.label} on {opportunity.entity_ref} ({basis}): estimated impact "
            f"{opportunity.estimated_impact:.2f}, safety score {opportunity.safety_score:.0f}/100"
        )

    # =========================================================================
    # NEXT OPPORTUNITY
    # =========================================================================

    def next_opportunity(self, tenant_id: str) -> Optional[OpportunityDB]:
        """
        Best-ranked open opportunity for the tenant.

        If nothing is open a cycle is run; if that still yields nothing the
        foundational set is emitted and gated, so an active tenant always
        gets one. A tenant whose policy is disabled gets None.
        """
        opportunity = self._best_open(tenant_id)
        if opportunity is not None:
            return opportunity

        self.run_cycle(tenant_id)
        opportunity = self._best_open(tenant_id) or self._latest_in_flight(tenant_id)
        if opportunity is not None:
            return opportunity

        signals = self.scanner.emit_foundational(tenant_id)
        created = self.synthesizer.synthesize(signals)
        self.db.commit()

        # Foundational opportunities pass the gate like any other
        gated = CycleResult(tenant_id=tenant_id)
        for candidate in created:
            try:
                self._act(candidate, gated)
            except OpportunityLoopError as e:
                self.db.rollback()
                logger.error(f"Foundational action on {candidate.id} failed: {e}")
        return self._best_open(tenant_id) or self._latest_in_flight(tenant_id)

    def _best_open(self, tenant_id: str) -> Optional[OpportunityDB]:
        ranked = self.synthesizer.open_opportunities(tenant_id)
        return ranked[0] if ranked else None

    def _latest_in_flight(self, tenant_id: str) -> Optional[OpportunityDB]:
        return (
            self.db.query(OpportunityDB)
            .filter(
                OpportunityDB.tenant_id == tenant_id,
                OpportunityDB.status.in_(IN_FLIGHT_STATUSES),
            )
            .order_by(OpportunityDB.updated_at.desc())
            .first()
        )

    def _ungated(self, tenant_id: str) -> List[OpportunityDB]:
        """Pending opportunities that have not been sent to the approval queue."""
        rows = (
            self.db.query(OpportunityDB)
            .outerjoin(ApprovalRequestDB, ApprovalRequestDB.opportunity_id == OpportunityDB.id)
            .filter(
                OpportunityDB.tenant_id == tenant_id,
                OpportunityDB.status == OpportunityStatus.PENDING,
                ApprovalRequestDB.id.is_(None),
            )
            .all()
        )
        return rank(rows)

    # =========================================================================
    # LOOP STATE
    # =========================================================================

    def get_loop_state(self, tenant_id: str) -> LoopState:
        """Stage of the tenant's loop, derived from stored opportunities."""
        executing = self._first_with_status(tenant_id, OpportunityStatus.EXECUTING)
        proving_count = (
            self.db.query(OpportunityDB)
            .filter(OpportunityDB.tenant_id == tenant_id, OpportunityDB.status == OpportunityStatus.PROVING)
            .count()
        )
        pending_approvals = (
            self.db.query(ApprovalRequestDB)
            .filter(ApprovalRequestDB.tenant_id == tenant_id, ApprovalRequestDB.status == ApprovalStatus.PENDING)
            .count()
        )

        if executing is not None:
            stage, current = LoopStage.EXECUTING, executing
        elif pending_approvals:
            stage = LoopStage.AWAITING_APPROVAL
            request = (
                self.db.query(ApprovalRequestDB)
                .filter(ApprovalRequestDB.tenant_id == tenant_id, ApprovalRequestDB.status == ApprovalStatus.PENDING)
                .order_by(ApprovalRequestDB.created_at)
                .first()
            )
            current = request.opportunity
        elif proving_count:
            stage = LoopStage.MEASURING_IMPACT
            current = self._first_with_status(tenant_id, OpportunityStatus.PROVING)
        else:
            stage, current = LoopStage.IDLE, None

        return LoopState(
            tenant_id=tenant_id,
            stage=stage,
            stage_label=LOOP_STAGE_LABELS[stage],
            current_opportunity_id=current.id if current else None,
            entity_ref=current.entity_ref if current else None,
            opportunity_type=current.opportunity_type if current else None,
            pending_approvals=pending_approvals,
            proving_count=proving_count,
            since=current.updated_at.isoformat() if current and current.updated_at else None,
        )

    def _first_with_status(self, tenant_id: str, status: OpportunityStatus) -> Optional[OpportunityDB]:
        return (
            self.db.query(OpportunityDB)
            .filter(OpportunityDB.tenant_id == tenant_id, OpportunityDB.status == status)
            .order_by(OpportunityDB.updated_at)
            .first()
        )
