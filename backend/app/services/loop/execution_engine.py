"""
Execution Engine

Claims an opportunity, snapshots the entity, applies the change and hands
the opportunity to the Proof Evaluator.

Step order (each step conditionally atomic):
1. pending|approved -> executing     (WHERE status = expected)
2. Snapshot written                  (fail-closed: claim reverted, nothing touched)
3. Proposal generated, change applied (bounded retries, exponential backoff)
4. executing -> proving              (executed_at, applied_changes, proof_due_at)

A lost race at step 1 is reported as already handled, never as an error.
An apply that exhausts its retries while its write may still land (still
running, or the entity no longer matches the snapshot) moves to proving
with error_detail set, so proof or rollback settles the entity.
"""
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import (
    OpportunityDB, ApprovalRequestDB, OpportunityStatus, ApprovalStatus, ActorType, utcnow,
)
from ...models.loop_models import ExecutionResult, GateDecision
from .autonomy_gate import AutonomyGate
from .cancellation import CancellationToken, cancellations
from .collaborators import Collaborators
from .errors import (
    CancellationError, InvalidTransitionError, OpportunityLoopError,
    OpportunityNotFoundError, PolicyViolationError, SnapshotError,
)
from .opportunity_types import handler_for_type
from .retry import SingleFlightCall, call_with_timeout, retry_with_backoff
from .snapshot_store import SnapshotStore, compute_state_hash
from .state_machine import OpportunityStateMachine


logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (OpportunityStatus.PENDING, OpportunityStatus.APPROVED)


class ExecutionEngine:
    """
    Usage:
        engine = ExecutionEngine(db, collaborators)
        result = engine.execute(opportunity_id)
    """

    def __init__(
        self,
        db: Session,
        collaborators: Collaborators,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.db = db
        self.collaborators = collaborators
        self.settings = collaborators.settings
        self.state_machine = OpportunityStateMachine(db)
        self.snapshots = SnapshotStore(db)
        self.gate = AutonomyGate(db, self.settings)
        self.sleep = sleep

    # =========================================================================
    # EXECUTE
    # =========================================================================

    def execute(
        self,
        opportunity_id: str,
        token: Optional[CancellationToken] = None,
        actor: ActorType = ActorType.SYSTEM,
    ) -> ExecutionResult:
        """
        Run one opportunity through snapshot and apply.

        A pending opportunity is only claimable when the autonomy gate
        allows unattended execution; otherwise PolicyViolationError.
        Approved opportunities are claimable unless the policy is now
        disabled.
        """
        opportunity = self._load(opportunity_id)
        expected = opportunity.status

        if expected not in CLAIMABLE_STATUSES:
            return ExecutionResult(
                opportunity_id=opportunity_id,
                success=False,
                already_handled=True,
                status=expected.value,
                error=f"Opportunity is already {expected.value}",
            )

        decision = self.gate.evaluate(opportunity)
        if decision == GateDecision.REJECT:
            raise PolicyViolationError(
                f"Autonomy is disabled for {opportunity.entity_ref}; "
                f"opportunity {opportunity_id} cannot execute"
            )
        if expected == OpportunityStatus.PENDING and decision != GateDecision.AUTO_EXECUTE:
            raise PolicyViolationError(
                f"Opportunity {opportunity_id} requires approval before execution (gate: {decision.value})"
            )

        owns_token = token is None
        if owns_token:
            token = cancellations.register(opportunity_id)
        try:
            return self._run(opportunity, expected, token, actor)
        finally:
            if owns_token:
                cancellations.discard(opportunity_id)

    def execute_bulk(self, opportunity_ids: List[str], actor: ActorType = ActorType.USER) -> List[ExecutionResult]:
        """Execute each id independently; one failure never affects another."""
        results = []
        for opportunity_id in opportunity_ids:
            try:
                results.append(self.execute(opportunity_id, actor=actor))
            except OpportunityLoopError as e:
                self.db.rollback()
                logger.warning(f"Bulk execution of {opportunity_id} refused: {e}")
                results.append(ExecutionResult(opportunity_id=opportunity_id, success=False, error=str(e)))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk execution: {succeeded}/{len(results)} succeeded")
        return results

    def _run(
        self,
        opportunity: OpportunityDB,
        expected: OpportunityStatus,
        token: CancellationToken,
        actor: ActorType,
    ) -> ExecutionResult:
        opportunity_id = opportunity.id
        entity_ref = opportunity.entity_ref
        timeout = self.settings.collaborator_timeout_seconds

        # Step 1: claim
        try:
            claimed = self.state_machine.transition(
                opportunity_id, expected, OpportunityStatus.EXECUTING,
                trigger="execution_claimed", actor=actor,
            )
        except IntegrityError:
            # Partial unique index: entity already has an in-flight opportunity
            self.db.rollback()
            logger.info(f"Entity {entity_ref} busy; {opportunity_id} not claimed")
            return ExecutionResult(
                opportunity_id=opportunity_id,
                success=False,
                already_handled=True,
                status=expected.value,
                error=f"Entity {entity_ref} already has an opportunity in flight",
            )
        if not claimed:
            self.db.rollback()
            current = self._load(opportunity_id)
            logger.info(f"Opportunity {opportunity_id} already claimed (now {current.status.value})")
            return ExecutionResult(
                opportunity_id=opportunity_id,
                success=False,
                already_handled=True,
                status=current.status.value,
            )
        self.db.commit()
        logger.info(f"Claimed opportunity {opportunity_id} on {entity_ref}")

        # Step 2: snapshot
        try:
            state = call_with_timeout(self.collaborators.catalog.get, timeout, entity_ref)
            baseline = call_with_timeout(self.collaborators.metrics.performance_indicators, timeout, entity_ref)
            if baseline.get(self.settings.proof_metric) is None:
                raise SnapshotError(
                    f"No baseline '{self.settings.proof_metric}' for {entity_ref}; the change could not be proven"
                )
            self.snapshots.capture(opportunity, state, baseline)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Snapshot failed for {opportunity_id}; releasing claim: {e}")
            self.state_machine.transition(
                opportunity_id, OpportunityStatus.EXECUTING, expected,
                trigger="snapshot_failed", detail={"error": str(e)},
                error_detail=f"Snapshot failed: {e}",
            )
            self.db.commit()
            return ExecutionResult(
                opportunity_id=opportunity_id,
                success=False,
                error=f"Snapshot failed: {e}",
                status=expected.value,
            )

        # Step 3a: proposal
        handler = handler_for_type(opportunity.opportunity_type)
        try:
            change = handler.propose(self.collaborators.proposals, state, opportunity.magnitude)
        except Exception as e:
            return self._fail(opportunity, f"Proposal failed: {e}")
        opportunity.proposed_change = change
        self.db.commit()

        # Point of no return
        if not token.begin_write():
            self.state_machine.transition(
                opportunity_id, OpportunityStatus.EXECUTING, OpportunityStatus.CANCELLED,
                trigger="cancelled_before_write", actor=ActorType.USER,
            )
            self.db.commit()
            logger.info(f"Opportunity {opportunity_id} cancelled before catalog write")
            return ExecutionResult(
                opportunity_id=opportunity_id,
                success=False,
                error="Cancelled before the change was applied",
                status=OpportunityStatus.CANCELLED.value,
            )

        # Step 3b: apply
        apply_change = SingleFlightCall(
            handler.apply, timeout,
            self.collaborators.catalog, entity_ref, change, state,
        )
        try:
            applied = retry_with_backoff(
                apply_change,
                attempts=self.settings.retry_attempts,
                base_delay=self.settings.retry_base_delay_seconds,
                description=f"apply {opportunity.opportunity_type} to {entity_ref}",
                sleep=self.sleep,
            )
        except Exception as e:
            if not self._write_may_have_landed(apply_change, entity_ref, compute_state_hash(state)):
                # Snapshot stays for forensics; nothing to restore
                return self._fail(opportunity, f"Apply failed: {e}")
            # Outcome unknown; handled as applied
            error = f"Apply unconfirmed: {e}"
            logger.critical(f"Opportunity {opportunity_id}: {error}; {entity_ref} may have changed")
            return self._enter_proving(opportunity, change, handler.describe(change, state), error=error)

        # Step 4: proving
        return self._enter_proving(opportunity, change, applied)

    def _enter_proving(
        self,
        opportunity: OpportunityDB,
        change: Dict[str, Any],
        applied: Dict[str, Any],
        error: Optional[str] = None,
    ) -> ExecutionResult:
        executed_at = utcnow()
        detail = {"fields": sorted(change["fields"])}
        if error is not None:
            detail["error"] = error
        self.state_machine.transition(
            opportunity.id, OpportunityStatus.EXECUTING, OpportunityStatus.PROVING,
            trigger="change_applied" if error is None else "change_unconfirmed",
            detail=detail,
            executed_at=executed_at,
            applied_changes=applied,
            proof_due_at=executed_at + timedelta(hours=self.settings.proof_window_hours),
            error_detail=error,
        )
        self.db.commit()

        logger.info(f"Applied {opportunity.opportunity_type} to {opportunity.entity_ref}; proving {opportunity.id}")
        self.collaborators.notify_safely(opportunity.tenant_id, "opportunity_executed", {
            "opportunity_id": opportunity.id,
            "entity_ref": opportunity.entity_ref,
            "opportunity_type": opportunity.opportunity_type,
            "applied_changes": applied,
            "confirmed": error is None,
        })
        return ExecutionResult(
            opportunity_id=opportunity.id,
            success=error is None,
            error=error,
            applied_changes=applied,
            status=OpportunityStatus.PROVING.value,
        )

    def _write_may_have_landed(self, apply_change: SingleFlightCall, entity_ref: str, state_hash: str) -> bool:
        """True unless the entity provably still matches its snapshot."""
        if apply_change.in_flight:
            return True
        try:
            current = call_with_timeout(
                self.collaborators.catalog.get, self.settings.collaborator_timeout_seconds, entity_ref,
            )
        except Exception as e:
            logger.warning(f"Could not re-read {entity_ref} after failed apply: {e}")
            return True
        return compute_state_hash(current) != state_hash

    def _fail(self, opportunity: OpportunityDB, error: str) -> ExecutionResult:
        self.db.rollback()
        logger.error(f"Opportunity {opportunity.id} failed: {error}")
        self.state_machine.transition(
            opportunity.id, OpportunityStatus.EXECUTING, OpportunityStatus.FAILED,
            trigger="execution_failed", detail={"error": error},
            error_detail=error,
        )
        self.db.commit()
        self.collaborators.notify_safely(opportunity.tenant_id, "opportunity_failed", {
            "opportunity_id": opportunity.id,
            "entity_ref": opportunity.entity_ref,
            "error": error,
        })
        return ExecutionResult(
            opportunity_id=opportunity.id,
            success=False,
            error=error,
            status=OpportunityStatus.FAILED.value,
        )

    # =========================================================================
    # CANCEL
    # =========================================================================

    def cancel(self, opportunity_id: str, actor: ActorType = ActorType.USER) -> Dict[str, Any]:
        """
        Cancel work that has not touched the catalog yet.

        pending/approved: cancelled immediately (open approval request is
        rejected with it). executing: the running worker is signalled and
        stops at its checkpoint. Anything already applied raises
        CancellationError; rollback is the only undo path.
        """
        opportunity = self._load(opportunity_id)
        status = opportunity.status

        if status == OpportunityStatus.CANCELLED:
            return {"opportunity_id": opportunity_id, "cancelled": True, "status": status.value,
                    "message": "Already cancelled"}

        if status in CLAIMABLE_STATUSES:
            moved = self.state_machine.transition(
                opportunity_id, status, OpportunityStatus.CANCELLED,
                trigger="cancelled", actor=actor,
            )
            if not moved:
                self.db.rollback()
                return self.cancel(opportunity_id, actor)
            self.db.query(ApprovalRequestDB).filter(
                ApprovalRequestDB.opportunity_id == opportunity_id,
                ApprovalRequestDB.status == ApprovalStatus.PENDING,
            ).update({
                ApprovalRequestDB.status: ApprovalStatus.REJECTED,
                ApprovalRequestDB.reviewed_at: utcnow(),
                ApprovalRequestDB.reviewed_by: "cancelled",
            }, synchronize_session="fetch")
            self.db.commit()
            logger.info(f"Cancelled opportunity {opportunity_id}")
            return {"opportunity_id": opportunity_id, "cancelled": True,
                    "status": OpportunityStatus.CANCELLED.value, "message": "Cancelled"}

        if status == OpportunityStatus.EXECUTING:
            token = cancellations.get(opportunity_id)
            if token is not None and token.cancel():
                logger.info(f"Cancellation requested for executing opportunity {opportunity_id}")
                return {"opportunity_id": opportunity_id, "cancelled": True, "status": status.value,
                        "message": "Cancellation requested; execution stops before the catalog write"}
            raise CancellationError(
                f"Opportunity {opportunity_id} is already applying its change; "
                f"roll it back once it reaches proving"
            )

        if status in (OpportunityStatus.PROVING, OpportunityStatus.COMPLETED):
            raise CancellationError(
                f"Opportunity {opportunity_id} has been applied; use rollback to undo it"
            )
        raise InvalidTransitionError(f"Cannot cancel opportunity in status {status.value}")

    def _load(self, opportunity_id: str) -> OpportunityDB:
        opportunity = self.db.query(OpportunityDB).filter(OpportunityDB.id == opportunity_id).first()
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)
        return opportunity
