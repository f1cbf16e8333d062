"""
Proof Evaluator

Measures an applied change after its window and finalises the opportunity.

    delta          = after - before
    relative_delta = delta / |before|

    relative_delta >  +materiality  -> success  -> completed, learned from
    relative_delta <  -materiality  -> negative -> rolled back
    otherwise                       -> neutral  -> completed

The before metric is the baseline captured in the snapshot at execution
time. The window lives in the database (proof_due_at), so evaluation is
resumable: run_due() picks up whatever is due, whichever process runs it.
Metrics outages defer the evaluation; they never produce a verdict and
never trigger rollback.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    OpportunityDB, ProofRecordDB, SnapshotDB, OpportunityStatus, ProofVerdict, utcnow,
)
from .collaborators import Collaborators
from .errors import (
    MetricsUnavailableError, OpportunityLoopError, OpportunityNotFoundError,
    RollbackFailedError, SnapshotError, TransientCollaboratorError,
)
from .pattern_learner import PatternLearner
from .retry import call_with_timeout
from .rollback_manager import RollbackManager
from .snapshot_store import SnapshotStore
from .state_machine import OpportunityStateMachine


logger = logging.getLogger(__name__)


def compute_verdict(before: float, after: float, materiality: float) -> Dict[str, Any]:
    """Delta, relative delta and verdict for one before/after pair."""
    delta = after - before
    if before:
        relative = delta / abs(before)
        if relative > materiality:
            verdict = ProofVerdict.SUCCESS
        elif relative < -materiality:
            verdict = ProofVerdict.NEGATIVE
        else:
            verdict = ProofVerdict.NEUTRAL
    else:
        # No baseline to scale against: direction only
        relative = None
        if delta > 0:
            verdict = ProofVerdict.SUCCESS
        elif delta < 0:
            verdict = ProofVerdict.NEGATIVE
        else:
            verdict = ProofVerdict.NEUTRAL
    return {
        "delta": round(delta, 4),
        "relative_delta": round(relative, 4) if relative is not None else None,
        "verdict": verdict,
    }


class ProofEvaluator:
    """
    Usage:
        evaluator = ProofEvaluator(db, collaborators)
        proof = evaluator.evaluate(opportunity_id)      # None when deferred
        summary = evaluator.run_due()
    """

    def __init__(self, db: Session, collaborators: Collaborators, sleep=None):
        self.db = db
        self.collaborators = collaborators
        self.settings = collaborators.settings
        self.snapshots = SnapshotStore(db)
        self.state_machine = OpportunityStateMachine(db)
        self.rollbacks = RollbackManager(db, collaborators, sleep=sleep)
        self.learner = PatternLearner(db, self.settings)

    def evaluate(self, opportunity_id: str, force: bool = False) -> Optional[ProofRecordDB]:
        """
        Produce the ProofRecord for a proving opportunity.

        Returns the existing record if the opportunity was already proven,
        and None when the window is still open (unless force) or the
        measurement had to be deferred.
        """
        opportunity = self._load(opportunity_id)

        if opportunity.status != OpportunityStatus.PROVING:
            existing = self._existing_proof(opportunity_id)
            if existing is None:
                logger.info(f"Opportunity {opportunity_id} is {opportunity.status.value}; nothing to prove")
            return existing

        now = utcnow()
        if not force and opportunity.proof_due_at and opportunity.proof_due_at > now:
            logger.info(f"Proof window for {opportunity_id} open until {opportunity.proof_due_at}")
            return None

        metric_name = self.settings.proof_metric
        snapshot = self.snapshots.get_for_opportunity(opportunity_id)
        if snapshot is None:
            self._abandon(opportunity, None, "no snapshot")
        try:
            before = self.snapshots.baseline_metrics(snapshot).get(metric_name)
        except SnapshotError as e:
            self._abandon(opportunity, None, str(e))
        if before is None:
            self._abandon(opportunity, snapshot, f"snapshot {snapshot.id} has no baseline for '{metric_name}'")

        try:
            current = call_with_timeout(
                self.collaborators.metrics.performance_indicators,
                self.settings.collaborator_timeout_seconds,
                opportunity.entity_ref,
            )
        except (MetricsUnavailableError, TransientCollaboratorError) as e:
            self._defer(opportunity, str(e))
            return None

        after = current.get(metric_name)
        if after is None:
            self._defer(opportunity, f"metric '{metric_name}' not reported")
            return None

        outcome = compute_verdict(float(before), float(after), self.settings.materiality_threshold)
        verdict = outcome["verdict"]
        logger.info(
            f"Proof for {opportunity_id}: {metric_name} {before} -> {after} "
            f"(relative {outcome['relative_delta']}) = {verdict.value}"
        )

        if verdict == ProofVerdict.NEGATIVE:
            try:
                result = self.rollbacks.rollback(opportunity_id, reason="negative_proof", commit=False)
            except RollbackFailedError:
                # Stay in proving; retried on the next due pass
                self.db.rollback()
                self._defer(opportunity, "rollback failed")
                raise
            if not result.rolled_back:
                self.db.rollback()
                return self._existing_proof(opportunity_id)
        else:
            moved = self.state_machine.transition(
                opportunity_id, OpportunityStatus.PROVING, OpportunityStatus.COMPLETED,
                trigger="proof_completed",
                detail={"verdict": verdict.value, "relative_delta": outcome["relative_delta"]},
                completed_at=now,
            )
            if not moved:
                self.db.rollback()
                return self._existing_proof(opportunity_id)

        proof = ProofRecordDB(
            id=str(uuid4()),
            opportunity_id=opportunity_id,
            metric_name=metric_name,
            before_metric=float(before),
            after_metric=float(after),
            delta=outcome["delta"],
            relative_delta=outcome["relative_delta"],
            exposure=float(current.get("traffic", 0) or 0),
            verdict=verdict,
            measured_at=now,
        )
        self.db.add(proof)
        self.db.flush()

        if verdict == ProofVerdict.SUCCESS:
            self.learner.learn(opportunity, proof)
        self.db.commit()

        self.collaborators.notify_safely(opportunity.tenant_id, "proof_recorded", {
            "opportunity_id": opportunity_id,
            "entity_ref": opportunity.entity_ref,
            "verdict": verdict.value,
            "metric": metric_name,
            "before": proof.before_metric,
            "after": proof.after_metric,
        })
        return proof

    def run_due(self, limit: int = 50, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Evaluate every proving opportunity whose window has closed."""
        now = now or utcnow()
        due = (
            self.db.query(OpportunityDB.id)
            .filter(
                OpportunityDB.status == OpportunityStatus.PROVING,
                OpportunityDB.proof_due_at <= now,
            )
            .order_by(OpportunityDB.proof_due_at)
            .limit(limit)
            .all()
        )

        results = {"due": len(due), "evaluated": 0, "deferred": 0, "verdicts": {}, "errors": []}
        for (opportunity_id,) in due:
            try:
                proof = self.evaluate(opportunity_id, force=True)
            except OpportunityLoopError as e:
                self.db.rollback()
                logger.error(f"Proof evaluation failed for {opportunity_id}: {e}")
                results["errors"].append({"opportunity_id": opportunity_id, "error": str(e)})
                continue
            if proof is None:
                results["deferred"] += 1
            else:
                results["evaluated"] += 1
                results["verdicts"][opportunity_id] = proof.verdict.value

        logger.info(
            f"Proof run: {results['evaluated']} evaluated, {results['deferred']} deferred, "
            f"{len(results['errors'])} errors"
        )
        return results

    def _defer(self, opportunity: OpportunityDB, reason: str) -> None:
        retry_at = utcnow() + timedelta(minutes=self.settings.proof_retry_minutes)
        opportunity.proof_due_at = retry_at
        opportunity.proof_attempts = (opportunity.proof_attempts or 0) + 1
        self.state_machine.record_event(
            opportunity.id,
            OpportunityStatus.PROVING,
            trigger="proof_deferred",
            detail={"reason": reason, "retry_at": retry_at.isoformat(), "attempt": opportunity.proof_attempts},
        )
        self.db.commit()
        logger.warning(f"Deferred proof for {opportunity.id} to {retry_at}: {reason}")

    def _abandon(self, opportunity: OpportunityDB, snapshot: Optional[SnapshotDB], problem: str) -> None:
        """
        Settle a proving opportunity that can never be measured, then raise
        SnapshotError.

        The change is rolled back when the snapshot allows it; otherwise the
        opportunity fails with the problem recorded. Either way the entity's
        in-flight slot is released.
        """
        logger.error(f"Cannot prove {opportunity.id}: {problem}")
        restored = False
        if snapshot is not None and snapshot.can_rollback:
            try:
                restored = self.rollbacks.rollback(opportunity.id, reason="unprovable").rolled_back
            except RollbackFailedError:
                self.db.rollback()
                self._defer(opportunity, "rollback failed")
                raise
            except SnapshotError as e:
                self.db.rollback()
                problem = f"{problem}; {e}"

        if not restored:
            moved = self.state_machine.transition(
                opportunity.id, OpportunityStatus.PROVING, OpportunityStatus.FAILED,
                trigger="proof_impossible",
                detail={"error": problem},
                error_detail=f"Proof impossible: {problem}",
            )
            self.db.commit()
            if moved:
                logger.critical(
                    f"Opportunity {opportunity.id} failed unproven; {opportunity.entity_ref} "
                    f"may remain changed: {problem}"
                )
                self.collaborators.notify_safely(opportunity.tenant_id, "opportunity_failed", {
                    "opportunity_id": opportunity.id,
                    "entity_ref": opportunity.entity_ref,
                    "error": f"Proof impossible: {problem}",
                })

        raise SnapshotError(f"Opportunity {opportunity.id} could not be proven: {problem}")

    def _existing_proof(self, opportunity_id: str) -> Optional[ProofRecordDB]:
        return (
            self.db.query(ProofRecordDB)
            .filter(ProofRecordDB.opportunity_id == opportunity_id)
            .first()
        )

    def _load(self, opportunity_id: str) -> OpportunityDB:
        opportunity = self.db.query(OpportunityDB).filter(OpportunityDB.id == opportunity_id).first()
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)
        return opportunity
