"""
Rollback Manager

The only component that writes entity state back from a Snapshot.

- Restores field-for-field through the handler's revert() (Catalog restore)
- Verifies the restored entity hashes to the snapshot's state_hash
- Idempotent: an already rolled-back opportunity is a no-op
- Failure is operationally fatal: logged at CRITICAL and alerted
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...models.db_models import OpportunityDB, OpportunityStatus, ActorType, utcnow
from ...models.loop_models import RollbackResult
from .collaborators import Collaborators
from .errors import (
    InvalidTransitionError, OpportunityNotFoundError, RollbackFailedError, SnapshotError,
)
from .opportunity_types import handler_for_type
from .retry import call_with_timeout, retry_with_backoff
from .snapshot_store import SnapshotStore, compute_state_hash
from .state_machine import OpportunityStateMachine


logger = logging.getLogger(__name__)

ROLLBACK_FROM_STATUSES = (OpportunityStatus.PROVING, OpportunityStatus.COMPLETED)


class RollbackManager:
    """
    Usage:
        manager = RollbackManager(db, collaborators)
        result = manager.rollback(opportunity_id, reason="negative_proof")
    """

    def __init__(self, db: Session, collaborators: Collaborators, sleep=None):
        self.db = db
        self.collaborators = collaborators
        self.settings = collaborators.settings
        self.snapshots = SnapshotStore(db)
        self.state_machine = OpportunityStateMachine(db)
        self.sleep = sleep

    def rollback(
        self,
        opportunity_id: str,
        reason: str,
        actor: ActorType = ActorType.SYSTEM,
        commit: bool = True,
    ) -> RollbackResult:
        """
        Restore the entity to its snapshot and mark the opportunity rolled_back.

        With commit=False the status change is flushed but left for the
        caller to commit together with its own writes.
        """
        opportunity = self._load(opportunity_id)
        status = opportunity.status

        if status == OpportunityStatus.ROLLED_BACK:
            return RollbackResult(opportunity_id, rolled_back=False, no_op=True, message="Already rolled back")
        if status == OpportunityStatus.FAILED and not opportunity.applied_changes:
            return RollbackResult(
                opportunity_id, rolled_back=False, no_op=True,
                message="Failed before apply; entity was never changed",
            )
        if status not in ROLLBACK_FROM_STATUSES:
            raise InvalidTransitionError(
                f"Cannot roll back opportunity {opportunity_id} in status {status.value}"
            )

        snapshot = self.snapshots.get_for_opportunity(opportunity_id)
        if snapshot is None:
            raise SnapshotError(f"No snapshot for opportunity {opportunity_id}")
        if not snapshot.can_rollback:
            raise SnapshotError(f"Snapshot {snapshot.id} is not rollback-capable")
        captured_state = self.snapshots.restorable_state(snapshot)

        self._restore(opportunity, captured_state, snapshot.state_hash, reason)

        moved = self.state_machine.transition(
            opportunity_id, status, OpportunityStatus.ROLLED_BACK,
            trigger="rolled_back",
            actor=actor,
            detail={"reason": reason, "snapshot_id": snapshot.id},
            completed_at=utcnow(),
        )
        if not moved:
            # Restore is idempotent, so a concurrent rollback leaves the same state
            self.db.rollback()
            current = self._load(opportunity_id)
            return RollbackResult(
                opportunity_id, rolled_back=False, no_op=True,
                message=f"Opportunity moved to {current.status.value} concurrently",
            )

        if commit:
            self.db.commit()
        logger.info(f"Rolled back {opportunity_id} on {opportunity.entity_ref}: {reason}")
        self.collaborators.notify_safely(opportunity.tenant_id, "opportunity_rolled_back", {
            "opportunity_id": opportunity_id,
            "entity_ref": opportunity.entity_ref,
            "reason": reason,
        })
        return RollbackResult(opportunity_id, rolled_back=True, message=f"Restored from snapshot {snapshot.id}")

    def _restore(self, opportunity: OpportunityDB, captured_state, expected_hash: str, reason: str) -> None:
        handler = handler_for_type(opportunity.opportunity_type)
        catalog = self.collaborators.catalog
        timeout = self.settings.collaborator_timeout_seconds

        try:
            retry_with_backoff(
                lambda: call_with_timeout(handler.revert, timeout, catalog, opportunity.entity_ref, captured_state),
                attempts=self.settings.retry_attempts,
                base_delay=self.settings.retry_base_delay_seconds,
                description=f"restore {opportunity.entity_ref}",
                sleep=self.sleep,
            )
            restored = call_with_timeout(catalog.get, timeout, opportunity.entity_ref)
        except Exception as e:
            self._alert(opportunity, f"restore failed: {e}", reason)
            raise RollbackFailedError(f"Rollback of {opportunity.id} failed: {e}") from e

        if compute_state_hash(restored) != expected_hash:
            self._alert(opportunity, "restored state does not match snapshot", reason)
            raise RollbackFailedError(
                f"Rollback of {opportunity.id} left {opportunity.entity_ref} different from its snapshot"
            )

    def _alert(self, opportunity: OpportunityDB, problem: str, reason: str) -> None:
        logger.critical(
            f"ROLLBACK FAILED for opportunity {opportunity.id} on {opportunity.entity_ref} "
            f"({reason}): {problem}. Entity may remain in the changed state."
        )
        self.collaborators.notify_safely(opportunity.tenant_id, "rollback_failed", {
            "opportunity_id": opportunity.id,
            "entity_ref": opportunity.entity_ref,
            "reason": reason,
            "problem": problem,
        })

    def _load(self, opportunity_id: str) -> OpportunityDB:
        opportunity = self.db.query(OpportunityDB).filter(OpportunityDB.id == opportunity_id).first()
        if opportunity is None:
            raise OpportunityNotFoundError(opportunity_id)
        return opportunity
