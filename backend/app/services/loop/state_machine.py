"""
Opportunity State Machine

Deterministic state machine for opportunity execution.
Every transition is a conditional update (WHERE status = expected), so two
workers racing on the same opportunity cannot both win. All transitions
are logged immutably.
"""
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import (
    OpportunityStatus, ActorType, OpportunityDB, OpportunityEventDB, utcnow,
)
from .errors import InvalidTransitionError


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# - USER: a human decision (approve, reject, manual rollback, cancel)
# - SYSTEM: the loop itself (claim, apply, prove, auto-rollback)
#
# Any non-terminal state may move to FAILED on an unrecoverable error.
#
# =============================================================================

STATE_CONFIG = {
    OpportunityStatus.PENDING: {
        "description": "Synthesized, waiting for the gate or a reviewer",
        "allowed_transitions": [
            OpportunityStatus.APPROVED,
            OpportunityStatus.REJECTED,
            OpportunityStatus.EXECUTING,  # auto-execute path
            OpportunityStatus.CANCELLED,
            OpportunityStatus.FAILED,
        ],
        "terminal": False,
        "entry_authority": "SYSTEM",
    },
    OpportunityStatus.APPROVED: {
        "description": "Reviewer approved, execution triggered",
        "allowed_transitions": [
            OpportunityStatus.EXECUTING,
            OpportunityStatus.CANCELLED,
            OpportunityStatus.FAILED,
        ],
        "terminal": False,
        "entry_authority": "USER",
    },
    OpportunityStatus.REJECTED: {
        "description": "Reviewer rejected; never retried",
        "allowed_transitions": [],
        "terminal": True,
        "entry_authority": "USER",
    },
    OpportunityStatus.EXECUTING: {
        "description": "Snapshot taken, change being applied",
        "allowed_transitions": [
            OpportunityStatus.PROVING,
            OpportunityStatus.PENDING,    # snapshot failed, revert claim
            OpportunityStatus.APPROVED,   # snapshot failed, revert claim
            OpportunityStatus.CANCELLED,  # only before the catalog write
            OpportunityStatus.FAILED,
        ],
        "terminal": False,
        "entry_authority": "SYSTEM",
    },
    OpportunityStatus.PROVING: {
        "description": "Change applied, measurement window open",
        "allowed_transitions": [
            OpportunityStatus.COMPLETED,
            OpportunityStatus.ROLLED_BACK,
            OpportunityStatus.FAILED,
        ],
        "terminal": False,
        "entry_authority": "SYSTEM",
    },
    OpportunityStatus.COMPLETED: {
        "description": "Proof finished without a negative verdict",
        "allowed_transitions": [OpportunityStatus.ROLLED_BACK],  # manual undo
        "terminal": True,
        "entry_authority": "SYSTEM",
    },
    OpportunityStatus.ROLLED_BACK: {
        "description": "Entity restored from snapshot",
        "allowed_transitions": [],
        "terminal": True,
        "entry_authority": "SYSTEM",
    },
    OpportunityStatus.FAILED: {
        "description": "Unrecoverable error; see error_detail",
        "allowed_transitions": [],
        "terminal": True,
        "entry_authority": "SYSTEM",
    },
    OpportunityStatus.CANCELLED: {
        "description": "Cancelled before any change was applied",
        "allowed_transitions": [],
        "terminal": True,
        "entry_authority": "USER",
    },
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class OpportunityStateMachine:
    """
    Conditional status transitions for opportunities.

    Core Principles:
    - The database row is the lock; no in-process locks
    - Losing a race is not an error: transition() returns False
    - Every successful transition writes an OpportunityEventDB row
    - The caller owns the commit
    """

    def __init__(self, db: Session):
        self.db = db

    def get_state_config(self, status: OpportunityStatus) -> Dict[str, Any]:
        return STATE_CONFIG.get(status, {})

    def can_transition(
        self,
        from_status: OpportunityStatus,
        to_status: OpportunityStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        config = self.get_state_config(from_status)
        if to_status in config.get("allowed_transitions", []):
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_status.value} to {to_status.value}"

    def is_terminal(self, status: OpportunityStatus) -> bool:
        return self.get_state_config(status).get("terminal", False)

    def transition(
        self,
        opportunity_id: str,
        expected: OpportunityStatus,
        to_status: OpportunityStatus,
        trigger: str,
        actor: ActorType = ActorType.SYSTEM,
        detail: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> bool:
        """
        Move an opportunity from `expected` to `to_status` if it is still there.

        Extra keyword arguments are written to the row in the same UPDATE.
        Returns True when this caller performed the transition.
        Raises InvalidTransitionError for edges outside STATE_CONFIG.
        """
        allowed, reason = self.can_transition(expected, to_status)
        if not allowed:
            raise InvalidTransitionError(reason)

        values = {OpportunityDB.status: to_status, OpportunityDB.updated_at: utcnow()}
        for name, value in fields.items():
            values[getattr(OpportunityDB, name)] = value

        updated = (
            self.db.query(OpportunityDB)
            .filter(
                OpportunityDB.id == opportunity_id,
                OpportunityDB.status == expected,
            )
            .update(values, synchronize_session="fetch")
        )

        if updated != 1:
            return False

        # Immutable audit entry
        self.db.add(OpportunityEventDB(
            id=str(uuid4()),
            opportunity_id=opportunity_id,
            from_status=expected.value,
            to_status=to_status.value,
            trigger=trigger,
            actor=actor,
            detail=detail,
        ))
        self.db.flush()
        return True

    def record_event(
        self,
        opportunity_id: str,
        status: OpportunityStatus,
        trigger: str,
        actor: ActorType = ActorType.SYSTEM,
        detail: Optional[Dict[str, Any]] = None,
    ) -> OpportunityEventDB:
        """Log a non-transition event (creation, deferral) on the trail."""
        event = OpportunityEventDB(
            id=str(uuid4()),
            opportunity_id=opportunity_id,
            from_status=None,
            to_status=status.value,
            trigger=trigger,
            actor=actor,
            detail=detail,
        )
        self.db.add(event)
        self.db.flush()
        return event
