"""
Snapshot Store

Append-only capture of an entity's state taken immediately before the loop
mutates it. Snapshots are never updated or deleted by the loop.

Payload format (schema-tagged so older snapshots stay restorable):

    {
        "schema": "entity_state",
        "version": 1,
        "state": {...},      # full entity state from the Catalog Service
        "metrics": {...},    # baseline indicators for the Proof Evaluator
    }

A SHA256 of the canonical state is stored next to the payload and checked
on every decode, so a restore always writes back exactly what was captured.
"""
import hashlib
import json
import logging
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import OpportunityDB, SnapshotDB
from .errors import SnapshotError


logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA = "entity_state"
SNAPSHOT_VERSION = 1


def _upgrade_v0(payload: Dict[str, Any]) -> Dict[str, Any]:
    # v0 stored the bare entity state with no envelope or metrics
    return {
        "schema": SNAPSHOT_SCHEMA,
        "version": 1,
        "state": payload.get("state", payload),
        "metrics": {},
    }


# version -> function producing the next version's payload
PAYLOAD_UPGRADERS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    0: _upgrade_v0,
}


def compute_state_hash(state: Dict[str, Any]) -> str:
    """SHA256 over canonical JSON (sorted keys, compact separators)."""
    state_json = json.dumps(state, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(state_json.encode()).hexdigest()


class SnapshotStore:
    """
    Durable capture/restore source for entity state.

    Usage:
        store = SnapshotStore(db)
        snapshot = store.capture(opportunity, state, metrics, reason="loop_execution")
        state = store.restorable_state(snapshot)
    """

    def __init__(self, db: Session):
        self.db = db

    def capture(
        self,
        opportunity: OpportunityDB,
        state: Dict[str, Any],
        metrics: Optional[Dict[str, Any]] = None,
        reason: str = "loop_execution",
        can_rollback: bool = True,
    ) -> SnapshotDB:
        """
        Write the one snapshot for an opportunity.

        Raises SnapshotError if one already exists or the write fails;
        callers must not mutate the entity in that case.
        """
        if self.get_for_opportunity(opportunity.id) is not None:
            raise SnapshotError(f"Snapshot already exists for opportunity {opportunity.id}")

        payload = {
            "schema": SNAPSHOT_SCHEMA,
            "version": SNAPSHOT_VERSION,
            "state": state,
            "metrics": metrics or {},
        }
        snapshot = SnapshotDB(
            id=str(uuid4()),
            opportunity_id=opportunity.id,
            entity_ref=opportunity.entity_ref,
            captured_state=payload,
            state_hash=compute_state_hash(state),
            reason=reason,
            can_rollback=can_rollback,
        )
        try:
            self.db.add(snapshot)
            self.db.flush()
        except IntegrityError as e:
            raise SnapshotError(f"Snapshot write failed for {opportunity.id}: {e.orig}") from e

        logger.info(f"Captured snapshot {snapshot.id} for {opportunity.entity_ref} (opportunity {opportunity.id})")
        return snapshot

    def get_for_opportunity(self, opportunity_id: str) -> Optional[SnapshotDB]:
        return (
            self.db.query(SnapshotDB)
            .filter(SnapshotDB.opportunity_id == opportunity_id)
            .first()
        )

    def decode(self, snapshot: SnapshotDB) -> Dict[str, Any]:
        """Return the payload upgraded to the current version."""
        payload = dict(snapshot.captured_state or {})
        version = payload.get("version", 0)
        if payload.get("schema", SNAPSHOT_SCHEMA) != SNAPSHOT_SCHEMA:
            raise SnapshotError(f"Snapshot {snapshot.id} has unknown schema {payload.get('schema')}")

        while version < SNAPSHOT_VERSION:
            upgrader = PAYLOAD_UPGRADERS.get(version)
            if upgrader is None:
                raise SnapshotError(f"No upgrade path from snapshot version {version}")
            payload = upgrader(payload)
            version = payload["version"]

        if version > SNAPSHOT_VERSION:
            raise SnapshotError(f"Snapshot {snapshot.id} version {version} is newer than supported")
        return payload

    def restorable_state(self, snapshot: SnapshotDB) -> Dict[str, Any]:
        """
        Entity state to write back, verified against the stored hash.
        """
        state = self.decode(snapshot)["state"]
        if compute_state_hash(state) != snapshot.state_hash:
            raise SnapshotError(f"Snapshot {snapshot.id} failed integrity check")
        return state

    def baseline_metrics(self, snapshot: SnapshotDB) -> Dict[str, Any]:
        return self.decode(snapshot).get("metrics") or {}
