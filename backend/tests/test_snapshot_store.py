"""
Tests for SnapshotStore.

Key tests:
1. One snapshot per opportunity; a second capture is refused
2. Restorable state is verified against the stored hash
3. Version 0 payloads (bare state) are upgraded on read
4. Unknown or future payload versions are rejected
"""
import pytest

from app.models.db_models import SnapshotDB
from app.services.loop.errors import SnapshotError
from app.services.loop.snapshot_store import SNAPSHOT_VERSION, SnapshotStore, compute_state_hash


STATE = {"title": "mug", "description": "A mug.", "price": 9.5, "tags": ["kitchen"]}


class TestComputeStateHash:
    def test_key_order_does_not_matter(self):
        reordered = {"tags": ["kitchen"], "price": 9.5, "description": "A mug.", "title": "mug"}
        assert compute_state_hash(STATE) == compute_state_hash(reordered)

    def test_any_field_change_changes_hash(self):
        assert compute_state_hash(STATE) != compute_state_hash({**STATE, "price": 9.49})


class TestCapture:
    """Append-only capture."""

    def test_capture_and_restore(self, db, make_opportunity):
        opportunity = make_opportunity()
        store = SnapshotStore(db)

        snapshot = store.capture(opportunity, STATE, {"revenue": 100.0})
        db.commit()

        assert snapshot.captured_state["version"] == SNAPSHOT_VERSION
        assert store.restorable_state(snapshot) == STATE
        assert store.baseline_metrics(snapshot) == {"revenue": 100.0}

    def test_second_capture_is_refused(self, db, make_opportunity):
        opportunity = make_opportunity()
        store = SnapshotStore(db)
        store.capture(opportunity, STATE)
        db.commit()

        with pytest.raises(SnapshotError):
            store.capture(opportunity, {**STATE, "title": "changed"})

    def test_tampered_state_fails_integrity_check(self, db, make_opportunity):
        opportunity = make_opportunity()
        store = SnapshotStore(db)
        snapshot = store.capture(opportunity, STATE)
        snapshot.captured_state = {**snapshot.captured_state, "state": {**STATE, "price": 1.0}}

        with pytest.raises(SnapshotError):
            store.restorable_state(snapshot)


class TestVersioning:
    """Older payloads stay restorable."""

    def test_v0_bare_state_is_upgraded(self, db):
        snapshot = SnapshotDB(id="s0", captured_state=dict(STATE), state_hash=compute_state_hash(STATE))
        store = SnapshotStore(db)

        payload = store.decode(snapshot)

        assert payload["version"] == SNAPSHOT_VERSION
        assert store.restorable_state(snapshot) == STATE
        assert store.baseline_metrics(snapshot) == {}

    def test_future_version_is_rejected(self, db):
        snapshot = SnapshotDB(
            id="s9",
            captured_state={"schema": "entity_state", "version": SNAPSHOT_VERSION + 1, "state": STATE},
            state_hash=compute_state_hash(STATE),
        )
        with pytest.raises(SnapshotError):
            SnapshotStore(db).decode(snapshot)

    def test_unknown_schema_is_rejected(self, db):
        snapshot = SnapshotDB(id="sx", captured_state={"schema": "other", "version": 1, "state": {}})
        with pytest.raises(SnapshotError):
            SnapshotStore(db).decode(snapshot)
