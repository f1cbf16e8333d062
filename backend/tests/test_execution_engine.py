"""
Tests for the Execution Engine.

Key tests:
1. Safe opportunity under full autonomy: snapshot, apply, proving
2. Two executors racing on one opportunity: exactly one claim and one write
3. One opportunity in flight per entity, enforced by the database
4. Transient catalog errors are retried; exhaustion fails with snapshot kept
5. Snapshot failure releases the claim and never touches the catalog
6. Pending opportunities the gate does not allow are refused
7. Cancellation before the catalog write
8. A write that outlives its timeout is never re-sent and is settled as applied
"""
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.models.db_models import (
    ActorType, AutonomyLevel, OpportunityDB, OpportunityEventDB, OpportunityStatus,
    RiskTolerance, SnapshotDB,
)
from app.services.loop.autonomy_gate import set_policy
from app.services.loop.cancellation import CancellationToken
from app.services.loop.collaborators import InMemoryCatalogService
from app.services.loop.errors import (
    CancellationError, InvalidTransitionError, OpportunityNotFoundError,
    PolicyViolationError, ProposalError,
)
from app.services.loop.execution_engine import ExecutionEngine
from app.services.loop.rollback_manager import RollbackManager
from app.services.loop.snapshot_store import compute_state_hash


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def product(add_product):
    """Entity e1 on tenant t1 with a weak description."""
    add_product("t1", "e1", content_score=45, price=20.0, revenue=100.0, traffic=50)
    return "e1"


@pytest.fixture
def full_autonomy(db):
    set_policy(db, "t1", AutonomyLevel.FULL, RiskTolerance.LOW)
    db.commit()


def _snapshots(db, opportunity_id):
    return db.query(SnapshotDB).filter(SnapshotDB.opportunity_id == opportunity_id).all()


class SlowCatalog(InMemoryCatalogService):
    """Catalog whose writes block until `release` is set or `delay` passes."""

    def __init__(self, delay=None):
        super().__init__()
        self.delay = delay
        self.release = threading.Event()
        self.landed = threading.Event()

    def apply(self, entity_ref, change):
        self.release.wait(self.delay)
        super().apply(entity_ref, change)
        self.landed.set()


@pytest.fixture
def slow_catalog(collaborators, add_product):
    """Blocking catalog holding e1; released at teardown."""
    catalog = SlowCatalog()
    collaborators.catalog = catalog
    collaborators.settings.collaborator_timeout_seconds = 0.2
    add_product("t1", "e1", content_score=45, price=20.0, revenue=100.0, traffic=50)
    yield catalog
    catalog.release.set()


# =============================================================================
# TEST: HAPPY PATH
# =============================================================================

class TestExecute:
    """Claim, snapshot, apply, proving."""

    def test_auto_execute_safe_opportunity(self, db, collaborators, product, full_autonomy, make_opportunity):
        """Safety 20 under full/low goes straight through."""
        opportunity = make_opportunity(safety_score=20)
        before = collaborators.catalog.get("e1")

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.success is True
        assert result.status == "proving"
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.PROVING
        assert opportunity.executed_at is not None
        assert opportunity.proof_due_at == opportunity.executed_at + timedelta(hours=72)
        assert opportunity.applied_changes["fields"]["description"]["before"] == before["description"]

        snapshots = _snapshots(db, opportunity.id)
        assert len(snapshots) == 1
        assert snapshots[0].state_hash == compute_state_hash(before)
        assert snapshots[0].captured_state["metrics"]["revenue"] == 100.0

        assert collaborators.catalog.get("e1")["description"] != before["description"]
        assert [n["kind"] for n in collaborators.notifications.sent] == ["opportunity_executed"]

    def test_snapshot_precedes_write(self, db, collaborators, product, make_opportunity):
        """The snapshot row exists by the time the catalog is written."""
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        seen = []
        original_apply = collaborators.catalog.apply

        def apply(entity_ref, change):
            seen.append(len(_snapshots(db, opportunity.id)))
            original_apply(entity_ref, change)

        collaborators.catalog.apply = apply
        ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert seen == [1]

    def test_events_record_the_trail(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)

        ExecutionEngine(db, collaborators).execute(opportunity.id, actor=ActorType.USER)

        events = {
            (e.from_status, e.to_status): e
            for e in db.query(OpportunityEventDB).filter(OpportunityEventDB.opportunity_id == opportunity.id)
        }
        assert set(events) == {("approved", "executing"), ("executing", "proving")}
        assert events[("approved", "executing")].actor == ActorType.USER

    def test_unknown_opportunity(self, db, collaborators):
        with pytest.raises(OpportunityNotFoundError):
            ExecutionEngine(db, collaborators).execute("missing")


# =============================================================================
# TEST: CONCURRENCY
# =============================================================================

class TestExactlyOnce:
    """Conditional claims and the in-flight index."""

    def test_second_executor_sees_already_handled(self, session_factory, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        first_db, second_db = session_factory(), session_factory()
        try:
            first = ExecutionEngine(first_db, collaborators).execute(opportunity.id)
            second = ExecutionEngine(second_db, collaborators).execute(opportunity.id)
        finally:
            first_db.close()
            second_db.close()

        assert first.success is True
        assert second.already_handled is True
        assert second.success is False
        assert len(collaborators.catalog.apply_calls) == 1

    def test_racing_claim_on_stale_read(self, session_factory, collaborators, product, make_opportunity):
        """Both read 'approved'; only the first conditional update wins."""
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        first_db, second_db = session_factory(), session_factory()
        try:
            stale = second_db.query(OpportunityDB).filter(OpportunityDB.id == opportunity.id).one()
            assert stale.status == OpportunityStatus.APPROVED

            first = ExecutionEngine(first_db, collaborators).execute(opportunity.id)
            second = ExecutionEngine(second_db, collaborators)._run(
                stale, OpportunityStatus.APPROVED, CancellationToken(), ActorType.SYSTEM,
            )

            assert first.success is True
            assert second.already_handled is True
            assert second.status == "proving"
            assert len(_snapshots(first_db, opportunity.id)) == 1
        finally:
            first_db.close()
            second_db.close()

        assert len(collaborators.catalog.apply_calls) == 1

    def test_entity_with_work_in_flight_is_not_claimed(self, db, collaborators, product, make_opportunity):
        """A second opportunity on the same entity waits for the first to finish proving."""
        first = make_opportunity(status=OpportunityStatus.APPROVED)
        second = make_opportunity(opportunity_type="price_adjustment", status=OpportunityStatus.APPROVED)
        engine = ExecutionEngine(db, collaborators)

        assert engine.execute(first.id).success is True
        result = engine.execute(second.id)

        assert result.already_handled is True
        assert "in flight" in result.error
        db.refresh(second)
        assert second.status == OpportunityStatus.APPROVED
        assert _snapshots(db, second.id) == []
        assert len(collaborators.catalog.apply_calls) == 1

    def test_terminal_opportunity_is_already_handled(self, db, collaborators, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.REJECTED)
        result = ExecutionEngine(db, collaborators).execute(opportunity.id)
        assert result.already_handled is True
        assert result.status == "rejected"


# =============================================================================
# TEST: FAILURES
# =============================================================================

class TestFailures:
    """Retries, fail-closed snapshotting and proposal errors."""

    def test_transient_apply_errors_are_retried(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        collaborators.catalog.fail_next_applies = 2
        delays = []

        result = ExecutionEngine(db, collaborators, sleep=delays.append).execute(opportunity.id)

        assert result.success is True
        assert len(collaborators.catalog.apply_calls) == 3
        assert len(delays) == 2

    def test_exhausted_retries_fail_and_keep_snapshot(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        before = collaborators.catalog.get("e1")
        collaborators.catalog.fail_next_applies = 10

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.success is False
        assert result.status == "failed"
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.FAILED
        assert "Apply failed" in opportunity.error_detail
        assert len(_snapshots(db, opportunity.id)) == 1
        assert collaborators.catalog.get("e1") == before
        assert collaborators.notifications.sent[-1]["kind"] == "opportunity_failed"

    def test_snapshot_failure_releases_claim(self, db, collaborators, make_opportunity):
        """Unknown entity: no snapshot, so nothing is written and the claim is reverted."""
        opportunity = make_opportunity(entity_ref="ghost", status=OpportunityStatus.APPROVED)

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.success is False
        assert "Snapshot failed" in result.error
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.APPROVED
        assert opportunity.error_detail.startswith("Snapshot failed")
        assert _snapshots(db, opportunity.id) == []
        assert collaborators.catalog.apply_calls == []

    def test_metrics_outage_blocks_execution(self, db, collaborators, product, make_opportunity):
        """No baseline means no proof later, so the change is not made."""
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        collaborators.metrics.unavailable.add("e1")

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.success is False
        assert collaborators.catalog.apply_calls == []

    def test_baseline_without_proof_metric_blocks_execution(self, db, collaborators, add_product, make_opportunity):
        """Indicators without revenue could never be proven, so nothing is written."""
        add_product("t1", "e1", content_score=45, traffic=50)
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.success is False
        assert "No baseline 'revenue'" in result.error
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.APPROVED
        assert _snapshots(db, opportunity.id) == []
        assert collaborators.catalog.apply_calls == []

    def test_slow_write_is_waited_on_not_resent(self, db, collaborators, slow_catalog, make_opportunity):
        slow_catalog.delay = 0.3
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)

        result = ExecutionEngine(db, collaborators, sleep=lambda _: None).execute(opportunity.id)

        assert result.success is True
        assert len(slow_catalog.apply_calls) == 1
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.PROVING

    def test_write_still_running_after_retries_is_proving(self, db, collaborators, slow_catalog, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        snapshot_hash = compute_state_hash(slow_catalog.get("e1"))

        result = ExecutionEngine(db, collaborators, sleep=lambda _: None).execute(opportunity.id)

        assert result.success is False
        assert result.status == "proving"
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.PROVING
        assert opportunity.error_detail.startswith("Apply unconfirmed")
        assert opportunity.applied_changes["fields"]

        # The late write lands; rollback still restores the snapshot
        slow_catalog.release.set()
        assert slow_catalog.landed.wait(5)
        assert len(slow_catalog.apply_calls) == 1
        assert RollbackManager(db, collaborators).rollback(opportunity.id, reason="manual").rolled_back
        assert compute_state_hash(slow_catalog.get("e1")) == snapshot_hash

    def test_proposal_failure_fails_without_write(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        collaborators.proposals = MagicMock()
        collaborators.proposals.propose.side_effect = ProposalError("generator offline")

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.status == "failed"
        assert "generator offline" in result.error
        assert collaborators.catalog.apply_calls == []

    def test_proposal_outside_target_fields_is_refused(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        collaborators.proposals = MagicMock()
        collaborators.proposals.propose.return_value = {"fields": {"price": 1.0}}

        result = ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert result.status == "failed"
        assert collaborators.catalog.apply_calls == []


# =============================================================================
# TEST: POLICY
# =============================================================================

class TestPolicy:
    """Pending opportunities only run when the gate allows it."""

    def test_default_policy_refuses_pending(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(safety_score=5)

        with pytest.raises(PolicyViolationError):
            ExecutionEngine(db, collaborators).execute(opportunity.id)

        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.PENDING
        assert collaborators.catalog.apply_calls == []

    def test_full_autonomy_above_ceiling_refuses_pending(self, db, collaborators, product, full_autonomy, make_opportunity):
        opportunity = make_opportunity(safety_score=60)
        with pytest.raises(PolicyViolationError):
            ExecutionEngine(db, collaborators).execute(opportunity.id)

    def test_approved_runs_regardless_of_policy(self, db, collaborators, product, make_opportunity):
        set_policy(db, "t1", AutonomyLevel.APPROVE_ONLY, RiskTolerance.LOW)
        db.commit()
        opportunity = make_opportunity(safety_score=90, status=OpportunityStatus.APPROVED)

        assert ExecutionEngine(db, collaborators).execute(opportunity.id).success is True

    def test_disabled_policy_refuses_approved(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        set_policy(db, "t1", AutonomyLevel.DISABLED, RiskTolerance.LOW, entity_ref="e1")
        db.commit()

        with pytest.raises(PolicyViolationError):
            ExecutionEngine(db, collaborators).execute(opportunity.id)

        assert collaborators.catalog.apply_calls == []
        assert _snapshots(db, opportunity.id) == []


# =============================================================================
# TEST: BULK + CANCEL
# =============================================================================

class TestBulkAndCancel:
    """Independent bulk execution and pre-write cancellation."""

    def test_bulk_isolates_failures(self, db, collaborators, add_product, make_opportunity):
        add_product("t1", "e1", revenue=100.0)
        add_product("t1", "e2", revenue=100.0)
        good = make_opportunity(entity_ref="e1", status=OpportunityStatus.APPROVED)
        gated = make_opportunity(entity_ref="e2")

        results = ExecutionEngine(db, collaborators).execute_bulk([good.id, "missing", gated.id])

        assert [r.success for r in results] == [True, False, False]
        assert "not found" in results[1].error
        assert "requires approval" in results[2].error

    def test_cancel_pending(self, db, collaborators, make_opportunity):
        opportunity = make_opportunity()

        response = ExecutionEngine(db, collaborators).cancel(opportunity.id)

        assert response["cancelled"] is True
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.CANCELLED

    def test_cancel_after_apply_is_refused(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        engine = ExecutionEngine(db, collaborators)
        engine.execute(opportunity.id)

        with pytest.raises(CancellationError):
            engine.cancel(opportunity.id)

    def test_cancel_terminal_is_invalid(self, db, collaborators, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.FAILED)
        with pytest.raises(InvalidTransitionError):
            ExecutionEngine(db, collaborators).cancel(opportunity.id)

    def test_cancelled_token_stops_before_write(self, db, collaborators, product, make_opportunity):
        opportunity = make_opportunity(status=OpportunityStatus.APPROVED)
        token = CancellationToken()
        assert token.cancel() is True

        result = ExecutionEngine(db, collaborators).execute(opportunity.id, token=token)

        assert result.status == "cancelled"
        assert collaborators.catalog.apply_calls == []
        db.refresh(opportunity)
        assert opportunity.status == OpportunityStatus.CANCELLED

    def test_token_cannot_cancel_after_write_began(self):
        token = CancellationToken()
        assert token.begin_write() is True
        assert token.cancel() is False
        assert token.cancelled is False
